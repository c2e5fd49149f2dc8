"""Dynamic replay of recorded sessions.

- DynamicReplayEngine: timeline reconstruction and controlled playback
- DatabaseDataLoader: scenario and record lookup in the record store
"""

from pipeline_debug.replay.engine import DynamicReplayEngine
from pipeline_debug.replay.loader import DatabaseDataLoader
from pipeline_debug.replay.schemas import (
    Interaction,
    InteractionResult,
    ReplayResult,
    ReplayState,
    ReplayStatus,
    ScenarioSummary,
    ToolCall,
    ToolCallMapping,
    ToolResult,
)
from pipeline_debug.replay.tool_calls import find_tool_calls, find_tool_results

__all__ = [
    "DynamicReplayEngine",
    "DatabaseDataLoader",
    "Interaction",
    "InteractionResult",
    "ReplayResult",
    "ReplayState",
    "ReplayStatus",
    "ScenarioSummary",
    "ToolCall",
    "ToolCallMapping",
    "ToolResult",
    "find_tool_calls",
    "find_tool_results",
]
