"""Pydantic schemas for dynamic replay."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ReplayState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


TERMINAL_REPLAY_STATES = frozenset({ReplayState.COMPLETED, ReplayState.ERROR, ReplayState.STOPPED})


class ToolCall(BaseModel):
    """A tool invocation found in a recorded payload."""

    id: str
    name: str = ""
    arguments: Any = None


class ToolResult(BaseModel):
    """A recorded tool result located in the layers namespace."""

    tool_call_id: str | None = None
    name: str | None = None
    content: Any = None
    source_file: str
    timestamp: str | None = None


class ToolCallMapping(BaseModel):
    tool_call: ToolCall
    result: ToolResult | None = None
    record_id: str
    timestamp: str
    has_real_result: bool = False


class Interaction(BaseModel):
    """One entry of the replay timeline."""

    timestamp: str
    record_id: str
    layer: str
    operation: str
    data: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    file_path: str = ""

    @property
    def key(self) -> str:
        return f"{self.layer}-{self.operation}"

    @property
    def has_real_data(self) -> bool:
        return self.data not in (None, "", {}, [])


class InteractionResult(BaseModel):
    step: int
    record_id: str
    layer: str
    operation: str
    timestamp: str
    has_real_data: bool
    tool_calls_found: int = 0
    tool_calls_replayed: int = 0
    unmatched_tool_calls: list[str] = Field(default_factory=list)
    error: str | None = None


class ReplayResult(BaseModel):
    """Summary of one replay run, persisted under replay/."""

    replay_id: str
    session_id: str
    scenario_name: str
    state: ReplayState
    started_at: str
    finished_at: str | None = None
    total_interactions: int = 0
    completed_interactions: int = 0
    skipped_interactions: int = 0
    tool_calls_replayed: int = 0
    unmatched_tool_calls: int = 0
    data_coverage_rate: float = 0.0
    interactions: list[InteractionResult] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)


class ReplayStatus(BaseModel):
    """Read-only snapshot of the engine."""

    state: ReplayState
    replay_id: str | None = None
    session_id: str | None = None
    current_step: int = 0
    total_steps: int = 0
    progress: float = 0.0
    speed: float = 1.0
    interaction_count: int = 0
    tool_call_count: int = 0
    layer_operation_count: int = 0
    options: dict[str, Any] = Field(default_factory=dict)


class ScenarioSummary(BaseModel):
    scenario_id: str
    scenario_name: str
    session_id: str
    created_at: str
    record_count: int
    file_path: str
