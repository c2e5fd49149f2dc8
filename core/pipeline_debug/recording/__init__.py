"""Layer I/O recording.

- Recorder: captures layer I/O, hand-offs and performance samples
- ReplayScenario: named set of record references consumed by replay
"""

from pipeline_debug.recording.recorder import Recorder, snapshot_process_resources
from pipeline_debug.recording.schemas import (
    HandoffRecord,
    IOOperation,
    LayerIORecord,
    LedgerEntry,
    PerformanceRecord,
    RecordingSummary,
    ReplayScenario,
    ResourceSnapshot,
    ScenarioRecordRef,
)

__all__ = [
    "Recorder",
    "snapshot_process_resources",
    "HandoffRecord",
    "IOOperation",
    "LayerIORecord",
    "LedgerEntry",
    "PerformanceRecord",
    "RecordingSummary",
    "ReplayScenario",
    "ResourceSnapshot",
    "ScenarioRecordRef",
]
