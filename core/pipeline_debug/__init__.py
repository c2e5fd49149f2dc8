"""Debug recording, audit trail and deterministic replay for an AI routing pipeline.

- Recorder: layer I/O, hand-offs and performance samples
- AuditTrailBuilder: causal trace trees, transformations and lineage
- DynamicReplayEngine: playback of recorded sessions from stored data only
- PipelineDebugger: wraps layers and ties the above to one session
"""

from pipeline_debug.audit import AuditQuery, AuditTrailBuilder, Trace, TraceStatus
from pipeline_debug.config import DebugConfig, ReplayOptions
from pipeline_debug.debugger import PipelineDebugger
from pipeline_debug.errors import (
    CorruptRecordError,
    InvalidOperationError,
    NotFoundError,
    PipelineDebugError,
    RecordNotFoundError,
    SessionNotFoundError,
    StorageIOError,
    TraceNotFoundError,
)
from pipeline_debug.events import Event, EventBus, EventType
from pipeline_debug.recording import Recorder
from pipeline_debug.redaction import Sanitizer
from pipeline_debug.replay import DatabaseDataLoader, DynamicReplayEngine, ReplayState
from pipeline_debug.session import SessionContext
from pipeline_debug.storage import Namespace, RecordStore

__all__ = [
    "AuditQuery",
    "AuditTrailBuilder",
    "CorruptRecordError",
    "DatabaseDataLoader",
    "DebugConfig",
    "DynamicReplayEngine",
    "Event",
    "EventBus",
    "EventType",
    "InvalidOperationError",
    "Namespace",
    "NotFoundError",
    "PipelineDebugError",
    "PipelineDebugger",
    "RecordNotFoundError",
    "RecordStore",
    "Recorder",
    "ReplayOptions",
    "ReplayState",
    "Sanitizer",
    "SessionContext",
    "SessionNotFoundError",
    "StorageIOError",
    "Trace",
    "TraceNotFoundError",
    "TraceStatus",
]
