"""Pydantic schemas for the audit trail.

Trace tree:
    Trace (root, parent_trace_id=None)
    ├── children: [trace_id, ...]   # back-references, resolved via the trace map
    └── ...

A Trace is created in STARTED state and completed exactly once. Completing
it with output that differs from its input produces a TransformationRecord.
A Lineage is a snapshot of one trace and all of its descendants.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

from pipeline_debug.config import SCHEMA_VERSION


class TraceStatus(StrEnum):
    """Lifecycle status of a trace."""

    STARTED = "started"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


TERMINAL_STATUSES = frozenset({TraceStatus.SUCCESS, TraceStatus.ERROR, TraceStatus.WARNING})


class TransformationType(StrEnum):
    """How a layer's output relates to its input."""

    CREATION = "creation"
    DELETION = "deletion"
    TYPE_CONVERSION = "type-conversion"
    STRUCTURE_CHANGE = "structure-change"
    MODIFICATION = "modification"


class TransformationAnalysis(BaseModel):
    type: TransformationType
    fields_added: list[str] = Field(default_factory=list)
    fields_removed: list[str] = Field(default_factory=list)
    fields_modified: list[str] = Field(default_factory=list)


class TransformationRecord(BaseModel):
    """Evidence that a trace's output differs from its input."""

    transformation_id: str
    trace_id: str
    session_id: str
    timestamp: str
    layer: str
    input_data: Any = None
    output_data: Any = None
    transformation: TransformationAnalysis
    metadata: dict[str, Any] = Field(default_factory=dict)


class DataFlowEntry(BaseModel):
    trace_id: str
    layer: str
    operation: str
    timestamp: str
    status: TraceStatus


class LayerSequenceEntry(BaseModel):
    layer: str
    operation: str
    trace_id: str
    timestamp: str
    parent_trace_id: str | None = None


class LineageMetadata(BaseModel):
    total_layers: int = 0
    total_transformations: int = 0
    total_duration: float = 0.0


class Lineage(BaseModel):
    """Causal chain rooted at one trace."""

    root_trace_id: str
    session_id: str
    build_time: str
    data_flow: list[DataFlowEntry] = Field(default_factory=list)
    transformations: list[TransformationRecord] = Field(default_factory=list)
    layer_sequence: list[LayerSequenceEntry] = Field(default_factory=list)
    metadata: LineageMetadata = Field(default_factory=LineageMetadata)
    version: str = SCHEMA_VERSION


class Trace(BaseModel):
    """One layer operation in a session's causal tree."""

    trace_id: str
    session_id: str
    layer: str
    operation: str
    timestamp: str
    parent_trace_id: str | None = None
    children: list[str] = Field(default_factory=list)
    status: TraceStatus = TraceStatus.STARTED

    input_data: Any = None
    input_size: int = 0

    output_data: Any = None
    output_size: int | None = None
    end_time: str | None = None
    duration_ms: float | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)

    version: str = SCHEMA_VERSION

    # Attached by queries that ask for lineage; never persisted with the trace.
    lineage: Lineage | None = Field(default=None, exclude=True)

    @property
    def is_root(self) -> bool:
        return self.parent_trace_id is None

    @property
    def is_complete(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AuditQuery(BaseModel):
    """Filters for AuditTrailBuilder.query_audit_trail."""

    layer: str | None = None
    operation: str | None = None
    status: TraceStatus | None = None
    start_time: datetime | str | None = None
    end_time: datetime | str | None = None
    include_lineage: bool = False
    sort_by: Literal["timestamp", "duration"] = "timestamp"
    descending: bool = False


class LayerStats(BaseModel):
    total_operations: int = 0
    success_count: int = 0
    error_count: int = 0
    warning_count: int = 0
    average_duration: float = 0.0
    total_duration: float = 0.0


class TransformationStats(BaseModel):
    total_transformations: int = 0
    by_layer: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)
    average_transformation_size: float = 0.0


class PerformanceStats(BaseModel):
    total_operations: int = 0
    total_duration: float = 0.0
    average_duration: float = 0.0
    sessions_tracked: int = 1


class LayerFlow(BaseModel):
    """Data-flow view of one layer: its operations and neighbouring layers."""

    operations: list[dict[str, Any]] = Field(default_factory=list)
    children: list[str] = Field(default_factory=list)
    parents: list[str] = Field(default_factory=list)


class SessionAuditSummary(BaseModel):
    session_id: str
    total_traces: int = 0
    layer_sequence: list[LayerSequenceEntry] = Field(default_factory=list)
    layer_stats: dict[str, LayerStats] = Field(default_factory=dict)
    transformation_stats: TransformationStats = Field(default_factory=TransformationStats)
    performance_stats: PerformanceStats = Field(default_factory=PerformanceStats)
    data_flow_map: dict[str, LayerFlow] = Field(default_factory=dict)
    generated_at: str
