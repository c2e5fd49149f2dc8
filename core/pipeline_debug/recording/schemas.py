"""Pydantic schemas for recorded layer data.

Record format:
    layers/io-*.json            LayerIORecord
    audit/handoff-*.json        HandoffRecord
    performance/perf-*.json     PerformanceRecord
    replay/scenario-*.json      ReplayScenario
        └── records: list[ScenarioRecordRef]

Records are written once and never modified. Later structures refer to them
by record id and file path.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from pipeline_debug.config import SCHEMA_VERSION


class IOOperation(StrEnum):
    """Direction of a layer I/O capture."""

    INPUT = "input"
    OUTPUT = "output"
    ERROR = "error"


HANDOFF_OPERATION = "handoff"


class LayerIORecord(BaseModel):
    """Data entering or leaving one architectural layer."""

    record_id: str
    session_id: str
    timestamp: str
    layer: str
    operation: IOOperation
    data: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: str = SCHEMA_VERSION


class HandoffRecord(BaseModel):
    """Data handed from one layer to the next."""

    audit_id: str
    session_id: str
    timestamp: str
    from_layer: str
    to_layer: str
    record_id: str
    data: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: str = SCHEMA_VERSION


class LedgerEntry(BaseModel):
    """Lightweight index entry kept in memory for every record written."""

    record_id: str
    layer: str
    operation: str
    timestamp: str
    file_path: str


class ResourceSnapshot(BaseModel):
    """Process resource usage at the time of a performance sample."""

    pid: int
    rss_bytes: int = 0
    vms_bytes: int = 0
    cpu_percent: float = 0.0
    num_threads: int = 0
    user_cpu_seconds: float = 0.0
    system_cpu_seconds: float = 0.0


class PerformanceRecord(BaseModel):
    """Timing sample for one layer operation."""

    record_id: str
    session_id: str
    timestamp: str
    layer: str
    operation: str
    start_time: str
    end_time: str
    duration_ms: float
    resources: ResourceSnapshot
    metrics: dict[str, Any] = Field(default_factory=dict)
    version: str = SCHEMA_VERSION


class ScenarioRecordRef(BaseModel):
    """Reference from a scenario to one recorded file."""

    record_id: str
    layer: str
    operation: str
    timestamp: str = ""
    file_path: str


class ReplayScenario(BaseModel):
    """Named, ordered set of record references from one session."""

    scenario_id: str
    scenario_name: str
    session_id: str
    created_at: str
    records: list[ScenarioRecordRef] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RecordingSummary(BaseModel):
    """Handoff object describing everything a recorder wrote."""

    session_id: str
    start_time: str
    end_time: str
    audit_trail: list[LedgerEntry] = Field(default_factory=list)
    record_count: int = 0
