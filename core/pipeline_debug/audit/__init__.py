"""Audit trail: trace trees, transformations and data lineage."""

from pipeline_debug.audit.schemas import (
    AuditQuery,
    DataFlowEntry,
    LayerFlow,
    LayerSequenceEntry,
    LayerStats,
    Lineage,
    LineageMetadata,
    PerformanceStats,
    SessionAuditSummary,
    Trace,
    TraceStatus,
    TransformationAnalysis,
    TransformationRecord,
    TransformationStats,
    TransformationType,
)
from pipeline_debug.audit.trail import (
    AuditTrailBuilder,
    analyze_transformation,
    classify_transformation,
)

__all__ = [
    "AuditTrailBuilder",
    "analyze_transformation",
    "classify_transformation",
    "AuditQuery",
    "DataFlowEntry",
    "LayerFlow",
    "LayerSequenceEntry",
    "LayerStats",
    "Lineage",
    "LineageMetadata",
    "PerformanceStats",
    "SessionAuditSummary",
    "Trace",
    "TraceStatus",
    "TransformationAnalysis",
    "TransformationRecord",
    "TransformationStats",
    "TransformationType",
]
