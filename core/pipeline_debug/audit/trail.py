"""AuditTrailBuilder - causal trace tree, transformations and lineage.

Traces are kept in an arena keyed by trace id; parent and children fields
are lookups into that arena. Every walk over the tree uses an explicit
visited set so malformed data containing a cycle still terminates.

Usage::

    audit = AuditTrailBuilder(context)
    root = audit.start_layer_trace("router", "route", {"model": "gpt-4"})
    child = audit.start_layer_trace("provider", "call", request, parent_trace_id=root)
    audit.complete_layer_trace(child, response, "success")
    audit.complete_layer_trace(root, {"model": "gpt-4", "provider": "openai"}, "success")

    lineage = audit.build_data_lineage(root)
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Mapping
from typing import Any

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
from pipeline_debug.config import SCHEMA_VERSION, DebugConfig
from pipeline_debug.errors import InvalidOperationError, TraceNotFoundError
from pipeline_debug.redaction import Sanitizer, canonical_text, payload_size
from pipeline_debug.session import SessionContext, SessionFile, new_id
from pipeline_debug.storage import Namespace, RecordStore
from pipeline_debug.timestamps import (
    EPOCH,
    elapsed_ms,
    file_stamp,
    iso_now,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def _is_absent(value: Any) -> bool:
    return value is None or value == ""


def classify_transformation(input_data: Any, output_data: Any) -> TransformationType:
    """Classify a change using type and shape heuristics."""
    if _is_absent(input_data):
        return TransformationType.CREATION
    if _is_absent(output_data):
        return TransformationType.DELETION
    if _kind(input_data) != _kind(output_data):
        return TransformationType.TYPE_CONVERSION
    if isinstance(input_data, list) != isinstance(output_data, list):
        return TransformationType.STRUCTURE_CHANGE
    return TransformationType.MODIFICATION


def analyze_transformation(input_data: Any, output_data: Any) -> TransformationAnalysis:
    """Classify a change and diff top-level fields of mapping payloads."""
    analysis = TransformationAnalysis(type=classify_transformation(input_data, output_data))
    if isinstance(input_data, Mapping) and isinstance(output_data, Mapping):
        analysis.fields_added = [k for k in output_data if k not in input_data]
        analysis.fields_removed = [k for k in input_data if k not in output_data]
        analysis.fields_modified = [
            k
            for k in input_data
            if k in output_data and canonical_text(input_data[k]) != canonical_text(output_data[k])
        ]
    return analysis


class AuditTrailBuilder:
    """Maintains the trace tree for one session and derives lineage.

    Thread-safe: the trace map is guarded by a re-entrant lock.
    """

    def __init__(
        self,
        context: SessionContext | None = None,
        config: DebugConfig | None = None,
        store: RecordStore | None = None,
    ) -> None:
        self._context = context or SessionContext.open(store=store, config=config)
        self._sanitizer = Sanitizer(self._context.config)
        self._traces: dict[str, Trace] = {}
        self._layer_sequence: list[LayerSequenceEntry] = []
        self._transformations: list[TransformationRecord] = []
        self._lock = threading.RLock()

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def session_id(self) -> str:
        return self._context.session_id

    @property
    def store(self) -> RecordStore:
        return self._context.store

    @property
    def layer_sequence(self) -> list[LayerSequenceEntry]:
        with self._lock:
            return [e.model_copy() for e in self._layer_sequence]

    def _persist_trace(self, trace: Trace) -> None:
        # Stamp comes from the start time so re-persisting overwrites the same file
        self.store.write_record(
            Namespace.TRACES, f"trace-{trace.trace_id}-{file_stamp(trace.timestamp)}", trace
        )

    def _persist_layer_sequence(self) -> None:
        self.store.write_record(
            Namespace.INDEXES,
            f"layer-sequence-{self.session_id}",
            {
                "session_id": self.session_id,
                "updated_at": iso_now(),
                "entries": [e.model_dump() for e in self._layer_sequence],
            },
        )

    def start_layer_trace(
        self,
        layer: str,
        operation: str,
        input_data: Any,
        parent_trace_id: str | None = None,
    ) -> str:
        """Start tracking data through a layer.

        Returns:
            The trace_id of the new trace.
        """
        stored, size, truncated = self._sanitizer.prepare(input_data)
        trace = Trace(
            trace_id=new_id(),
            session_id=self.session_id,
            layer=layer,
            operation=operation,
            timestamp=iso_now(),
            parent_trace_id=parent_trace_id,
            input_data=stored,
            input_size=size,
        )
        if truncated:
            trace.metrics["input_truncated"] = True

        with self._lock:
            self._traces[trace.trace_id] = trace
            self._layer_sequence.append(
                LayerSequenceEntry(
                    layer=layer,
                    operation=operation,
                    trace_id=trace.trace_id,
                    timestamp=trace.timestamp,
                    parent_trace_id=parent_trace_id,
                )
            )

            self._persist_trace(trace)
            if parent_trace_id is not None:
                parent = self._traces.get(parent_trace_id)
                if parent is None:
                    logger.warning(
                        f"Parent trace {parent_trace_id} unknown for {layer}-{operation}"
                    )
                else:
                    parent.children.append(trace.trace_id)
                    self._persist_trace(parent)
            self._persist_layer_sequence()

        logger.debug(f"Started trace {trace.trace_id} for {layer}-{operation}")
        return trace.trace_id

    def complete_layer_trace(
        self,
        trace_id: str,
        output_data: Any,
        status: TraceStatus | str = TraceStatus.SUCCESS,
        metrics: dict[str, Any] | None = None,
    ) -> Trace:
        """Complete a trace with its output.

        Records a transformation when the output differs from the input.

        Raises:
            TraceNotFoundError: If the trace id is unknown.
            InvalidOperationError: If the trace is already complete or the
                status is not terminal.
        """
        try:
            final_status = TraceStatus(status)
        except ValueError as e:
            raise InvalidOperationError(f"Unknown trace status {status!r}") from e
        if final_status == TraceStatus.STARTED:
            raise InvalidOperationError("A trace can't be completed with status 'started'")

        stored, size, truncated = self._sanitizer.prepare(output_data)

        with self._lock:
            trace = self._traces.get(trace_id)
            if trace is None:
                raise TraceNotFoundError(trace_id)
            if trace.is_complete:
                raise InvalidOperationError(f"Trace {trace_id} already completed")

            end = utc_now()
            start = parse_timestamp(trace.timestamp) or end

            trace.output_data = stored
            trace.output_size = size
            trace.status = final_status
            trace.end_time = end.isoformat()
            trace.duration_ms = elapsed_ms(start, end)
            trace.metrics.update(self._sanitizer.sanitize(metrics or {}))
            if truncated:
                trace.metrics["output_truncated"] = True

            self._persist_trace(trace)
            changed = canonical_text(trace.input_data) != canonical_text(trace.output_data)
            snapshot = trace.model_copy(deep=True)

        if changed:
            self.record_transformation(
                trace_id, snapshot.input_data, snapshot.output_data, snapshot.layer
            )
        return snapshot

    def record_transformation(
        self,
        trace_id: str,
        input_data: Any,
        output_data: Any,
        layer: str,
    ) -> str:
        """Persist a transformation record and update the session index.

        Returns:
            The transformation_id.
        """
        sanitized_in = self._sanitizer.sanitize(input_data)
        sanitized_out = self._sanitizer.sanitize(output_data)

        record = TransformationRecord(
            transformation_id=new_id(),
            trace_id=trace_id,
            session_id=self.session_id,
            timestamp=iso_now(),
            layer=layer,
            input_data=sanitized_in,
            output_data=sanitized_out,
            transformation=analyze_transformation(sanitized_in, sanitized_out),
            metadata={
                "input_size": payload_size(sanitized_in),
                "output_size": payload_size(sanitized_out),
                "version": SCHEMA_VERSION,
            },
        )
        self.store.write_record(
            Namespace.TRANSFORMATIONS,
            f"transform-{record.transformation_id}-{file_stamp(record.timestamp)}",
            record,
        )
        with self._lock:
            self._transformations.append(record)

        def index(session: SessionFile) -> None:
            session.transformation_count += 1
            session.traceability_index[record.transformation_id] = {
                "trace_id": trace_id,
                "layer": layer,
                "timestamp": record.timestamp,
            }

        self._context.update_session_file(index)
        logger.debug(
            f"Recorded {record.transformation.type.value} transformation for trace {trace_id}"
        )
        return record.transformation_id

    def get_trace(self, trace_id: str) -> Trace:
        with self._lock:
            trace = self._traces.get(trace_id)
            if trace is None:
                raise TraceNotFoundError(trace_id)
            return trace.model_copy(deep=True)

    def _subtree(self, trace_id: str) -> list[Trace]:
        """Pre-order walk of a trace and its descendants, each visited once."""
        visited: set[str] = set()
        ordered: list[Trace] = []
        stack = [trace_id]
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            trace = self._traces.get(current)
            if trace is None:
                continue
            ordered.append(trace)
            stack.extend(c for c in reversed(trace.children) if c not in visited)
        return ordered

    def build_data_lineage(self, trace_id: str) -> Lineage:
        """Build and persist a lineage snapshot rooted at a trace.

        Raises:
            TraceNotFoundError: If the trace id is unknown.
        """
        with self._lock:
            if trace_id not in self._traces:
                raise TraceNotFoundError(trace_id)

            subtree = self._subtree(trace_id)
            ids = {t.trace_id for t in subtree}
            transformations = [
                t.model_copy(deep=True) for t in self._transformations if t.trace_id in ids
            ]
            lineage = Lineage(
                root_trace_id=trace_id,
                session_id=self.session_id,
                build_time=iso_now(),
                data_flow=[
                    DataFlowEntry(
                        trace_id=t.trace_id,
                        layer=t.layer,
                        operation=t.operation,
                        timestamp=t.timestamp,
                        status=t.status,
                    )
                    for t in subtree
                ],
                transformations=transformations,
                layer_sequence=[e.model_copy() for e in self._layer_sequence if e.trace_id in ids],
                metadata=LineageMetadata(
                    total_layers=len({t.layer for t in subtree}),
                    total_transformations=len(transformations),
                    total_duration=sum(t.duration_ms or 0.0 for t in subtree),
                ),
            )

        self.store.write_record(
            Namespace.LINEAGE,
            f"lineage-{trace_id}-{file_stamp()}-{uuid.uuid4().hex[:8]}",
            lineage,
        )
        return lineage

    @staticmethod
    def _matches(trace: Trace, query: AuditQuery) -> bool:
        if query.layer and trace.layer != query.layer:
            return False
        if query.operation and trace.operation != query.operation:
            return False
        if query.status and trace.status != query.status:
            return False

        started = parse_timestamp(trace.timestamp) or EPOCH
        if query.start_time is not None:
            lower = parse_timestamp(query.start_time)
            if lower is not None and started < lower:
                return False
        if query.end_time is not None:
            upper = parse_timestamp(query.end_time)
            if upper is not None and started > upper:
                return False
        return True

    def query_audit_trail(self, filters: AuditQuery | None = None, **kwargs: Any) -> list[Trace]:
        """Query traces by layer, operation, status and time range.

        Accepts an AuditQuery or the same fields as keyword arguments.
        """
        query = filters or AuditQuery(**kwargs)

        with self._lock:
            matches = [
                t.model_copy(deep=True) for t in self._traces.values() if self._matches(t, query)
            ]

        if query.include_lineage:
            for trace in matches:
                trace.lineage = self.build_data_lineage(trace.trace_id)

        if query.sort_by == "duration":
            matches.sort(key=lambda t: t.duration_ms or 0.0, reverse=query.descending)
        else:
            matches.sort(
                key=lambda t: parse_timestamp(t.timestamp) or EPOCH, reverse=query.descending
            )
        return matches

    def _layer_stats(self) -> dict[str, LayerStats]:
        stats: dict[str, LayerStats] = {}
        for trace in self._traces.values():
            layer = stats.setdefault(trace.layer, LayerStats())
            layer.total_operations += 1
            if trace.status == TraceStatus.SUCCESS:
                layer.success_count += 1
            elif trace.status == TraceStatus.ERROR:
                layer.error_count += 1
            elif trace.status == TraceStatus.WARNING:
                layer.warning_count += 1
            if trace.duration_ms:
                layer.total_duration += trace.duration_ms

        for layer in stats.values():
            if layer.total_operations > 0:
                layer.average_duration = layer.total_duration / layer.total_operations
        return stats

    def _transformation_stats(self) -> TransformationStats:
        stats = TransformationStats(total_transformations=len(self._transformations))
        total_size = 0
        for record in self._transformations:
            stats.by_layer[record.layer] = stats.by_layer.get(record.layer, 0) + 1
            key = record.transformation.type.value
            stats.by_type[key] = stats.by_type.get(key, 0) + 1
            total_size += record.metadata.get("output_size", 0)
        if self._transformations:
            stats.average_transformation_size = total_size / len(self._transformations)
        return stats

    def _performance_stats(self) -> PerformanceStats:
        durations = [t.duration_ms for t in self._traces.values() if t.duration_ms]
        total = sum(durations)
        return PerformanceStats(
            total_operations=len(durations),
            total_duration=total,
            average_duration=total / len(durations) if durations else 0.0,
        )

    def _data_flow_map(self) -> dict[str, LayerFlow]:
        flow: dict[str, LayerFlow] = {}
        for trace in self._traces.values():
            entry = flow.setdefault(trace.layer, LayerFlow())
            entry.operations.append(
                {
                    "trace_id": trace.trace_id,
                    "operation": trace.operation,
                    "timestamp": trace.timestamp,
                }
            )
            for child_id in trace.children:
                child = self._traces.get(child_id)
                if child is not None and child.layer not in entry.children:
                    entry.children.append(child.layer)
            parent = self._traces.get(trace.parent_trace_id or "")
            if parent is not None and parent.layer not in entry.parents:
                entry.parents.append(parent.layer)
        return flow

    def get_audit_summary(self) -> SessionAuditSummary:
        """Aggregate per-layer, transformation and performance statistics."""
        with self._lock:
            summary = SessionAuditSummary(
                session_id=self.session_id,
                total_traces=len(self._traces),
                layer_sequence=[e.model_copy() for e in self._layer_sequence],
                layer_stats=self._layer_stats(),
                transformation_stats=self._transformation_stats(),
                performance_stats=self._performance_stats(),
                data_flow_map=self._data_flow_map(),
                generated_at=iso_now(),
            )

        self.store.write_record(Namespace.AUDIT, f"audit-summary-{self.session_id}", summary)
        return summary
