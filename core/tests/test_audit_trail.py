"""Tests for AuditTrailBuilder.

Tests the trace lifecycle, transformation detection, lineage construction,
queries and session summaries.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from pipeline_debug.audit import (
    AuditQuery,
    TraceStatus,
    TransformationType,
    analyze_transformation,
    classify_transformation,
)
from pipeline_debug.errors import InvalidOperationError, TraceNotFoundError
from pipeline_debug.storage import Namespace
from pipeline_debug.timestamps import elapsed_ms, parse_timestamp


def _transform_files(audit):
    return audit.store.list_records(Namespace.TRANSFORMATIONS, prefix="transform-")


def _stored(audit, namespace, prefix):
    [path] = audit.store.list_records(namespace, prefix=prefix)
    return audit.store.read_record(path)


@pytest.fixture
def tree(audit):
    """root -> (a -> c, b), all completed."""
    root = audit.start_layer_trace("client", "handle", {"prompt": "hi"})
    a = audit.start_layer_trace("router", "route", {"model": "gpt-4"}, parent_trace_id=root)
    c = audit.start_layer_trace("provider", "call", {"model": "gpt-4"}, parent_trace_id=a)
    b = audit.start_layer_trace("transformer", "convert", {"format": "anthropic"}, parent_trace_id=root)

    audit.complete_layer_trace(c, {"text": "hello"}, "success")
    audit.complete_layer_trace(a, {"model": "gpt-4", "provider": "openai"}, "success")
    audit.complete_layer_trace(b, {"format": "anthropic"}, "warning")
    audit.complete_layer_trace(root, {"prompt": "hi", "reply": "hello"}, "success")
    return {"root": root, "a": a, "b": b, "c": c}


class TestTraceLifecycle:
    def test_start_creates_started_trace(self, audit):
        trace_id = audit.start_layer_trace("router", "route", {"model": "gpt-4"})

        trace = audit.get_trace(trace_id)
        assert trace.status == TraceStatus.STARTED
        assert trace.is_complete is False
        assert trace.is_root is True
        assert trace.session_id == audit.session_id
        assert trace.input_data == {"model": "gpt-4"}

        stored = _stored(audit, Namespace.TRACES, f"trace-{trace_id}-")
        assert stored["status"] == "started"

    def test_parent_links_child(self, audit):
        parent = audit.start_layer_trace("client", "handle", {})
        child = audit.start_layer_trace("router", "route", {}, parent_trace_id=parent)

        assert audit.get_trace(parent).children == [child]
        assert audit.get_trace(child).parent_trace_id == parent

        stored = _stored(audit, Namespace.TRACES, f"trace-{parent}-")
        assert stored["children"] == [child]

    def test_unknown_parent_keeps_reference(self, audit):
        child = audit.start_layer_trace("router", "route", {}, parent_trace_id="ghost")

        assert audit.get_trace(child).parent_trace_id == "ghost"

    def test_input_is_redacted(self, audit):
        trace_id = audit.start_layer_trace("client", "handle", {"apiKey": "sk-1", "prompt": "hi"})

        assert audit.get_trace(trace_id).input_data == {"apiKey": "[REDACTED]", "prompt": "hi"}

    def test_complete_sets_output_and_duration(self, audit):
        trace_id = audit.start_layer_trace("router", "route", {"model": "gpt-4"})

        trace = audit.complete_layer_trace(trace_id, {"model": "gpt-4"}, "success", {"retries": 1})

        assert trace.status == TraceStatus.SUCCESS
        assert trace.is_complete is True
        assert trace.output_data == {"model": "gpt-4"}
        assert trace.output_size > 0
        assert trace.metrics["retries"] == 1
        start = parse_timestamp(trace.timestamp)
        end = parse_timestamp(trace.end_time)
        assert trace.duration_ms == elapsed_ms(start, end)
        assert trace.duration_ms >= 0

        stored = _stored(audit, Namespace.TRACES, f"trace-{trace_id}-")
        assert stored["status"] == "success"
        assert stored["end_time"] == trace.end_time
        assert "lineage" not in stored

    def test_trace_file_is_stamped_once(self, audit):
        trace_id = audit.start_layer_trace("router", "route", {"model": "gpt-4"})
        audit.complete_layer_trace(trace_id, {"model": "gpt-4"}, "success")

        [path] = audit.store.list_records(Namespace.TRACES, prefix=f"trace-{trace_id}-")
        stamp = int(parse_timestamp(audit.get_trace(trace_id).timestamp).timestamp() * 1000)
        assert path.name == f"trace-{trace_id}-{stamp}.json"

    def test_complete_unknown_trace_fails(self, audit):
        with pytest.raises(TraceNotFoundError):
            audit.complete_layer_trace("missing", {}, "success")

    def test_complete_twice_fails(self, audit):
        trace_id = audit.start_layer_trace("router", "route", {})
        audit.complete_layer_trace(trace_id, {}, "success")

        with pytest.raises(InvalidOperationError):
            audit.complete_layer_trace(trace_id, {}, "error")
        assert audit.get_trace(trace_id).status == TraceStatus.SUCCESS

    @pytest.mark.parametrize("status", ["started", "finished"])
    def test_complete_requires_terminal_status(self, audit, status):
        trace_id = audit.start_layer_trace("router", "route", {})

        with pytest.raises(InvalidOperationError):
            audit.complete_layer_trace(trace_id, {}, status)
        assert audit.get_trace(trace_id).status == TraceStatus.STARTED

    def test_get_unknown_trace_fails(self, audit):
        with pytest.raises(TraceNotFoundError):
            audit.get_trace("missing")

    def test_layer_sequence_is_indexed(self, audit):
        first = audit.start_layer_trace("client", "handle", {})
        second = audit.start_layer_trace("router", "route", {}, parent_trace_id=first)

        index = audit.store.read_record(
            audit.store.record_path(Namespace.INDEXES, f"layer-sequence-{audit.session_id}")
        )
        assert [e["trace_id"] for e in index["entries"]] == [first, second]
        assert index["entries"][1]["parent_trace_id"] == first
        assert [e.layer for e in audit.layer_sequence] == ["client", "router"]


class TestTransformations:
    def test_router_modification(self, audit):
        trace_id = audit.start_layer_trace("router", "route", {"model": "gpt-4"})
        audit.complete_layer_trace(trace_id, {"model": "gpt-4", "provider": "openai"}, "success")

        files = _transform_files(audit)
        assert len(files) == 1
        record = audit.store.read_record(files[0])
        assert record["trace_id"] == trace_id
        assert record["layer"] == "router"
        assert record["transformation"]["type"] == "modification"
        assert record["transformation"]["fields_added"] == ["provider"]
        assert record["transformation"]["fields_removed"] == []
        assert record["transformation"]["fields_modified"] == []

    def test_identical_output_records_nothing(self, audit):
        trace_id = audit.start_layer_trace("router", "route", {"a": 1, "b": [1, 2]})
        audit.complete_layer_trace(trace_id, {"a": 1, "b": [1, 2]}, "success")

        assert _transform_files(audit) == []

    def test_key_order_is_not_a_change(self, audit):
        trace_id = audit.start_layer_trace("router", "route", {"a": 1, "b": 2})
        audit.complete_layer_trace(trace_id, {"b": 2, "a": 1}, "success")

        assert _transform_files(audit) == []

    def test_session_file_counts_transformations(self, audit):
        for value in range(3):
            trace_id = audit.start_layer_trace("router", "route", {"n": value})
            audit.complete_layer_trace(trace_id, {"n": value + 1}, "success")

        session = audit.context.read_session_file()
        assert session.transformation_count == 3
        assert len(session.traceability_index) == 3
        assert {e["layer"] for e in session.traceability_index.values()} == {"router"}

    def test_record_transformation_directly(self, audit):
        transformation_id = audit.record_transformation("t-1", "text", {"text": "x"}, "transformer")

        record = _stored(audit, Namespace.TRANSFORMATIONS, f"transform-{transformation_id}-")
        assert record["transformation"]["type"] == "type-conversion"

    def test_transformation_payloads_redacted(self, audit):
        trace_id = audit.start_layer_trace("client", "handle", {"token": "t", "n": 1})
        audit.complete_layer_trace(trace_id, {"token": "t", "n": 2}, "success")

        record = audit.store.read_record(_transform_files(audit)[0])
        assert record["input_data"]["token"] == "[REDACTED]"
        assert record["output_data"]["token"] == "[REDACTED]"
        assert record["transformation"]["fields_modified"] == ["n"]


class TestClassification:
    @pytest.mark.parametrize(
        "before, after, expected",
        [
            (None, {"a": 1}, TransformationType.CREATION),
            ("", "text", TransformationType.CREATION),
            ({"a": 1}, None, TransformationType.DELETION),
            ("42", 42, TransformationType.TYPE_CONVERSION),
            ({"a": 1}, "a=1", TransformationType.TYPE_CONVERSION),
            ({"a": 1}, [1], TransformationType.STRUCTURE_CHANGE),
            ({"a": 1}, {"a": 2}, TransformationType.MODIFICATION),
            (1, 2, TransformationType.MODIFICATION),
        ],
    )
    def test_classify(self, before, after, expected):
        assert classify_transformation(before, after) == expected

    def test_field_diff(self):
        analysis = analyze_transformation({"a": 1, "b": 2, "c": {"x": 1}}, {"a": 1, "c": {"x": 2}, "d": 4})

        assert analysis.fields_added == ["d"]
        assert analysis.fields_removed == ["b"]
        assert analysis.fields_modified == ["c"]

    def test_non_mapping_has_empty_diff(self):
        analysis = analyze_transformation([1], [1, 2])

        assert analysis.fields_added == analysis.fields_removed == analysis.fields_modified == []


class TestLineage:
    def test_contains_root_and_all_descendants_once(self, audit, tree):
        lineage = audit.build_data_lineage(tree["root"])

        ids = [e.trace_id for e in lineage.data_flow]
        assert sorted(ids) == sorted(tree.values())
        assert len(ids) == len(set(ids))
        assert ids[0] == tree["root"]

    def test_subtree_excludes_siblings(self, audit, tree):
        lineage = audit.build_data_lineage(tree["a"])

        assert {e.trace_id for e in lineage.data_flow} == {tree["a"], tree["c"]}
        assert {t.trace_id for t in lineage.transformations} == {tree["a"], tree["c"]}
        assert {e.trace_id for e in lineage.layer_sequence} == {tree["a"], tree["c"]}

    def test_metadata(self, audit, tree):
        lineage = audit.build_data_lineage(tree["root"])

        assert lineage.metadata.total_layers == 4
        # root, a and c changed their data; b did not
        assert lineage.metadata.total_transformations == 3
        expected = sum(audit.get_trace(t).duration_ms for t in tree.values())
        assert lineage.metadata.total_duration == pytest.approx(expected)

    def test_cycle_terminates(self, audit, tree):
        # Corrupt the tree so the leaf points back at the root
        audit._traces[tree["c"]].children.append(tree["root"])

        lineage = audit.build_data_lineage(tree["root"])

        ids = [e.trace_id for e in lineage.data_flow]
        assert sorted(ids) == sorted(tree.values())

    def test_self_cycle_terminates(self, audit):
        trace_id = audit.start_layer_trace("router", "route", {})
        audit._traces[trace_id].children.append(trace_id)

        assert [e.trace_id for e in audit.build_data_lineage(trace_id).data_flow] == [trace_id]

    def test_each_build_writes_a_snapshot(self, audit, tree):
        audit.build_data_lineage(tree["root"])
        audit.build_data_lineage(tree["root"])

        snapshots = audit.store.list_records(Namespace.LINEAGE, prefix=f"lineage-{tree['root']}-")
        assert len(snapshots) == 2

    def test_unknown_trace_fails(self, audit):
        with pytest.raises(TraceNotFoundError):
            audit.build_data_lineage("missing")


class TestQuery:
    def test_filter_by_layer(self, audit, tree):
        results = audit.query_audit_trail(layer="router")

        assert [t.trace_id for t in results] == [tree["a"]]

    def test_filter_by_status(self, audit, tree):
        results = audit.query_audit_trail(AuditQuery(status=TraceStatus.WARNING))

        assert [t.trace_id for t in results] == [tree["b"]]

    def test_filter_by_operation(self, audit, tree):
        assert [t.trace_id for t in audit.query_audit_trail(operation="call")] == [tree["c"]]

    def test_time_range(self, audit, tree):
        root = audit.get_trace(tree["root"])
        start = parse_timestamp(root.timestamp)

        assert audit.query_audit_trail(end_time=start - timedelta(seconds=1)) == []
        assert len(audit.query_audit_trail(start_time=start)) == 4
        assert len(audit.query_audit_trail(start_time=start.isoformat())) == 4

    def test_sorted_by_timestamp(self, audit, tree):
        ascending = [t.trace_id for t in audit.query_audit_trail()]
        descending = [t.trace_id for t in audit.query_audit_trail(descending=True)]

        assert ascending[0] == tree["root"]
        assert descending == list(reversed(ascending))

    def test_sorted_by_duration(self, audit, tree):
        results = audit.query_audit_trail(sort_by="duration", descending=True)

        durations = [t.duration_ms for t in results]
        assert durations == sorted(durations, reverse=True)

    def test_include_lineage(self, audit, tree):
        results = audit.query_audit_trail(layer="router", include_lineage=True)

        assert results[0].lineage is not None
        assert results[0].lineage.root_trace_id == tree["a"]

    def test_results_are_copies(self, audit, tree):
        audit.query_audit_trail(layer="router")[0].children.append("bogus")

        assert "bogus" not in audit.get_trace(tree["a"]).children


class TestAuditSummary:
    def test_layer_stats(self, audit, tree):
        summary = audit.get_audit_summary()

        assert summary.total_traces == 4
        assert summary.layer_stats["router"].total_operations == 1
        assert summary.layer_stats["router"].success_count == 1
        assert summary.layer_stats["transformer"].warning_count == 1
        assert summary.transformation_stats.total_transformations == 3
        assert summary.transformation_stats.by_type == {"modification": 3}
        assert summary.performance_stats.total_operations <= 4

    def test_data_flow_map(self, audit, tree):
        flow = audit.get_audit_summary().data_flow_map

        assert sorted(flow["client"].children) == ["router", "transformer"]
        assert flow["router"].parents == ["client"]
        assert flow["provider"].parents == ["router"]
        assert flow["provider"].operations[0]["trace_id"] == tree["c"]

    def test_summary_is_persisted(self, audit, tree):
        audit.get_audit_summary()

        path = audit.store.record_path(Namespace.AUDIT, f"audit-summary-{audit.session_id}")
        assert audit.store.read_record(path)["total_traces"] == 4

    def test_error_counts(self, audit):
        trace_id = audit.start_layer_trace("provider", "call", {"model": "gpt-4"})
        audit.complete_layer_trace(trace_id, {"error": "timeout"}, TraceStatus.ERROR)

        stats = audit.get_audit_summary().layer_stats["provider"]
        assert stats.error_count == 1
        assert stats.success_count == 0
