"""Recorder - Capture layer I/O and performance data for one session.

Usage:
    recorder = Recorder(SessionContext.open(config=config))

    record_id = recorder.record_layer_io("router", "input", request, {"method": "route"})
    recorder.record_layer_io("router", "output", decision, {"method": "route"})
    recorder.record_performance_metrics("router", "route", start, end)

    scenario_path = recorder.create_replay_scenario("routing", [record_id])
    summary = recorder.get_session_summary()

Every payload is redacted before it is written; see pipeline_debug.redaction.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil

from pipeline_debug.config import SCHEMA_VERSION, DebugConfig
from pipeline_debug.errors import InvalidOperationError, RecordNotFoundError
from pipeline_debug.recording.schemas import (
    HANDOFF_OPERATION,
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
from pipeline_debug.redaction import Sanitizer
from pipeline_debug.session import SessionContext, SessionFile, new_id
from pipeline_debug.storage import Namespace, RecordStore
from pipeline_debug.timestamps import elapsed_ms, file_stamp, iso_now, parse_timestamp

logger = logging.getLogger(__name__)


def snapshot_process_resources() -> ResourceSnapshot:
    """Capture the current process's memory, CPU and thread usage."""
    process = psutil.Process()
    with process.oneshot():
        memory = process.memory_info()
        cpu = process.cpu_times()
        return ResourceSnapshot(
            pid=process.pid,
            rss_bytes=memory.rss,
            vms_bytes=memory.vms,
            cpu_percent=process.cpu_percent(interval=None),
            num_threads=process.num_threads(),
            user_cpu_seconds=cpu.user,
            system_cpu_seconds=cpu.system,
        )


class Recorder:
    """Records layer I/O, hand-offs and performance samples.

    Thread-safe: uses a lock around the in-memory ledger. Storage errors
    propagate to the caller; there is no internal retry.
    """

    def __init__(
        self,
        context: SessionContext | None = None,
        config: DebugConfig | None = None,
        store: RecordStore | None = None,
    ) -> None:
        self._context = context or SessionContext.open(store=store, config=config)
        self._sanitizer = Sanitizer(self._context.config)
        self._ledger: list[LedgerEntry] = []
        self._ledger_index: dict[str, LedgerEntry] = {}
        self._lock = threading.Lock()

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
    def sanitizer(self) -> Sanitizer:
        return self._sanitizer

    def _sanitize_metadata(self, metadata: dict[str, Any] | None) -> dict[str, Any]:
        cleaned = self._sanitizer.sanitize(metadata or {})
        if not isinstance(cleaned, dict):
            return {"value": cleaned}
        return cleaned

    def _append_ledger(self, entry: LedgerEntry) -> None:
        with self._lock:
            self._ledger.append(entry)
            self._ledger_index[entry.record_id] = entry

    def record_layer_io(
        self,
        layer: str,
        operation: IOOperation | str,
        data: Any,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Capture data entering or leaving a layer.

        Args:
            layer: Layer name (e.g. "router", "transformer").
            operation: "input", "output" or "error".
            data: Payload; redacted before storage.
            metadata: Method name, timing or other caller fields.

        Returns:
            The record_id of the stored record.

        Raises:
            InvalidOperationError: If operation is not a known I/O kind.
            StorageIOError: If the record could not be written.
        """
        try:
            kind = IOOperation(operation)
        except ValueError as e:
            raise InvalidOperationError(f"Unknown I/O operation {operation!r}") from e

        record_id = new_id()
        timestamp = iso_now()
        stored, size, truncated = self._sanitizer.prepare(data)

        record_metadata = self._sanitize_metadata(metadata)
        record_metadata["data_size"] = size
        if truncated:
            record_metadata["truncated"] = True

        record = LayerIORecord(
            record_id=record_id,
            session_id=self.session_id,
            timestamp=timestamp,
            layer=layer,
            operation=kind,
            data=stored,
            metadata=record_metadata,
        )
        path = self.store.write_record(
            Namespace.LAYERS,
            f"io-{layer}-{kind.value}-{record_id}-{file_stamp()}",
            record,
        )

        self._append_ledger(
            LedgerEntry(
                record_id=record_id,
                layer=layer,
                operation=kind.value,
                timestamp=timestamp,
                file_path=str(path),
            )
        )
        logger.debug(f"Recorded {layer}-{kind.value} as {record_id} ({size} chars)")
        return record_id

    def record_audit_trail(
        self,
        from_layer: str,
        to_layer: str,
        record_id: str,
        transformation_data: Any = None,
    ) -> str:
        """Capture a hand-off of data from one layer to the next.

        Returns:
            The audit_id of the stored hand-off record.
        """
        audit_id = new_id()
        timestamp = iso_now()
        stored, size, truncated = self._sanitizer.prepare(transformation_data)

        metadata: dict[str, Any] = {"data_size": size}
        if truncated:
            metadata["truncated"] = True

        record = HandoffRecord(
            audit_id=audit_id,
            session_id=self.session_id,
            timestamp=timestamp,
            from_layer=from_layer,
            to_layer=to_layer,
            record_id=record_id,
            data=stored,
            metadata=metadata,
        )
        path = self.store.write_record(
            Namespace.AUDIT,
            f"handoff-{from_layer}-{to_layer}-{audit_id}-{file_stamp()}",
            record,
        )

        self._append_ledger(
            LedgerEntry(
                record_id=audit_id,
                layer=to_layer,
                operation=HANDOFF_OPERATION,
                timestamp=timestamp,
                file_path=str(path),
            )
        )
        return audit_id

    def record_performance_metrics(
        self,
        layer: str,
        operation: str,
        start_time: float | datetime | str,
        end_time: float | datetime | str,
        metrics: dict[str, Any] | None = None,
    ) -> PerformanceRecord:
        """Persist a timing sample with a process resource snapshot.

        Args:
            start_time: Epoch seconds, datetime or ISO string.
            end_time: Epoch seconds, datetime or ISO string.
            metrics: Caller metrics stored alongside the sample.
        """
        start = parse_timestamp(start_time)
        end = parse_timestamp(end_time)
        if start is None or end is None:
            raise InvalidOperationError(
                f"Unparseable timing for {layer}-{operation}: {start_time!r} -> {end_time!r}"
            )

        record = PerformanceRecord(
            record_id=new_id(),
            session_id=self.session_id,
            timestamp=iso_now(),
            layer=layer,
            operation=operation,
            start_time=start.isoformat(),
            end_time=end.isoformat(),
            duration_ms=elapsed_ms(start, end),
            resources=snapshot_process_resources(),
            metrics=self._sanitize_metadata(metrics),
        )
        self.store.write_record(
            Namespace.PERFORMANCE,
            f"perf-{layer}-{operation}-{record.record_id}-{file_stamp()}",
            record,
        )
        return record

    def create_replay_scenario(self, scenario_name: str, record_ids: list[str]) -> Path:
        """Persist a named replay scenario referencing recorded files.

        Returns:
            Path to the scenario file.

        Raises:
            RecordNotFoundError: If a record id isn't in this session's ledger.
        """
        with self._lock:
            entries = []
            for record_id in record_ids:
                entry = self._ledger_index.get(record_id)
                if entry is None:
                    raise RecordNotFoundError(record_id)
                entries.append(entry)

        layers_involved: list[str] = []
        for entry in entries:
            if entry.layer not in layers_involved:
                layers_involved.append(entry.layer)

        scenario = ReplayScenario(
            scenario_id=new_id(),
            scenario_name=scenario_name,
            session_id=self.session_id,
            created_at=iso_now(),
            records=[
                ScenarioRecordRef(
                    record_id=e.record_id,
                    layer=e.layer,
                    operation=e.operation,
                    timestamp=e.timestamp,
                    file_path=e.file_path,
                )
                for e in entries
            ],
            metadata={
                "total_records": len(entries),
                "layers_involved": layers_involved,
                "version": SCHEMA_VERSION,
            },
        )
        path = self.store.write_record(
            Namespace.REPLAY,
            f"scenario-{scenario_name}-{scenario.scenario_id}-{file_stamp(scenario.created_at)}",
            scenario,
        )
        logger.info(
            f"Created replay scenario '{scenario_name}' with {len(entries)} records at {path}"
        )
        return path

    @property
    def ledger(self) -> list[LedgerEntry]:
        with self._lock:
            return [e.model_copy() for e in self._ledger]

    def get_session_summary(self) -> RecordingSummary:
        """Summarize the session and close it in the session file."""
        end_time = iso_now()
        ledger = self.ledger

        def close(session: SessionFile) -> None:
            session.end_time = end_time
            session.record_count = len(ledger)

        self._context.update_session_file(close)

        return RecordingSummary(
            session_id=self.session_id,
            start_time=self._context.started_at,
            end_time=end_time,
            audit_trail=ledger,
            record_count=len(ledger),
        )
