"""PipelineDebugger - one-stop debug harness for a pipeline session.

Owns a SessionContext shared by a Recorder and an AuditTrailBuilder and
wraps layer objects so every public method call is recorded, traced and
timed.

Usage:
    debugger = PipelineDebugger(DebugConfig(root_path=path))
    router = debugger.wrap_layer(Router(), "router")

    decision = router.route(request)          # input/output recorded, trace completed
    response = await provider.send(request)   # async methods are wrapped too

    report = debugger.finalize()
"""

from __future__ import annotations

import functools
import inspect
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pipeline_debug.audit import AuditTrailBuilder, TraceStatus
from pipeline_debug.config import DebugConfig, ReplayOptions
from pipeline_debug.errors import InvalidOperationError
from pipeline_debug.events import EventBus, EventHandler, EventType
from pipeline_debug.recording import IOOperation, Recorder
from pipeline_debug.replay import DatabaseDataLoader, DynamicReplayEngine, ReplayResult
from pipeline_debug.session import SessionContext, new_id
from pipeline_debug.storage import Namespace, RecordStore
from pipeline_debug.timestamps import elapsed_ms, iso_now, utc_now

logger = logging.getLogger(__name__)


@dataclass
class OperationContext:
    """Bookkeeping for one in-flight wrapped call."""

    operation_id: str
    layer: str
    method: str
    started_at: datetime
    input_record_id: str | None = None
    trace_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class LayerProxy:
    """Forwards attribute access to a layer, wrapping its public methods."""

    def __init__(self, debugger: PipelineDebugger, layer: Any, name: str) -> None:
        self._debugger = debugger
        self._layer = layer
        self._name = name
        self._wrapped: dict[str, Any] = {}

    @property
    def layer_name(self) -> str:
        return self._name

    @property
    def original(self) -> Any:
        return self._layer

    def __getattr__(self, attr: str) -> Any:
        value = getattr(self._layer, attr)
        if attr.startswith("_") or not callable(value):
            return value
        if attr not in self._wrapped:
            self._wrapped[attr] = self._debugger.wrap_method(self._name, attr, value)
        return self._wrapped[attr]

    def __repr__(self) -> str:
        return f"LayerProxy({self._name!r}, {self._layer!r})"


class PipelineDebugger:
    """Coordinates recording, auditing and replay for one session."""

    def __init__(
        self,
        config: DebugConfig | None = None,
        store: RecordStore | None = None,
        context: SessionContext | None = None,
    ) -> None:
        self._config = config or DebugConfig()
        self._context = context or SessionContext.open(store=store, config=self._config)
        self._events = EventBus(source="debugger")

        self._recorder = Recorder(self._context) if self._config.enable_recording else None
        self._audit = AuditTrailBuilder(self._context) if self._config.enable_audit_trail else None
        self._replay: DynamicReplayEngine | None = None

        self._enabled = True
        self._proxies: dict[str, LayerProxy] = {}
        self._active: dict[str, OperationContext] = {}
        self._lock = threading.Lock()

    @property
    def session_id(self) -> str:
        return self._context.session_id

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def recorder(self) -> Recorder | None:
        return self._recorder

    @property
    def audit_trail(self) -> AuditTrailBuilder | None:
        return self._audit

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def replay_engine(self) -> DynamicReplayEngine:
        if not self._config.enable_replay:
            raise InvalidOperationError("Replay is disabled in this debugger's config")
        if self._replay is None:
            self._replay = DynamicReplayEngine(
                self._context.store, self._config, event_bus=self._events
            )
        return self._replay

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        self._events.subscribe(event_type, handler)

    def enable(self) -> None:
        self._enabled = True
        logger.info(f"Debugging enabled for session {self.session_id}")

    def disable(self) -> None:
        self._enabled = False
        logger.info(f"Debugging disabled for session {self.session_id}")

    def wrap_layer(self, layer: Any, name: str) -> LayerProxy:
        """Wrap a layer so its public method calls are debugged.

        Wrapping the same name twice returns the existing proxy.
        """
        with self._lock:
            existing = self._proxies.get(name)
            if existing is not None:
                logger.warning(f"Layer {name} already wrapped, returning existing proxy")
                return existing
            proxy = LayerProxy(self, layer, name)
            self._proxies[name] = proxy
        logger.info(f"Wrapped layer {name}")
        return proxy

    def wrap_method(self, layer: str, method: str, func: Any) -> Any:
        """Wrap one callable; coroutine functions get an async wrapper."""
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                if not self._enabled:
                    return await func(*args, **kwargs)
                op = self.start_operation(layer, method, args, kwargs)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    self.complete_operation(op, _error_payload(e), TraceStatus.ERROR)
                    raise
                self.complete_operation(op, result, TraceStatus.SUCCESS)
                return result

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if not self._enabled:
                return func(*args, **kwargs)
            op = self.start_operation(layer, method, args, kwargs)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                self.complete_operation(op, _error_payload(e), TraceStatus.ERROR)
                raise
            self.complete_operation(op, result, TraceStatus.SUCCESS)
            return result

        return wrapper

    def start_operation(
        self,
        layer: str,
        method: str,
        args: tuple[Any, ...] = (),
        kwargs: dict[str, Any] | None = None,
    ) -> OperationContext:
        """Record the input of a layer call and open its trace."""
        op = OperationContext(
            operation_id=f"{layer}-{method}-{new_id()}",
            layer=layer,
            method=method,
            started_at=utc_now(),
        )
        payload = {"args": list(args), "kwargs": dict(kwargs or {})}

        if self._recorder is not None:
            op.input_record_id = self._recorder.record_layer_io(
                layer,
                IOOperation.INPUT,
                payload,
                {"method": method, "operation_id": op.operation_id},
            )
        if self._audit is not None:
            op.trace_id = self._audit.start_layer_trace(layer, method, payload)

        with self._lock:
            self._active[op.operation_id] = op

        self._events.emit(
            EventType.OPERATION_STARTED,
            {"operation_id": op.operation_id, "layer": layer, "method": method},
        )
        return op

    def complete_operation(
        self,
        op: OperationContext,
        result: Any,
        status: TraceStatus | str = TraceStatus.SUCCESS,
    ) -> None:
        """Record the output of a layer call, close its trace and time it."""
        status = TraceStatus(status)
        finished_at = utc_now()

        if self._recorder is not None:
            self._recorder.record_layer_io(
                op.layer,
                IOOperation.ERROR if status == TraceStatus.ERROR else IOOperation.OUTPUT,
                result,
                {
                    "method": op.method,
                    "operation_id": op.operation_id,
                    "input_record_id": op.input_record_id,
                    "status": status.value,
                },
            )
            if self._config.enable_performance_metrics:
                self._recorder.record_performance_metrics(
                    op.layer,
                    op.method,
                    op.started_at,
                    finished_at,
                    {"status": status.value, "result_type": type(result).__name__},
                )
        if self._audit is not None and op.trace_id is not None:
            self._audit.complete_layer_trace(
                op.trace_id, result, status, {"operation_id": op.operation_id}
            )

        with self._lock:
            self._active.pop(op.operation_id, None)

        self._events.emit(
            EventType.OPERATION_COMPLETED,
            {
                "operation_id": op.operation_id,
                "layer": op.layer,
                "method": op.method,
                "status": status.value,
                "duration_ms": elapsed_ms(op.started_at, finished_at),
            },
        )

    def create_replay_scenario(self, name: str, record_ids: list[str] | None = None) -> Path:
        """Create a scenario from the given records, or from every record so far."""
        if self._recorder is None:
            raise InvalidOperationError("Recording is disabled in this debugger's config")
        if record_ids is None:
            record_ids = [e.record_id for e in self._recorder.ledger]
        return self._recorder.create_replay_scenario(name, record_ids)

    async def start_replay(
        self, session_id: str | None = None, options: ReplayOptions | None = None
    ) -> ReplayResult:
        """Replay a session, defaulting to this debugger's own."""
        return await self.replay_engine.start_dynamic_replay(session_id or self.session_id, options)

    def get_debug_status(self) -> dict[str, Any]:
        with self._lock:
            active = len(self._active)
            wrapped = list(self._proxies)
        return {
            "session_id": self.session_id,
            "enabled": self._enabled,
            "started_at": self._context.started_at,
            "components": {
                "recorder": self._recorder is not None,
                "audit_trail": self._audit is not None,
                "performance_metrics": self._config.enable_performance_metrics,
                "replay": self._config.enable_replay,
            },
            "active_operations": active,
            "wrapped_layers": wrapped,
            "replay_status": (
                self._replay.get_replay_status().model_dump() if self._replay is not None else None
            ),
        }

    def get_layer_debug_info(self, layer_name: str) -> dict[str, Any]:
        """Whether a layer is wrapped and its in-flight operations."""
        with self._lock:
            wrapped = layer_name in self._proxies
            operations = [
                {
                    "operation_id": op.operation_id,
                    "method": op.method,
                    "started_at": op.started_at.isoformat(),
                    "trace_id": op.trace_id,
                }
                for op in self._active.values()
                if op.layer == layer_name
            ]
        return {
            "layer_name": layer_name,
            "wrapped": wrapped,
            "active_operations": operations,
        }

    def generate_debug_report(self) -> dict[str, Any]:
        """Build the full session report and persist it under sessions/."""
        report = {
            "session_id": self.session_id,
            "generated_at": iso_now(),
            "status": self.get_debug_status(),
            "recording_summary": (
                self._recorder.get_session_summary().model_dump()
                if self._recorder is not None
                else None
            ),
            "audit_summary": (
                self._audit.get_audit_summary().model_dump() if self._audit is not None else None
            ),
            "available_scenarios": [
                s.model_dump() for s in DatabaseDataLoader(self._context.store).list_scenarios()
            ],
        }
        path = self._context.store.write_record(
            Namespace.SESSIONS, f"debug-report-{self.session_id}", report
        )
        logger.info(f"Debug report for session {self.session_id} written to {path}")
        return report

    def finalize(self) -> dict[str, Any]:
        """Write the final report and stop debugging wrapped layers."""
        with self._lock:
            pending = len(self._active)
        if pending:
            logger.warning(f"Finalizing session {self.session_id} with {pending} open operations")
        if self._replay is not None:
            self._replay.stop()
        report = self.generate_debug_report()
        self._enabled = False
        logger.info(f"Finalized debug session {self.session_id}")
        return report


def _error_payload(error: Exception) -> dict[str, str]:
    return {"error": str(error), "type": type(error).__name__}
