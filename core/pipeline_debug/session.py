"""SessionContext - explicit handle for one debug session.

A session is one end-to-end request lifecycle. The context carries the
session id, the record store and the configuration, and owns the
session-level summary file ``sessions/session-{session_id}.json``.

Usage::

    context = SessionContext.open(config=DebugConfig(root_path=tmp))
    recorder = Recorder(context)
    audit = AuditTrailBuilder(context)   # same session id as the recorder
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from pipeline_debug.config import SCHEMA_VERSION, DebugConfig
from pipeline_debug.errors import RecordNotFoundError
from pipeline_debug.storage import Namespace, RecordStore
from pipeline_debug.timestamps import iso_now

logger = logging.getLogger(__name__)


def new_id() -> str:
    """Generate a unique identifier."""
    return str(uuid.uuid4())


class SessionFile(BaseModel):
    """Persisted session-level summary."""

    session_id: str
    start_time: str
    end_time: str | None = None
    last_update: str | None = None
    root_path: str = ""
    version: str = SCHEMA_VERSION
    record_count: int = 0
    transformation_count: int = 0
    traceability_index: dict[str, dict[str, Any]] = Field(default_factory=dict)


@dataclass
class SessionContext:
    """One session's identity, storage and configuration."""

    session_id: str
    started_at: str
    store: RecordStore
    config: DebugConfig
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def open(
        cls,
        store: RecordStore | None = None,
        config: DebugConfig | None = None,
        session_id: str | None = None,
    ) -> SessionContext:
        """Start a new session and write its summary file."""
        config = config or DebugConfig()
        store = store or RecordStore(config.root_path)
        store.ensure_namespaces()

        context = cls(
            session_id=session_id or new_id(),
            started_at=iso_now(),
            store=store,
            config=config,
        )
        store.write_record(
            Namespace.SESSIONS,
            context.session_file_hint,
            SessionFile(
                session_id=context.session_id,
                start_time=context.started_at,
                root_path=str(store.root),
            ),
        )
        logger.info(f"Opened debug session {context.session_id} at {store.root}")
        return context

    @property
    def session_file_hint(self) -> str:
        return f"session-{self.session_id}"

    @property
    def session_file(self) -> Path:
        return self.store.record_path(Namespace.SESSIONS, self.session_file_hint)

    def read_session_file(self) -> SessionFile:
        return SessionFile(**self.store.read_record(self.session_file))

    def update_session_file(self, mutator: Callable[[SessionFile], None]) -> SessionFile:
        """Read-modify-write the session file under the context lock."""
        with self._lock:
            try:
                session = self.read_session_file()
            except RecordNotFoundError:
                logger.warning(f"Session file for {self.session_id} missing, recreating")
                session = SessionFile(
                    session_id=self.session_id,
                    start_time=self.started_at,
                    root_path=str(self.store.root),
                )
            mutator(session)
            session.last_update = iso_now()
            self.store.write_record(Namespace.SESSIONS, self.session_file_hint, session)
            return session
