"""Exception hierarchy for the pipeline debug subsystem.

Lookup failures (unknown trace, session or record) surface as NotFoundError
subclasses. Storage failures surface as StorageIOError or CorruptRecordError.
Precondition violations surface as InvalidOperationError.
"""

from __future__ import annotations

from pathlib import Path


class PipelineDebugError(Exception):
    """Base exception for pipeline debug operations."""

    pass


class NotFoundError(PipelineDebugError):
    """An identifier did not resolve to a known object."""

    kind = "object"

    def __init__(self, identifier: str, message: str | None = None) -> None:
        self.identifier = identifier
        super().__init__(message or f"{self.kind.capitalize()} {identifier} not found")


class TraceNotFoundError(NotFoundError):
    kind = "trace"


class SessionNotFoundError(NotFoundError):
    kind = "session"


class RecordNotFoundError(NotFoundError):
    kind = "record"


class CorruptRecordError(PipelineDebugError):
    """A persisted record exists but could not be parsed."""

    def __init__(self, path: Path, reason: str = "") -> None:
        self.path = path
        detail = f": {reason}" if reason else ""
        super().__init__(f"Corrupt record at {path}{detail}")


class StorageIOError(PipelineDebugError):
    """Reading from or writing to the record store failed."""

    def __init__(self, path: Path, reason: str = "") -> None:
        self.path = path
        detail = f": {reason}" if reason else ""
        super().__init__(f"Storage I/O failed for {path}{detail}")


class InvalidOperationError(PipelineDebugError):
    """The caller violated a precondition."""

    pass
