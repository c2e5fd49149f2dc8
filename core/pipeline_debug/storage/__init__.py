"""File-backed record storage."""

from pipeline_debug.storage.store import Namespace, RecordStore, safe_filename

__all__ = [
    "Namespace",
    "RecordStore",
    "safe_filename",
]
