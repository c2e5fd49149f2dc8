"""RecordStore - Namespaced file storage for debug records.

Storage layout:
    {root_path}/
      sessions/          # session-{session_id}.json, debug reports
      layers/            # layer I/O records
      audit/             # cross-layer hand-offs, audit summaries
      performance/       # performance samples
      replay/            # scenario-*.json, replay results
      traces/            # trace-{trace_id}-{ms}.json
      lineage/           # lineage snapshots
      transformations/   # transform-{transformation_id}-{ms}.json
      indexes/           # layer-sequence indexes

Each record is one JSON file. Writes go to a temporary file in the target
directory and are renamed into place, so a reader never sees a partial file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from collections.abc import Callable, Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from pipeline_debug.errors import CorruptRecordError, RecordNotFoundError, StorageIOError
from pipeline_debug.redaction import to_json_text

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class Namespace(StrEnum):
    """Fixed storage namespaces under the store root."""

    SESSIONS = "sessions"
    LAYERS = "layers"
    AUDIT = "audit"
    PERFORMANCE = "performance"
    REPLAY = "replay"
    TRACES = "traces"
    LINEAGE = "lineage"
    TRANSFORMATIONS = "transformations"
    INDEXES = "indexes"


def safe_filename(hint: str) -> str:
    """Turn a filename hint into a safe *.json file name."""
    name = _UNSAFE_FILENAME_CHARS.sub("_", hint).strip("._") or "record"
    if not name.endswith(".json"):
        name += ".json"
    return name


class RecordStore:
    """Persistent storage for debug records.

    Records are stored as JSON files, one per event, grouped by namespace.
    Safe for concurrent writers of distinct records.
    """

    def __init__(self, root_path: Path) -> None:
        self._root = Path(root_path).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def ensure_namespaces(self) -> None:
        """Create every namespace directory if it doesn't exist."""
        for namespace in Namespace:
            try:
                self.namespace_path(namespace).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageIOError(self.namespace_path(namespace), str(e)) from e

    def namespace_path(self, namespace: Namespace | str) -> Path:
        return self._root / Namespace(namespace).value

    def record_path(self, namespace: Namespace | str, filename_hint: str) -> Path:
        """Get the path a record with this hint is (or would be) stored at."""
        return self.namespace_path(namespace) / safe_filename(filename_hint)

    def write_record(
        self,
        namespace: Namespace | str,
        filename_hint: str,
        record: BaseModel | Mapping[str, Any],
    ) -> Path:
        """Write a record atomically.

        Returns:
            Path to the written file.

        Raises:
            StorageIOError: If the file could not be written.
        """
        path = self.record_path(namespace, filename_hint)
        data = record.model_dump() if isinstance(record, BaseModel) else dict(record)
        self._write_atomic(path, to_json_text(data, indent=2))
        logger.debug(f"Wrote record {path.name} to {Namespace(namespace).value}")
        return path

    def _write_atomic(self, path: Path, content: str) -> None:
        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            logger.error(f"Failed to write record {path}: {e}")
            raise StorageIOError(path, str(e)) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def read_record(self, path: Path | str) -> dict[str, Any]:
        """Read and parse a record.

        Raises:
            RecordNotFoundError: If the file doesn't exist.
            CorruptRecordError: If the file isn't a JSON object.
            StorageIOError: If the file couldn't be read.
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise RecordNotFoundError(str(path)) from e
        except UnicodeDecodeError as e:
            raise CorruptRecordError(path, str(e)) from e
        except OSError as e:
            raise StorageIOError(path, str(e)) from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptRecordError(path, str(e)) from e

        if not isinstance(data, dict):
            raise CorruptRecordError(path, f"expected a JSON object, got {type(data).__name__}")
        return data

    def list_records(
        self,
        namespace: Namespace | str,
        predicate: Callable[[Path], bool] | None = None,
        prefix: str = "",
    ) -> list[Path]:
        """List record paths in a namespace, sorted by file name.

        Args:
            namespace: Namespace to scan.
            predicate: Optional filter over paths.
            prefix: Optional file name prefix.
        """
        directory = self.namespace_path(namespace)
        if not directory.is_dir():
            return []

        results: list[Path] = []
        try:
            candidates = sorted(directory.glob(f"{prefix}*.json"))
        except OSError as e:
            raise StorageIOError(directory, str(e)) from e

        for path in candidates:
            if path.name.startswith(".tmp-") or not path.is_file():
                continue
            if predicate is not None and not predicate(path):
                continue
            results.append(path)
        return results

    async def write_record_async(
        self,
        namespace: Namespace | str,
        filename_hint: str,
        record: BaseModel | Mapping[str, Any],
    ) -> Path:
        """Async version of write_record."""
        return await asyncio.to_thread(self.write_record, namespace, filename_hint, record)

    async def read_record_async(self, path: Path | str) -> dict[str, Any]:
        """Async version of read_record."""
        return await asyncio.to_thread(self.read_record, path)

    async def list_records_async(
        self,
        namespace: Namespace | str,
        predicate: Callable[[Path], bool] | None = None,
        prefix: str = "",
    ) -> list[Path]:
        """Async version of list_records."""
        return await asyncio.to_thread(
            self.list_records, namespace, predicate=predicate, prefix=prefix
        )
