"""Sensitive-field redaction and payload size budgeting.

Every payload that reaches the record store passes through a Sanitizer:
fields whose name matches a sensitive pattern are replaced by the redaction
marker at any nesting depth, including inside lists.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from pipeline_debug.config import DebugConfig

logger = logging.getLogger(__name__)

CIRCULAR_MARKER = "[CIRCULAR]"
TRUNCATION_SUFFIX = "...[truncated]"


def to_json_text(value: Any, indent: int | None = None) -> str:
    """Serialize a value to JSON text, stringifying anything JSON can't encode."""
    return json.dumps(value, default=str, ensure_ascii=False, indent=indent)


def payload_size(value: Any) -> int:
    """Size metric for a payload: length of its JSON text."""
    try:
        return len(to_json_text(value))
    except (TypeError, ValueError):
        return len(str(value))


def canonical_text(value: Any) -> str:
    """Key-order independent JSON text used for change detection."""
    try:
        return json.dumps(value, default=str, sort_keys=True, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


class Sanitizer:
    """Recursive redaction of sensitive fields."""

    def __init__(self, config: DebugConfig | None = None) -> None:
        self.config = config or DebugConfig()
        self._patterns = [re.compile(p, re.IGNORECASE) for p in self.config.sensitive_patterns]

    @property
    def marker(self) -> str:
        return self.config.redaction_marker

    def is_sensitive_field(self, name: Any) -> bool:
        """Check if a field name matches any sensitive pattern."""
        key = str(name)
        return any(p.search(key) for p in self._patterns)

    def sanitize(self, value: Any) -> Any:
        """Return a redacted copy of value. Never raises."""
        return self._walk(value, set())

    def _walk(self, value: Any, path: set[int]) -> Any:
        value = self._as_tree(value)

        if isinstance(value, Mapping):
            if id(value) in path:
                return CIRCULAR_MARKER
            path.add(id(value))
            try:
                sanitized: dict[str, Any] = {}
                for key, item in value.items():
                    name = key if isinstance(key, str) else str(key)
                    if self.is_sensitive_field(name):
                        sanitized[name] = self.marker
                    else:
                        sanitized[name] = self._walk(item, path)
                return sanitized
            finally:
                path.discard(id(value))

        if isinstance(value, (list, tuple, set, frozenset)):
            if id(value) in path:
                return CIRCULAR_MARKER
            path.add(id(value))
            try:
                return [self._walk(item, path) for item in value]
            finally:
                path.discard(id(value))

        return value

    @staticmethod
    def _as_tree(value: Any) -> Any:
        """Convert models and dataclass instances to plain mappings."""
        try:
            if isinstance(value, BaseModel):
                return value.model_dump()
            if dataclasses.is_dataclass(value) and not isinstance(value, type):
                return dataclasses.asdict(value)
        except Exception as e:
            logger.debug(f"Passing through unconvertible {type(value).__name__}: {e}")
        return value

    def apply_size_budget(self, value: Any) -> tuple[Any, bool]:
        """Truncate a payload whose JSON text exceeds the configured budget.

        Returns (possibly truncated value, truncated flag).
        """
        limit = self.config.max_payload_chars
        if not limit or value is None:
            return value, False

        text = to_json_text(value) if not isinstance(value, str) else value
        if len(text) <= limit:
            return value, False
        return text[:limit] + TRUNCATION_SUFFIX, True

    def prepare(self, value: Any) -> tuple[Any, int, bool]:
        """Sanitize, measure and budget a payload for storage.

        Returns (stored value, original size, truncated flag).
        """
        sanitized = self.sanitize(value)
        size = payload_size(sanitized)
        stored, truncated = self.apply_size_budget(sanitized)
        return stored, size, truncated
