"""Detection of tool-call and tool-result shapes in recorded payloads.

Detection is heuristic: container field names come from DebugConfig and
any mapping under them that carries a name or id is treated as a call.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from pipeline_debug.replay.schemas import ToolCall, ToolResult


def _items(container: Any) -> list[Any]:
    if isinstance(container, Mapping):
        return [container]
    if isinstance(container, Sequence) and not isinstance(container, (str, bytes)):
        return list(container)
    return []


def _arguments(call: Mapping[str, Any]) -> Any:
    if "args" in call:
        return call["args"]
    function = call.get("function")
    if isinstance(function, Mapping) and "arguments" in function:
        arguments = function["arguments"]
        if isinstance(arguments, str):
            try:
                return json.loads(arguments)
            except ValueError:
                return arguments
        return arguments
    if "parameters" in call:
        return call["parameters"]
    return call.get("input")


def _name(call: Mapping[str, Any]) -> str:
    name = call.get("name")
    if not name and isinstance(call.get("function"), Mapping):
        name = call["function"].get("name")
    return str(name or "")


def _walk_containers(value: Any, fields: Sequence[str], visited: set[int]) -> list[Any]:
    """Collect items found under any of the given field names, at any depth."""
    if not isinstance(value, (Mapping, list, tuple)) or id(value) in visited:
        return []
    visited.add(id(value))

    found: list[Any] = []
    if isinstance(value, Mapping):
        for key, child in value.items():
            if key in fields:
                found.extend(_items(child))
            found.extend(_walk_containers(child, fields, visited))
    else:
        for child in value:
            found.extend(_walk_containers(child, fields, visited))
    return found


def find_tool_calls(data: Any, record_id: str, fields: Sequence[str]) -> list[ToolCall]:
    """Extract tool calls from a payload.

    Calls without an id get ``{record_id}-tool-{index}`` so repeated scans
    of the same record agree.
    """
    calls = []
    for item in _walk_containers(data, fields, set()):
        if not isinstance(item, Mapping):
            continue
        name = _name(item)
        if not name:
            continue
        call_id = item.get("id") or item.get("tool_call_id")
        calls.append(
            ToolCall(
                id=str(call_id or f"{record_id}-tool-{len(calls)}"),
                name=name,
                arguments=_arguments(item),
            )
        )
    return calls


def find_tool_results(data: Any, fields: Sequence[str]) -> list[dict[str, Any]]:
    """Extract tool-result mappings from a payload."""
    return [dict(item) for item in _walk_containers(data, fields, set()) if isinstance(item, Mapping)]


def _optional_text(value: Any) -> str | None:
    return None if value is None or value == "" else str(value)


def result_call_id(result: Mapping[str, Any]) -> str | None:
    """Id of the call a result answers; recorded ids may be numbers."""
    return _optional_text(result.get("tool_call_id") or result.get("id"))


def to_tool_result(result: Mapping[str, Any], source_file: str, timestamp: Any) -> ToolResult:
    """Build a ToolResult from a recorded mapping, coercing ids and names to text."""
    return ToolResult(
        tool_call_id=result_call_id(result),
        name=_optional_text(result.get("name")),
        content=result.get("content", result.get("result", result)),
        source_file=source_file,
        timestamp=_optional_text(timestamp),
    )


def result_matches(result: Mapping[str, Any], call_id: str | None, name: str | None) -> bool:
    if call_id and (result.get("tool_call_id") == call_id or result.get("id") == call_id):
        return True
    return bool(name) and result.get("name") == name
