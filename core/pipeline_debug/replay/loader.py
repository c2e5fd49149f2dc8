"""DatabaseDataLoader - read scenarios and recorded layer data for replay.

Scenario lookup failures are surfaced; a single unreadable record detail
is logged and skipped so it cannot abort a whole replay.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pipeline_debug.config import DebugConfig
from pipeline_debug.errors import (
    CorruptRecordError,
    RecordNotFoundError,
    SessionNotFoundError,
    StorageIOError,
)
from pipeline_debug.recording.schemas import ReplayScenario, ScenarioRecordRef
from pipeline_debug.replay.schemas import ScenarioSummary, ToolResult
from pipeline_debug.replay.tool_calls import find_tool_results, result_matches, to_tool_result
from pipeline_debug.storage import Namespace, RecordStore
from pipeline_debug.timestamps import EPOCH, parse_timestamp

logger = logging.getLogger(__name__)


class DatabaseDataLoader:
    """Loads replay inputs from a RecordStore."""

    def __init__(self, store: RecordStore, config: DebugConfig | None = None) -> None:
        self._store = store
        self._config = config or DebugConfig(root_path=store.root)

    @property
    def store(self) -> RecordStore:
        return self._store

    def _scenarios(self) -> list[tuple[Path, ReplayScenario]]:
        scenarios = []
        for path in self._store.list_records(Namespace.REPLAY, prefix="scenario-"):
            try:
                scenario = ReplayScenario(**self._store.read_record(path))
            except (CorruptRecordError, ValidationError) as e:
                logger.warning(f"Skipping unreadable scenario {path.name}: {e}")
                continue
            scenarios.append((path, scenario))
        return scenarios

    def list_scenarios(self) -> list[ScenarioSummary]:
        """Summaries of every readable scenario, oldest first."""
        summaries = [
            ScenarioSummary(
                scenario_id=s.scenario_id,
                scenario_name=s.scenario_name,
                session_id=s.session_id,
                created_at=s.created_at,
                record_count=len(s.records),
                file_path=str(path),
            )
            for path, s in self._scenarios()
        ]
        summaries.sort(key=lambda s: parse_timestamp(s.created_at) or EPOCH)
        return summaries

    def find_scenario(self, session_id: str, scenario_name: str | None = None) -> ReplayScenario:
        """Most recently created scenario for a session.

        Raises:
            SessionNotFoundError: If no scenario references the session.
        """
        candidates = [
            s
            for _, s in self._scenarios()
            if s.session_id == session_id
            and (scenario_name is None or s.scenario_name == scenario_name)
        ]
        if not candidates:
            raise SessionNotFoundError(session_id)
        return max(candidates, key=lambda s: parse_timestamp(s.created_at) or EPOCH)

    async def load_session_data(
        self, session_id: str, scenario_name: str | None = None
    ) -> ReplayScenario:
        """Async version of find_scenario."""
        return await asyncio.to_thread(self.find_scenario, session_id, scenario_name)

    async def load_record_detail(self, record: ScenarioRecordRef) -> dict[str, Any] | None:
        """Read a referenced record, or None if it is missing or unreadable."""
        try:
            return await self._store.read_record_async(record.file_path)
        except (RecordNotFoundError, CorruptRecordError, StorageIOError) as e:
            logger.warning(f"Could not load record {record.record_id}: {e}")
            return None

    def collect_tool_results(self) -> list[ToolResult]:
        """Every tool result found in the layers namespace, in file order.

        A layer record that can't be read or holds malformed results is
        logged and skipped.
        """
        collected: list[ToolResult] = []
        for path in self._store.list_records(Namespace.LAYERS):
            try:
                record = self._store.read_record(path)
                if not isinstance(record, dict):
                    continue
                found = [
                    to_tool_result(result, str(path), record.get("timestamp"))
                    for result in find_tool_results(
                        record.get("data"), self._config.tool_result_fields
                    )
                ]
            except (CorruptRecordError, RecordNotFoundError, StorageIOError, ValidationError) as e:
                logger.warning(f"Skipping unreadable layer record {path.name}: {e}")
                continue
            collected.extend(found)
        return collected

    @staticmethod
    def match_tool_result(
        results: list[ToolResult], call_id: str | None, name: str | None
    ) -> ToolResult | None:
        """First result matching by id, falling back to the first matching by name."""
        if call_id:
            for result in results:
                if result_matches({"tool_call_id": result.tool_call_id}, call_id, None):
                    return result
        if name:
            for result in results:
                if result_matches({"name": result.name}, None, name):
                    return result
        return None

    def find_tool_call_result(self, call_id: str | None, name: str | None) -> ToolResult | None:
        """Scan the layers namespace for a recorded result of a tool call."""
        return self.match_tool_result(self.collect_tool_results(), call_id, name)
