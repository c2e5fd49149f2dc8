"""DynamicReplayEngine - play back a recorded session from persisted data only.

The engine loads a replay scenario for a session, reconstructs the
interaction timeline from the referenced record files, pairs tool calls
with recorded results, and walks the timeline in timestamp order. Nothing
is synthesized: a tool call with no recorded result is reported, not
replayed.

States::

    idle -> running -> completed | error | stopped
            running <-> paused

Usage:
    engine = DynamicReplayEngine(store)
    engine.subscribe(EventType.INTERACTION_REPLAYED, on_step)
    result = await engine.start_dynamic_replay(session_id, ReplayOptions(speed=2.0))

pause(), resume(), stop() and set_speed() take effect between steps and
must be called from the event loop running the replay.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from pipeline_debug.config import DebugConfig, ReplayOptions, clamp_speed
from pipeline_debug.errors import InvalidOperationError
from pipeline_debug.events import EventBus, EventHandler, EventType
from pipeline_debug.recording.schemas import ReplayScenario, ScenarioRecordRef
from pipeline_debug.replay.loader import DatabaseDataLoader
from pipeline_debug.replay.schemas import (
    Interaction,
    InteractionResult,
    ReplayResult,
    ReplayState,
    ReplayStatus,
    ToolCallMapping,
    ToolResult,
)
from pipeline_debug.replay.tool_calls import (
    find_tool_calls,
    find_tool_results,
    result_call_id,
    to_tool_result,
)
from pipeline_debug.session import new_id
from pipeline_debug.storage import Namespace, RecordStore
from pipeline_debug.timestamps import EPOCH, iso_now, parse_timestamp

logger = logging.getLogger(__name__)

_ACTIVE_STATES = frozenset({ReplayState.RUNNING, ReplayState.PAUSED})


def _first_timestamp(*candidates: Any) -> str:
    """First candidate that is a parseable timestamp string."""
    for value in candidates:
        if isinstance(value, str) and parse_timestamp(value) is not None:
            return value
    return next((v for v in candidates if isinstance(v, str) and v), "")


def _timeline_key(interaction: Interaction) -> datetime:
    return parse_timestamp(interaction.timestamp) or EPOCH


def _gap_seconds(earlier: Interaction, later: Interaction) -> float:
    """Recorded gap between two interactions; 0 when either time is unknown."""
    start = parse_timestamp(earlier.timestamp)
    end = parse_timestamp(later.timestamp)
    if start is None or end is None:
        return 0.0
    return max((end - start).total_seconds(), 0.0)


class DynamicReplayEngine:
    """Replays one session at a time."""

    def __init__(
        self,
        store: RecordStore | None = None,
        config: DebugConfig | None = None,
        loader: DatabaseDataLoader | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config or DebugConfig()
        self._store = store or RecordStore(self._config.root_path)
        self._loader = loader or DatabaseDataLoader(self._store, self._config)
        self._events = event_bus or EventBus(source="replay")

        self._state = ReplayState.IDLE
        self._options = ReplayOptions()
        self._speed = self._options.speed
        self._replay_id: str | None = None
        self._session_id: str | None = None

        self._timeline: list[Interaction] = []
        self._layer_records: dict[str, list[Interaction]] = {}
        self._tool_calls: dict[str, ToolCallMapping] = {}
        self._current_step = 0

        self._resume_signal: asyncio.Event | None = None
        self._wake_signal: asyncio.Event | None = None

    @property
    def state(self) -> ReplayState:
        return self._state

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def loader(self) -> DatabaseDataLoader:
        return self._loader

    @property
    def timeline(self) -> list[Interaction]:
        return [i.model_copy(deep=True) for i in self._timeline]

    @property
    def tool_call_mappings(self) -> dict[str, ToolCallMapping]:
        return {k: v.model_copy(deep=True) for k, v in self._tool_calls.items()}

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        self._events.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType | str, handler: EventHandler) -> bool:
        return self._events.unsubscribe(event_type, handler)

    async def start_dynamic_replay(
        self, session_id: str, options: ReplayOptions | None = None
    ) -> ReplayResult:
        """Replay a recorded session.

        Raises:
            InvalidOperationError: If a replay is already in progress.
            SessionNotFoundError: If no scenario exists for the session.
        """
        if self._state in _ACTIVE_STATES:
            raise InvalidOperationError(f"Replay {self._replay_id} is already {self._state}")

        self._options = options or ReplayOptions()
        self._speed = clamp_speed(self._options.speed)
        self._replay_id = new_id()
        self._session_id = session_id
        self._current_step = 0
        self._timeline = []
        self._layer_records = {}
        self._tool_calls = {}
        self._resume_signal = asyncio.Event()
        self._resume_signal.set()
        self._wake_signal = asyncio.Event()

        self._state = ReplayState.RUNNING
        started_at = iso_now()
        self._events.emit(
            EventType.REPLAY_STARTED,
            {
                "replay_id": self._replay_id,
                "session_id": session_id,
                "options": self._options.to_dict(),
            },
        )
        logger.info(f"Starting replay {self._replay_id} of session {session_id}")

        try:
            scenario = await self._loader.load_session_data(
                session_id, self._options.scenario_name
            )
            await self.build_data_mappings(scenario)
            result = await self._execute_replay(scenario, started_at)

            if self._state == ReplayState.STOPPED:
                result.state = ReplayState.STOPPED
            else:
                self._state = ReplayState.COMPLETED
                result.state = ReplayState.COMPLETED
            self._save_result(result)
        except Exception as e:
            self._state = ReplayState.ERROR
            logger.error(f"Replay {self._replay_id} of session {session_id} failed: {e}")
            self._events.emit(
                EventType.REPLAY_ERROR,
                {"replay_id": self._replay_id, "session_id": session_id, "error": str(e)},
            )
            raise

        if result.state == ReplayState.COMPLETED:
            self._events.emit(
                EventType.REPLAY_COMPLETED,
                result.model_dump(exclude={"interactions"}),
            )
        logger.info(
            f"Replay {self._replay_id} {result.state}: "
            f"{result.completed_interactions}/{result.total_interactions} interactions, "
            f"coverage {result.data_coverage_rate:.1f}%"
        )
        return result

    async def build_data_mappings(self, scenario: ReplayScenario) -> None:
        """Load record details, pair tool calls with results and sort the timeline.

        A record whose detail is missing or malformed is dropped in strict
        data mode and kept as an empty interaction otherwise.
        """
        known_results = await asyncio.to_thread(self._loader.collect_tool_results)

        timeline: list[Interaction] = []
        self._layer_records = {}
        self._tool_calls = {}

        for ref in scenario.records:
            detail = await self._loader.load_record_detail(ref)
            interaction = self._interaction_from_detail(scenario, ref, detail)
            if interaction is None:
                if self._options.strict_data_mode:
                    logger.warning(f"Skipping record {ref.record_id}: detail unavailable")
                    continue
                interaction = Interaction(
                    timestamp=_first_timestamp(ref.timestamp, scenario.created_at),
                    record_id=ref.record_id,
                    layer=ref.layer,
                    operation=ref.operation,
                    metadata={"detail_missing": True},
                    file_path=ref.file_path,
                )

            self._layer_records.setdefault(interaction.key, []).append(interaction)
            self._register_tool_calls(interaction, known_results)
            timeline.append(interaction)

        timeline.sort(key=_timeline_key)
        self._timeline = timeline
        logger.info(
            f"Built replay mappings: {len(self._layer_records)} layer operations, "
            f"{len(self._tool_calls)} tool calls, {len(timeline)} interactions"
        )

    def _interaction_from_detail(
        self, scenario: ReplayScenario, ref: ScenarioRecordRef, detail: Any
    ) -> Interaction | None:
        if detail is None:
            return None
        if not isinstance(detail, dict):
            logger.warning(f"Record {ref.record_id} is not a mapping")
            return None
        metadata = detail.get("metadata")
        try:
            return Interaction(
                timestamp=_first_timestamp(
                    detail.get("timestamp"), ref.timestamp, scenario.created_at
                ),
                record_id=ref.record_id,
                layer=ref.layer,
                operation=ref.operation,
                data=detail.get("data"),
                metadata=metadata if isinstance(metadata, dict) else {},
                file_path=ref.file_path,
            )
        except ValidationError as e:
            logger.warning(f"Record {ref.record_id} is malformed: {e}")
            return None

    def _register_tool_calls(
        self, interaction: Interaction, known_results: list[ToolResult]
    ) -> None:
        for call in find_tool_calls(
            interaction.data, interaction.record_id, self._config.tool_call_fields
        ):
            result = self._loader.match_tool_result(known_results, call.id, call.name)
            self._tool_calls[call.id] = ToolCallMapping(
                tool_call=call,
                result=result,
                record_id=interaction.record_id,
                timestamp=interaction.timestamp,
                has_real_result=result is not None,
            )
            if result is None:
                logger.warning(f"No recorded result for tool call {call.name} ({call.id})")

        # Results carried in the same payload as earlier calls
        for item in find_tool_results(interaction.data, self._config.tool_result_fields):
            call_id = result_call_id(item)
            mapping = self._tool_calls.get(call_id) if call_id else None
            if mapping is None or mapping.has_real_result:
                continue
            mapping.result = to_tool_result(item, interaction.file_path, interaction.timestamp)
            mapping.has_real_result = True

    async def _wait_until_runnable(self) -> bool:
        while self._state == ReplayState.PAUSED and self._resume_signal is not None:
            await self._resume_signal.wait()
        return self._state == ReplayState.RUNNING

    async def _delay(self, seconds: float) -> None:
        if seconds <= 0 or self._wake_signal is None:
            return
        try:
            await asyncio.wait_for(self._wake_signal.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def _replay_interaction(self, step: int, interaction: Interaction) -> InteractionResult:
        result = InteractionResult(
            step=step,
            record_id=interaction.record_id,
            layer=interaction.layer,
            operation=interaction.operation,
            timestamp=interaction.timestamp,
            has_real_data=interaction.has_real_data,
        )
        for call in find_tool_calls(
            interaction.data, interaction.record_id, self._config.tool_call_fields
        ):
            result.tool_calls_found += 1
            mapping = self._tool_calls.get(call.id)
            if mapping is not None and mapping.has_real_result:
                result.tool_calls_replayed += 1
            else:
                result.unmatched_tool_calls.append(call.id)
                logger.warning(
                    f"[{step}] Tool call {call.name} ({call.id}) has no recorded result"
                )
        return result

    async def _execute_replay(self, scenario: ReplayScenario, started_at: str) -> ReplayResult:
        total = len(self._timeline)
        result = ReplayResult(
            replay_id=self._replay_id or "",
            session_id=scenario.session_id,
            scenario_name=scenario.scenario_name,
            state=ReplayState.RUNNING,
            started_at=started_at,
            total_interactions=total,
            options=self._options.to_dict(),
        )
        only_layers = self._options.only_replay_layers

        for index in range(self._options.replay_from_step, total):
            if not await self._wait_until_runnable():
                break

            interaction = self._timeline[index]
            if only_layers is not None and interaction.layer not in only_layers:
                result.skipped_interactions += 1
                continue

            self._current_step = index + 1
            try:
                step_result = self._replay_interaction(self._current_step, interaction)
            except Exception as e:
                logger.error(f"[{self._current_step}/{total}] Replay of {interaction.key} failed: {e}")
                result.errors.append(
                    {
                        "step": self._current_step,
                        "record_id": interaction.record_id,
                        "error": str(e),
                        "timestamp": iso_now(),
                    }
                )
                continue

            result.interactions.append(step_result)
            result.completed_interactions += 1
            result.tool_calls_replayed += step_result.tool_calls_replayed
            result.unmatched_tool_calls += len(step_result.unmatched_tool_calls)

            self._events.emit(
                EventType.INTERACTION_REPLAYED,
                {
                    "replay_id": self._replay_id,
                    "step": self._current_step,
                    "total_steps": total,
                    "progress": self._progress(),
                    "record_id": interaction.record_id,
                    "layer": interaction.layer,
                    "operation": interaction.operation,
                    "tool_calls_replayed": step_result.tool_calls_replayed,
                },
            )

            following = self._next_replayed(index + 1, only_layers)
            if self._options.preserve_timestamp and following is not None:
                await self._delay(_gap_seconds(interaction, following) / self._speed)

        with_data = sum(1 for r in result.interactions if r.has_real_data)
        if result.completed_interactions:
            result.data_coverage_rate = with_data / result.completed_interactions * 100
        result.finished_at = iso_now()
        return result

    def _next_replayed(self, start: int, only_layers: list[str] | None) -> Interaction | None:
        for interaction in self._timeline[start:]:
            if only_layers is None or interaction.layer in only_layers:
                return interaction
        return None

    def _save_result(self, result: ReplayResult) -> None:
        path = self._store.write_record(
            Namespace.REPLAY,
            f"result-{result.replay_id}-{int(time.time() * 1000)}",
            result,
        )
        logger.info(f"Saved replay result to {path}")

    def _progress(self) -> float:
        total = len(self._timeline)
        return self._current_step / total * 100 if total else 0.0

    def get_replay_status(self) -> ReplayStatus:
        options = self._options.to_dict()
        options["speed"] = self._speed
        return ReplayStatus(
            state=self._state,
            replay_id=self._replay_id,
            session_id=self._session_id,
            current_step=self._current_step,
            total_steps=len(self._timeline),
            progress=self._progress(),
            speed=self._speed,
            interaction_count=len(self._timeline),
            tool_call_count=len(self._tool_calls),
            layer_operation_count=len(self._layer_records),
            options=options,
        )

    def pause(self) -> bool:
        if self._state != ReplayState.RUNNING:
            return False
        self._state = ReplayState.PAUSED
        if self._resume_signal is not None:
            self._resume_signal.clear()
        self._events.emit(EventType.REPLAY_PAUSED, {"replay_id": self._replay_id})
        return True

    def resume(self) -> bool:
        if self._state != ReplayState.PAUSED:
            return False
        self._state = ReplayState.RUNNING
        if self._resume_signal is not None:
            self._resume_signal.set()
        self._events.emit(EventType.REPLAY_RESUMED, {"replay_id": self._replay_id})
        return True

    def stop(self) -> bool:
        if self._state not in _ACTIVE_STATES:
            return False
        self._state = ReplayState.STOPPED
        if self._resume_signal is not None:
            self._resume_signal.set()
        if self._wake_signal is not None:
            self._wake_signal.set()
        self._events.emit(EventType.REPLAY_STOPPED, {"replay_id": self._replay_id})
        return True

    def set_speed(self, speed: float) -> float:
        """Set the replay speed multiplier, clamped to [0.1, 10.0]."""
        self._speed = clamp_speed(speed)
        self._events.emit(
            EventType.SPEED_CHANGED, {"replay_id": self._replay_id, "speed": self._speed}
        )
        return self._speed
