"""
Debug Configuration Models

Defines the configuration for the pipeline debug subsystem:
- Storage root and feature toggles
- Redaction patterns and payload size budget
- Tool-call detection field names
- Replay options
"""

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ROOT_PATH = Path.home() / ".route-claudecode" / "database"

SCHEMA_VERSION = "v3.0-refactor"

DEFAULT_SENSITIVE_PATTERNS: tuple[str, ...] = (
    r"password",
    r"secret",
    r"token",
    r"key$",
    r"auth",
    r"credential",
    r"bearer",
)

DEFAULT_TOOL_CALL_FIELDS: tuple[str, ...] = (
    "tool_calls",
    "toolCalls",
    "tools",
    "function_calls",
)

DEFAULT_TOOL_RESULT_FIELDS: tuple[str, ...] = (
    "tool_results",
    "toolResults",
    "results",
    "tool_call_results",
)

MIN_REPLAY_SPEED = 0.1
MAX_REPLAY_SPEED = 10.0


def clamp_speed(speed: float) -> float:
    """Clamp a replay speed multiplier to the supported range."""
    return max(MIN_REPLAY_SPEED, min(MAX_REPLAY_SPEED, float(speed)))


@dataclass
class DebugConfig:
    """Configuration for recording, auditing and replay."""

    root_path: Path = field(default_factory=lambda: DEFAULT_ROOT_PATH)

    enable_recording: bool = True
    enable_audit_trail: bool = True
    enable_performance_metrics: bool = True
    enable_replay: bool = True

    redaction_marker: str = "[REDACTED]"
    sensitive_patterns: tuple[str, ...] = DEFAULT_SENSITIVE_PATTERNS

    # Serialized characters per sanitized payload. 0 disables the budget.
    max_payload_chars: int = 1_000_000

    tool_call_fields: tuple[str, ...] = DEFAULT_TOOL_CALL_FIELDS
    tool_result_fields: tuple[str, ...] = DEFAULT_TOOL_RESULT_FIELDS

    def __post_init__(self) -> None:
        self.root_path = Path(self.root_path).expanduser()


@dataclass
class ReplayOptions:
    """Options for a dynamic replay run."""

    strict_data_mode: bool = True
    preserve_timestamp: bool = True
    replay_from_step: int = 0
    only_replay_layers: list[str] | None = None
    scenario_name: str | None = None
    speed: float = 1.0

    def __post_init__(self) -> None:
        self.speed = clamp_speed(self.speed)
        if self.replay_from_step < 0:
            self.replay_from_step = 0

    def to_dict(self) -> dict:
        return {
            "strict_data_mode": self.strict_data_mode,
            "preserve_timestamp": self.preserve_timestamp,
            "replay_from_step": self.replay_from_step,
            "only_replay_layers": self.only_replay_layers,
            "scenario_name": self.scenario_name,
            "speed": self.speed,
        }
