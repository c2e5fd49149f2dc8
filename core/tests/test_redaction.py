"""Tests for sensitive-field redaction and payload budgeting."""

from dataclasses import dataclass

from pydantic import BaseModel

from pipeline_debug.config import DebugConfig
from pipeline_debug.redaction import (
    CIRCULAR_MARKER,
    TRUNCATION_SUFFIX,
    Sanitizer,
    canonical_text,
    payload_size,
)


class _Credentials(BaseModel):
    user: str
    password: str


@dataclass
class _Request:
    model: str
    auth_header: str


class TestSensitiveFields:
    def test_default_patterns(self):
        sanitizer = Sanitizer()

        for name in ["password", "apiKey", "api_key", "client_secret", "Authorization", "bearer", "credentials", "refresh_token"]:
            assert sanitizer.is_sensitive_field(name), name

        for name in ["prompt", "model", "messages", "keyboard"]:
            assert not sanitizer.is_sensitive_field(name), name


class TestSanitize:
    def test_redacts_top_level_key_and_keeps_others(self):
        result = Sanitizer().sanitize({"apiKey": "sk-123", "prompt": "hi"})

        assert result == {"apiKey": "[REDACTED]", "prompt": "hi"}

    def test_redacts_at_every_depth_and_array_position(self):
        data = {
            "request": {
                "headers": [{"authorization": "Bearer x"}, {"accept": "json"}],
                "nested": {"deeper": {"password": "p"}},
            }
        }

        result = Sanitizer().sanitize(data)

        assert result["request"]["headers"][0]["authorization"] == "[REDACTED]"
        assert result["request"]["headers"][1]["accept"] == "json"
        assert result["request"]["nested"]["deeper"]["password"] == "[REDACTED]"

    def test_input_is_not_mutated(self):
        data = {"secret": "s", "inner": {"token": "t"}}

        Sanitizer().sanitize(data)

        assert data == {"secret": "s", "inner": {"token": "t"}}

    def test_custom_marker(self):
        sanitizer = Sanitizer(DebugConfig(redaction_marker="***"))

        assert sanitizer.sanitize({"secret": "s"}) == {"secret": "***"}

    def test_scalars_pass_through(self):
        sanitizer = Sanitizer()

        assert sanitizer.sanitize("text") == "text"
        assert sanitizer.sanitize(42) == 42
        assert sanitizer.sanitize(None) is None

    def test_unknown_objects_pass_through(self):
        marker = object()

        assert Sanitizer().sanitize({"value": marker})["value"] is marker

    def test_tuples_become_lists(self):
        assert Sanitizer().sanitize(({"key": 1}, 2)) == [{"key": "[REDACTED]"}, 2]

    def test_models_and_dataclasses_are_walked(self):
        result = Sanitizer().sanitize(
            {"creds": _Credentials(user="u", password="p"), "req": _Request("gpt-4", "h")}
        )

        assert result["creds"] == {"user": "u", "password": "[REDACTED]"}
        assert result["req"] == {"model": "gpt-4", "auth_header": "[REDACTED]"}

    def test_circular_reference_terminates(self):
        data: dict = {"name": "loop"}
        data["self"] = data

        result = Sanitizer().sanitize(data)

        assert result["name"] == "loop"
        assert result["self"] == CIRCULAR_MARKER

    def test_shared_subtree_is_not_circular(self):
        shared = {"v": 1}

        result = Sanitizer().sanitize({"a": shared, "b": shared})

        assert result == {"a": {"v": 1}, "b": {"v": 1}}


class TestSizeBudget:
    def test_under_budget_is_unchanged(self):
        sanitizer = Sanitizer(DebugConfig(max_payload_chars=100))

        assert sanitizer.apply_size_budget({"a": 1}) == ({"a": 1}, False)

    def test_over_budget_is_truncated(self):
        sanitizer = Sanitizer(DebugConfig(max_payload_chars=10))

        value, truncated = sanitizer.apply_size_budget({"text": "x" * 50})

        assert truncated is True
        assert value.endswith(TRUNCATION_SUFFIX)
        assert len(value) == 10 + len(TRUNCATION_SUFFIX)

    def test_zero_disables_budget(self):
        sanitizer = Sanitizer(DebugConfig(max_payload_chars=0))

        assert sanitizer.apply_size_budget("x" * 10_000) == ("x" * 10_000, False)

    def test_prepare_reports_original_size(self):
        sanitizer = Sanitizer(DebugConfig(max_payload_chars=10))
        data = {"text": "x" * 50}

        stored, size, truncated = sanitizer.prepare(data)

        assert size == payload_size(data)
        assert truncated is True
        assert isinstance(stored, str)


class TestCanonicalText:
    def test_key_order_independent(self):
        assert canonical_text({"a": 1, "b": 2}) == canonical_text({"b": 2, "a": 1})

    def test_different_values_differ(self):
        assert canonical_text({"a": 1}) != canonical_text({"a": 2})
