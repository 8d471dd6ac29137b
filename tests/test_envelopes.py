"""
Unit tests for session envelopes.

Tests wire aliases, discriminated parsing, legacy message upgrade and the
history helpers.
"""

import pytest
from pydantic import ValidationError

from switchboard.core.harness.models import HarnessErrorCode, HarnessId, ToolResult
from switchboard.core.session.envelopes import (
    AbortEnvelope,
    CompleteEnvelope,
    ErrorEnvelope,
    QueryOptions,
    RawMessageEnvelope,
    StartQueryEnvelope,
    StderrEnvelope,
    ToolCallEnvelope,
    ToolResponseEnvelope,
    extract_errors,
    extract_raw_messages,
    extract_stderr,
    has_only_init_message,
    is_terminal,
    parse_envelope,
)


class TestWireFormat:
    """Test camelCase serialization of envelopes."""

    def test_to_wire_uses_camel_case(self):
        """Test that snake_case fields serialize with camelCase keys."""
        envelope = ToolCallEnvelope(
            execution_id="exec-1", call_id="call-1", tool_name="lookup", args={"q": 1}
        )
        wire = envelope.to_wire()
        assert wire["executionId"] == "exec-1"
        assert wire["callId"] == "call-1"
        assert wire["toolName"] == "lookup"
        assert wire["direction"] == "execution"
        assert wire["type"] == "tool_call"
        assert "execution_id" not in wire

    def test_ids_are_unique(self):
        """Test that each envelope gets its own id."""
        first = AbortEnvelope(execution_id="exec-1")
        second = AbortEnvelope(execution_id="exec-1")
        assert first.id != second.id

    def test_envelopes_are_frozen(self):
        """Test that envelopes cannot be mutated after creation."""
        envelope = StderrEnvelope(execution_id="exec-1", data="warn")
        with pytest.raises(ValidationError):
            envelope.data = "changed"

    def test_start_query_options_serialize(self):
        """Test that nested query options use camelCase too."""
        envelope = StartQueryEnvelope(
            execution_id="exec-1",
            prompt="hi",
            options=QueryOptions(harness_id=HarnessId.CODEX, resume_session_id="s-1"),
        )
        wire = envelope.to_wire()
        assert wire["options"]["harnessId"] == "codex"
        assert wire["options"]["resumeSessionId"] == "s-1"


class TestParseEnvelope:
    """Test parse_envelope discriminated validation."""

    def test_round_trip_preserves_type_and_id(self):
        """Test that a serialized envelope parses back to the same model."""
        original = ErrorEnvelope(
            execution_id="exec-1", error="boom", code=HarnessErrorCode.PROCESS_CRASHED
        )
        parsed = parse_envelope(original.to_wire())
        assert isinstance(parsed, ErrorEnvelope)
        assert parsed.id == original.id
        assert parsed.code == HarnessErrorCode.PROCESS_CRASHED

    def test_tool_response_with_result(self):
        """Test that tool_response results validate into ToolResult."""
        parsed = parse_envelope(
            {
                "type": "tool_response",
                "direction": "command",
                "executionId": "exec-1",
                "callId": "call-1",
                "result": {"content": "42"},
            }
        )
        assert isinstance(parsed, ToolResponseEnvelope)
        assert parsed.result == ToolResult(content="42")
        assert parsed.error is None

    def test_legacy_sdk_message_becomes_claude_raw_message(self):
        """Test that recorded sdk_message envelopes read as Claude Code raw messages."""
        parsed = parse_envelope(
            {
                "type": "sdk_message",
                "direction": "execution",
                "executionId": "exec-1",
                "message": {"type": "assistant"},
            }
        )
        assert isinstance(parsed, RawMessageEnvelope)
        assert parsed.harness_id == HarnessId.CLAUDE_CODE
        assert parsed.message == {"type": "assistant"}

    def test_unknown_type_rejected(self):
        """Test that an unknown envelope type fails validation."""
        with pytest.raises(ValidationError):
            parse_envelope({"type": "mystery", "executionId": "exec-1"})


class TestHistoryHelpers:
    """Test helpers that inspect an envelope log."""

    def _history(self):
        return [
            RawMessageEnvelope(
                execution_id="e",
                harness_id=HarnessId.CLAUDE_CODE,
                message={"type": "system", "subtype": "init", "session_id": "abc"},
            ),
            StderrEnvelope(execution_id="e", data="warning: slow"),
            ErrorEnvelope(execution_id="e", error="failed"),
        ]

    def test_extractors(self):
        """Test that raw messages, stderr and errors are pulled out in order."""
        history = self._history()
        assert len(extract_raw_messages(history)) == 1
        assert extract_stderr(history) == ["warning: slow"]
        assert extract_errors(history) == ["failed"]

    def test_has_only_init_message_claude(self):
        """Test detection of a Claude run that never got past init."""
        assert has_only_init_message(self._history()) is True

    def test_has_only_init_message_codex(self):
        """Test detection of a Codex run that never got past thread.started."""
        history = [
            RawMessageEnvelope(
                execution_id="e",
                harness_id=HarnessId.CODEX,
                message={"type": "thread.started", "thread_id": "t"},
            )
        ]
        assert has_only_init_message(history) is True

    def test_has_only_init_message_false_with_content(self):
        """Test that a run with real output is not flagged."""
        history = self._history() + [
            RawMessageEnvelope(
                execution_id="e", harness_id=HarnessId.CLAUDE_CODE, message={"type": "assistant"}
            )
        ]
        assert has_only_init_message(history) is False

    def test_is_terminal(self):
        """Test that only complete and error are terminal."""
        assert is_terminal(CompleteEnvelope(execution_id="e"))
        assert is_terminal(ErrorEnvelope(execution_id="e", error="x"))
        assert not is_terminal(StderrEnvelope(execution_id="e", data="x"))
        assert not is_terminal(AbortEnvelope(execution_id="e"))
