"""Tests for converting stored messages into collector events."""

from datetime import UTC, datetime

from aiobscura.collector.events import (
    CollectorEvent,
    compute_event_hash,
    session_start_event,
)
from aiobscura.models.db import (
    Assistant,
    AssistantSession,
    AuthorRole,
    Message,
    MessageType,
    Project,
)

EMITTED = datetime(2025, 6, 2, 10, 0, 0, tzinfo=UTC)
OBSERVED = datetime(2025, 6, 2, 10, 0, 5, tzinfo=UTC)


def message(message_type: MessageType, **fields) -> Message:
    fields.setdefault("author_role", AuthorRole.ASSISTANT)
    return Message(
        session_id="sess-1",
        thread_id="sess-1-main",
        seq=1,
        emitted_at=EMITTED,
        observed_at=OBSERVED,
        message_type=message_type,
        **fields,
    )


class TestEventHash:
    def test_hash_is_stable_across_key_order(self):
        first = compute_event_hash("message", EMITTED, {"a": 1, "b": 2})
        second = compute_event_hash("message", EMITTED, {"b": 2, "a": 1})

        assert first == second
        assert len(first) == 32

    def test_hash_depends_on_type_time_and_data(self):
        base = compute_event_hash("message", EMITTED, {"a": 1})

        assert compute_event_hash("tool_call", EMITTED, {"a": 1}) != base
        assert compute_event_hash("message", OBSERVED, {"a": 1}) != base
        assert compute_event_hash("message", EMITTED, {"a": 2}) != base


class TestFromMessage:
    """Tests for mapping message types to event payloads."""

    def test_prompt(self):
        event = CollectorEvent.from_message(
            message(MessageType.PROMPT, author_role=AuthorRole.HUMAN, content="fix the bug")
        )

        assert event.event_type == "message"
        assert event.emitted_at == EMITTED
        assert event.observed_at == OBSERVED
        assert event.data == {
            "author_role": "human",
            "message_type": "prompt",
            "content": "fix the bug",
        }

    def test_response_carries_token_usage(self):
        event = CollectorEvent.from_message(
            message(MessageType.RESPONSE, content="done", tokens_in=100, tokens_out=None)
        )

        assert event.data["token_usage"] == {"input_tokens": 100, "output_tokens": 0}

    def test_tool_call(self):
        event = CollectorEvent.from_message(
            message(
                MessageType.TOOL_CALL,
                tool_name="Read",
                tool_input={"file_path": "/a.py"},
                extra_data={"tool_use_id": "toolu_1"},
            )
        )

        assert event.event_type == "tool_call"
        assert event.data == {
            "tool_name": "Read",
            "tool_use_id": "toolu_1",
            "parameters": {"file_path": "/a.py"},
        }

    def test_failed_tool_result(self):
        event = CollectorEvent.from_message(
            message(
                MessageType.TOOL_RESULT,
                author_role=AuthorRole.TOOL,
                content="No such file",
                tool_result="No such file",
                extra_data={"call_id": "call_9", "is_error": True},
            )
        )

        assert event.event_type == "tool_result"
        assert event.data["tool_use_id"] == "call_9"
        assert event.data["success"] is False
        assert event.data["error_message"] == "No such file"

    def test_error(self):
        event = CollectorEvent.from_message(
            message(MessageType.ERROR, author_role=AuthorRole.SYSTEM, content="rate limited")
        )

        assert event.event_type == "error"
        assert event.data == {"error_type": "unknown", "message": "rate limited"}

    def test_wire_format(self):
        event = CollectorEvent(event_type="message", emitted_at=EMITTED, observed_at=OBSERVED)

        wire = event.to_wire()

        assert "event_hash" not in wire
        assert wire["emitted_at"].startswith("2025-06-02T10:00:00")


class TestSessionStart:
    def test_session_start_payload(self):
        session = AssistantSession(
            id="sess-1",
            assistant=Assistant.CLAUDE_CODE,
            backing_model_id="anthropic:claude-sonnet-4",
            started_at=EMITTED,
            source_file_path="/logs/sess-1.jsonl",
            extra_data={
                "cwd": "/home/dev/app",
                "git_branch": "feature/x",
                "cli_version": "2.0.1",
                "slugs": ["plan-a"],
                "internal": "dropped",
            },
        )

        event = session_start_event(session, observed_at=OBSERVED)

        assert event.event_type == "session_start"
        assert event.emitted_at == EMITTED
        assert event.data == {
            "agent_type": "claude-code",
            "agent_version": "2.0.1",
            "working_directory": "/home/dev/app",
            "git_branch": "feature/x",
            "model": "claude-sonnet-4",
            "metadata": {"slugs": ["plan-a"]},
        }

    def test_falls_back_to_project_path_and_git_table(self):
        session = AssistantSession(
            id="rollout",
            assistant=Assistant.CODEX,
            started_at=EMITTED,
            source_file_path="/logs/rollout.jsonl",
            extra_data={"git": {"branch": "main"}},
        )
        project = Project(id="p1", path="/home/dev/svc", created_at=EMITTED)

        event = session_start_event(session, project)

        assert event.data["agent_type"] == "codex"
        assert event.data["agent_version"] == "unknown"
        assert event.data["working_directory"] == "/home/dev/svc"
        assert event.data["git_branch"] == "main"
        assert "model" not in event.data
