"""
Conversion of stored messages into collector events.

Timestamps follow the pipeline they describe:

    source log  ->  aiobscura  ->  collector server
    emitted_at      observed_at    (received_at, set remotely)

Every event carries a content hash so the server can drop duplicates when
a batch is replayed after a crash.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from aiobscura.models.db import AssistantSession, Message, MessageType, Project

# Prompt, response, plan, summary and context all travel as plain messages
EVENT_TYPES: dict[MessageType, str] = {
    MessageType.PROMPT: "message",
    MessageType.RESPONSE: "message",
    MessageType.TOOL_CALL: "tool_call",
    MessageType.TOOL_RESULT: "tool_result",
    MessageType.PLAN: "message",
    MessageType.SUMMARY: "message",
    MessageType.CONTEXT: "message",
    MessageType.ERROR: "error",
}

AGENT_TYPES = {
    "claude_code": "claude-code",
    "codex": "codex",
    "aider": "aider",
    "cursor": "cursor",
}

# Session metadata forwarded in session_start; everything else stays local
SESSION_START_METADATA_KEYS = ("project_path", "slugs", "git", "originator", "source")


class CollectorEvent(BaseModel):
    """Event envelope accepted by ``POST /sessions/{id}/events``."""

    event_type: str
    emitted_at: datetime
    observed_at: datetime
    event_hash: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        if payload["event_hash"] is None:
            del payload["event_hash"]
        return payload

    @classmethod
    def build(
        cls,
        event_type: str,
        emitted_at: datetime,
        data: dict[str, Any],
        observed_at: Optional[datetime] = None,
    ) -> "CollectorEvent":
        return cls(
            event_type=event_type,
            emitted_at=emitted_at,
            observed_at=observed_at or emitted_at,
            event_hash=compute_event_hash(event_type, emitted_at, data),
            data=data,
        )

    @classmethod
    def from_message(cls, message: Message) -> "CollectorEvent":
        event_type = EVENT_TYPES[message.message_type]
        return cls.build(
            event_type,
            message.emitted_at,
            build_event_data(message),
            observed_at=message.observed_at,
        )


def compute_event_hash(event_type: str, emitted_at: datetime, data: dict[str, Any]) -> str:
    """
    Content hash used for server-side deduplication.

    Returns:
        First 32 hex chars of sha256("{type}:{rfc3339}:{json}")
    """
    content = json.dumps(data, separators=(",", ":"), sort_keys=True, default=str)
    digest = hashlib.sha256(f"{event_type}:{emitted_at.isoformat()}:{content}".encode("utf-8"))
    return digest.hexdigest()[:32]


def _metadata(message: Message) -> dict[str, Any]:
    return message.extra_data or {}


def build_event_data(message: Message) -> dict[str, Any]:
    if message.message_type == MessageType.TOOL_CALL:
        return _tool_call_data(message)
    if message.message_type == MessageType.TOOL_RESULT:
        return _tool_result_data(message)
    if message.message_type == MessageType.ERROR:
        return _error_data(message)
    return _message_data(message)


def _message_data(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {
        "author_role": message.author_role.value,
        "message_type": message.message_type.value,
    }
    if message.content is not None:
        data["content"] = message.content
    if message.tokens_in is not None:
        data["token_usage"] = {
            "input_tokens": message.tokens_in,
            "output_tokens": message.tokens_out or 0,
        }
    if message.raw_data:
        data["raw_data"] = message.raw_data
    return data


def _tool_use_id(message: Message) -> Optional[str]:
    metadata = _metadata(message)
    return metadata.get("tool_use_id") or metadata.get("call_id")


def _tool_call_data(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {"tool_name": message.tool_name or "unknown"}
    tool_use_id = _tool_use_id(message)
    if tool_use_id:
        data["tool_use_id"] = tool_use_id
    if message.tool_input is not None:
        data["parameters"] = message.tool_input
    return data


def _tool_result_data(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {}
    tool_use_id = _tool_use_id(message)
    if tool_use_id:
        data["tool_use_id"] = tool_use_id
    success = not bool(_metadata(message).get("is_error", False))
    data["success"] = success
    if message.tool_result is not None:
        data["result"] = message.tool_result
    if not success and message.content:
        data["error_message"] = message.content
    return data


def _error_data(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {"error_type": _metadata(message).get("error_type", "unknown")}
    if message.content is not None:
        data["message"] = message.content
    return data


def _git_branch(metadata: dict[str, Any]) -> Optional[str]:
    if metadata.get("git_branch"):
        return metadata["git_branch"]
    git = metadata.get("git")
    if isinstance(git, dict):
        return git.get("branch")
    return None


def session_start_event(
    session: AssistantSession,
    project: Optional[Project] = None,
    agent_version: Optional[str] = None,
    observed_at: Optional[datetime] = None,
) -> CollectorEvent:
    """Build the ``session_start`` event from session and project metadata."""
    metadata = session.extra_data or {}
    data: dict[str, Any] = {
        "agent_type": AGENT_TYPES.get(session.assistant.value, session.assistant.value),
        "agent_version": agent_version or metadata.get("cli_version") or "unknown",
        "working_directory": metadata.get("cwd") or (project.path if project else None),
        "git_branch": _git_branch(metadata),
    }
    if session.backing_model_id:
        data["model"] = session.backing_model_id.split(":", 1)[-1]
    curated = {
        key: metadata[key] for key in SESSION_START_METADATA_KEYS if metadata.get(key)
    }
    if curated:
        data["metadata"] = curated
    return CollectorEvent.build(
        "session_start", session.started_at, data, observed_at=observed_at
    )
