"""
Parsed data models.

These are intermediate Python dataclasses produced by parsers before they
are stored in the database. Used by parsers and the ingest coordinator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from aiobscura.models.db import (
    Assistant,
    AuthorRole,
    CheckpointType,
    MessageType,
    PlanStatus,
    SessionStatus,
    ThreadType,
)


@dataclass(frozen=True)
class Checkpoint:
    """
    Resumption token for incremental parsing of one source file.

    Tagged union persisted as a (checkpoint_type, checkpoint_data) pair:

    - ``byte_offset``: {"offset": int}, next unread byte of a JSONL log
    - ``content_hash``: {"hash": str}, hash of a snapshot or markdown file
    - ``database_cursor``: {"table": str, "column": str, "value": str}
    - ``none``: never parsed
    """

    type: CheckpointType = CheckpointType.NONE
    offset: Optional[int] = None
    hash: Optional[str] = None
    table: Optional[str] = None
    column: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def none(cls) -> "Checkpoint":
        return cls()

    @classmethod
    def byte_offset(cls, offset: int) -> "Checkpoint":
        return cls(type=CheckpointType.BYTE_OFFSET, offset=offset)

    @classmethod
    def content_hash(cls, hash: str) -> "Checkpoint":
        return cls(type=CheckpointType.CONTENT_HASH, hash=hash)

    @classmethod
    def database_cursor(cls, table: str, column: str, value: str) -> "Checkpoint":
        return cls(
            type=CheckpointType.DATABASE_CURSOR, table=table, column=column, value=value
        )

    def to_payload(self) -> Optional[dict[str, Any]]:
        """Type-specific JSON payload for the ``checkpoint_data`` column."""
        if self.type == CheckpointType.BYTE_OFFSET:
            return {"offset": self.offset}
        if self.type == CheckpointType.CONTENT_HASH:
            return {"hash": self.hash}
        if self.type == CheckpointType.DATABASE_CURSOR:
            return {"table": self.table, "column": self.column, "value": self.value}
        return None

    @classmethod
    def from_payload(
        cls, checkpoint_type: Optional[str], payload: Optional[dict[str, Any]]
    ) -> "Checkpoint":
        if not checkpoint_type:
            return cls.none()
        kind = CheckpointType(checkpoint_type)
        payload = payload or {}
        if kind == CheckpointType.BYTE_OFFSET:
            return cls.byte_offset(int(payload.get("offset", 0)))
        if kind == CheckpointType.CONTENT_HASH:
            return cls.content_hash(str(payload.get("hash", "")))
        if kind == CheckpointType.DATABASE_CURSOR:
            return cls.database_cursor(
                str(payload.get("table", "")),
                str(payload.get("column", "")),
                str(payload.get("value", "")),
            )
        return cls.none()

    def is_behind(self, other: "Checkpoint") -> bool:
        """True if ``other`` is strictly further along than this checkpoint."""
        if self.type == CheckpointType.BYTE_OFFSET and other.type == self.type:
            return (other.offset or 0) > (self.offset or 0)
        return other != self


@dataclass
class ParsedProject:
    """Working directory identified by a log."""

    id: str
    path: str
    name: Optional[str]
    created_at: datetime
    last_activity_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedSession:
    """Session derived from a parsed log."""

    id: str
    assistant: Assistant
    started_at: datetime
    source_file_path: str
    backing_model_id: Optional[str] = None  # "provider:model_id"
    project_id: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    status: SessionStatus = SessionStatus.STALE
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedThread:
    """Thread seen in a parse round."""

    id: str
    session_id: str
    thread_type: ThreadType
    started_at: datetime
    parent_thread_id: Optional[str] = None
    ended_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    agent_id: Optional[str] = None  # Set on agent threads; drives spawn resolution
    agent_subtype: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedMessage:
    """
    Normalized message.

    ``seq`` is numbered from 1 within its thread for this parse round; the
    ingest coordinator shifts it past the thread's stored maximum.
    """

    session_id: str
    thread_id: str
    seq: int
    emitted_at: datetime
    observed_at: datetime
    author_role: AuthorRole
    message_type: MessageType
    source_file_path: str
    source_offset: int
    source_line: Optional[int] = None
    author_name: Optional[str] = None
    content: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Any] = None
    tool_result: Optional[str] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    duration_ms: Optional[int] = None
    raw_data: Any = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedPlan:
    """Plan document referenced by a session."""

    slug: str
    path: str
    content_hash: str
    created_at: datetime
    modified_at: datetime
    title: Optional[str] = None
    content: Optional[str] = None
    status: PlanStatus = PlanStatus.UNKNOWN
