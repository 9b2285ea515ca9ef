"""
SQLAlchemy database models for aiobscura.

These models mirror the schema created by ``aiobscura.db.migrations``.
The migrations own the DDL; the models give repositories typed access
to the same tables.
"""

import enum
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from aiobscura.utils.timestamps import from_db_timestamp, to_db_timestamp, utc_now


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as fixed-format UTC ISO text."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[str]:
        if value is None:
            return None
        return to_db_timestamp(value)

    def process_result_value(self, value: Optional[str], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return from_db_timestamp(value)


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Assistant(str, enum.Enum):
    """AI coding assistants whose logs are observed."""

    CLAUDE_CODE = "claude_code"
    CODEX = "codex"
    AIDER = "aider"
    CURSOR = "cursor"

    @property
    def display_name(self) -> str:
        return {
            Assistant.CLAUDE_CODE: "Claude Code",
            Assistant.CODEX: "Codex",
            Assistant.AIDER: "Aider",
            Assistant.CURSOR: "Cursor",
        }[self]


class FileType(str, enum.Enum):
    """Source file format; decides how the checkpoint is interpreted."""

    JSONL = "jsonl"
    JSON = "json"
    MARKDOWN = "markdown"
    SQLITE = "sqlite"


class CheckpointType(str, enum.Enum):
    BYTE_OFFSET = "byte_offset"
    CONTENT_HASH = "content_hash"
    DATABASE_CURSOR = "database_cursor"
    NONE = "none"


class SessionStatus(str, enum.Enum):
    """Session liveness derived from the last activity timestamp."""

    ACTIVE = "active"  # Activity within the last 5 minutes
    INACTIVE = "inactive"  # 5-60 minutes since last activity
    STALE = "stale"  # More than 60 minutes since last activity

    @classmethod
    def from_last_activity(
        cls, last_activity: Optional[datetime], now: Optional[datetime] = None
    ) -> "SessionStatus":
        if last_activity is None:
            return cls.STALE
        elapsed = (now or utc_now()) - last_activity
        if elapsed < timedelta(minutes=5):
            return cls.ACTIVE
        if elapsed < timedelta(minutes=60):
            return cls.INACTIVE
        return cls.STALE


class ThreadType(str, enum.Enum):
    """Type of conversation thread."""

    MAIN = "main"  # Primary conversation thread
    AGENT = "agent"  # Spawned agent thread
    BACKGROUND = "background"  # Background processing thread


class AuthorRole(str, enum.Enum):
    """Role of the message author."""

    HUMAN = "human"  # Human user
    CALLER = "caller"  # Parent agent or CLI driving this thread
    ASSISTANT = "assistant"  # AI assistant response
    AGENT = "agent"  # Subagent
    TOOL = "tool"  # Tool execution result
    SYSTEM = "system"  # System message


class MessageType(str, enum.Enum):
    """Classification of a message."""

    PROMPT = "prompt"
    RESPONSE = "response"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    PLAN = "plan"
    SUMMARY = "summary"
    CONTEXT = "context"
    ERROR = "error"


class PlanStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    UNKNOWN = "unknown"


class PublishStatus(str, enum.Enum):
    """Remote lifecycle of a session from the publisher's point of view."""

    ACTIVE = "active"
    COMPLETED = "completed"


class PluginRunStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


# ============================================
# Canonical layer
# ============================================


class Project(Base):
    """Working directory referenced by assistant logs."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    path: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSON)

    def __repr__(self) -> str:
        return f"<Project(id={self.id!r}, path={self.path!r})>"


class BackingModel(Base):
    """LLM behind a session, keyed as ``provider:model_id``."""

    __tablename__ = "backing_models"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    model_id: Mapped[str] = mapped_column(String, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSON)

    __table_args__ = (UniqueConstraint("provider", "model_id"),)

    @classmethod
    def from_id(cls, model_id: str, first_seen_at: Optional[datetime] = None) -> "BackingModel":
        """Build from a ``provider:model_id`` key; no colon means provider "unknown"."""
        provider, sep, name = model_id.partition(":")
        if not sep:
            provider, name = "unknown", model_id
        return cls(
            id=model_id,
            provider=provider,
            model_id=name,
            first_seen_at=first_seen_at or utc_now(),
        )


class SourceFile(Base):
    """A log artifact on disk plus its parse checkpoint."""

    __tablename__ = "source_files"

    path: Mapped[str] = mapped_column(Text, primary_key=True)
    file_type: Mapped[FileType] = mapped_column(_enum(FileType), nullable=False)
    assistant: Mapped[Assistant] = mapped_column(_enum(Assistant), nullable=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    modified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    size_bytes: Mapped[Optional[int]] = mapped_column(Integer)
    last_parsed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    checkpoint_type: Mapped[Optional[CheckpointType]] = mapped_column(
        _enum(CheckpointType)
    )
    checkpoint_data: Mapped[Optional[dict]] = mapped_column(JSON)

    def __repr__(self) -> str:
        return f"<SourceFile(path={self.path!r}, checkpoint={self.checkpoint_type})>"


class AssistantSession(Base):
    """A continuous interaction owned by one assistant."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    assistant: Mapped[Assistant] = mapped_column(_enum(Assistant), nullable=False)
    backing_model_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("backing_models.id")
    )
    project_id: Mapped[Optional[str]] = mapped_column(ForeignKey("projects.id"))
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    status: Mapped[Optional[SessionStatus]] = mapped_column(_enum(SessionStatus))
    source_file_path: Mapped[str] = mapped_column(
        ForeignKey("source_files.path", ondelete="CASCADE"), nullable=False
    )
    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSON)

    def __repr__(self) -> str:
        return f"<AssistantSession(id={self.id!r}, assistant={self.assistant})>"


class Thread(Base):
    """Ordered sub-stream of a session (main conversation or spawned agent)."""

    __tablename__ = "threads"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    thread_type: Mapped[ThreadType] = mapped_column(_enum(ThreadType), nullable=False)
    parent_thread_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("threads.id", ondelete="SET NULL")
    )
    spawned_by_message_id: Mapped[Optional[int]] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    agent_subtype: Mapped[Optional[str]] = mapped_column(String)
    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSON)

    def __repr__(self) -> str:
        return f"<Thread(id={self.id!r}, type={self.thread_type})>"


class Message(Base):
    """One immutable unit in a thread, keyed by (thread_id, seq)."""

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    thread_id: Mapped[str] = mapped_column(
        ForeignKey("threads.id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    emitted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    author_role: Mapped[AuthorRole] = mapped_column(_enum(AuthorRole), nullable=False)
    author_name: Mapped[Optional[str]] = mapped_column(String)
    message_type: Mapped[MessageType] = mapped_column(
        _enum(MessageType), nullable=False
    )

    content: Mapped[Optional[str]] = mapped_column(Text)
    tool_name: Mapped[Optional[str]] = mapped_column(String)
    tool_input: Mapped[Optional[Any]] = mapped_column(JSON(none_as_null=True))
    tool_result: Mapped[Optional[str]] = mapped_column(Text)

    tokens_in: Mapped[Optional[int]] = mapped_column(Integer)
    tokens_out: Mapped[Optional[int]] = mapped_column(Integer)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)

    # Lineage
    source_file_path: Mapped[str] = mapped_column(
        ForeignKey("source_files.path", ondelete="CASCADE"), nullable=False
    )
    source_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    source_line: Mapped[Optional[int]] = mapped_column(Integer)

    raw_data: Mapped[Any] = mapped_column(JSON, nullable=False)
    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSON)

    __table_args__ = (UniqueConstraint("thread_id", "seq"),)

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, thread_id={self.thread_id!r}, "
            f"seq={self.seq}, type={self.message_type})>"
        )


class Plan(Base):
    """Latest known state of a plan document, keyed by slug."""

    __tablename__ = "plans"

    slug: Mapped[str] = mapped_column(String, primary_key=True)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    modified_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[Optional[PlanStatus]] = mapped_column(_enum(PlanStatus))
    content: Mapped[Optional[str]] = mapped_column(Text)
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSON)


class PlanVersion(Base):
    """Append-only content history of a plan; unique by (slug, hash)."""

    __tablename__ = "plan_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_slug: Mapped[str] = mapped_column(
        ForeignKey("plans.slug", ondelete="CASCADE"), nullable=False
    )
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text)
    content: Mapped[Optional[str]] = mapped_column(Text)
    captured_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (UniqueConstraint("plan_slug", "content_hash"),)


class SessionPlan(Base):
    """Link between a session and a plan it used."""

    __tablename__ = "session_plans"

    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), primary_key=True
    )
    plan_slug: Mapped[str] = mapped_column(
        ForeignKey("plans.slug", ondelete="CASCADE"), primary_key=True
    )
    first_used_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class AgentSpawn(Base):
    """Persisted index from an agent id to the message that spawned it."""

    __tablename__ = "agent_spawns"

    agent_id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    spawning_message_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class CollectorPublishState(Base):
    """High-water mark for at-least-once delivery of one session."""

    __tablename__ = "collector_publish_state"

    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), primary_key=True
    )
    last_published_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[PublishStatus] = mapped_column(
        _enum(PublishStatus), nullable=False, default=PublishStatus.ACTIVE
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    last_published_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<CollectorPublishState(session_id={self.session_id!r}, "
            f"seq={self.last_published_seq}, status={self.status})>"
        )


# ============================================
# Derived layer (regenerable)
# ============================================


class SessionMetrics(Base):
    """Cached first-order aggregates for a session."""

    __tablename__ = "session_metrics"

    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), primary_key=True
    )
    metric_version: Mapped[int] = mapped_column(Integer, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    total_tokens_in: Mapped[Optional[int]] = mapped_column(Integer)
    total_tokens_out: Mapped[Optional[int]] = mapped_column(Integer)
    total_tool_calls: Mapped[Optional[int]] = mapped_column(Integer)
    tool_call_breakdown: Mapped[Optional[dict]] = mapped_column(JSON)
    error_count: Mapped[Optional[int]] = mapped_column(Integer)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)

    tokens_per_minute: Mapped[Optional[float]] = mapped_column(Float)
    tool_success_rate: Mapped[Optional[float]] = mapped_column(Float)
    edit_churn_ratio: Mapped[Optional[float]] = mapped_column(Float)


class Assessment(Base):
    """LLM-produced scores for a session."""

    __tablename__ = "assessments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    assessor: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String)
    assessed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    scores: Mapped[dict] = mapped_column(JSON, nullable=False)
    raw_response: Mapped[Optional[str]] = mapped_column(Text)
    prompt_hash: Mapped[Optional[str]] = mapped_column(String)


class PluginMetric(Base):
    """One metric value produced by an analytics plugin."""

    __tablename__ = "plugin_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_name: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False, default="")
    metric_name: Mapped[str] = mapped_column(String, nullable=False)
    metric_value: Mapped[Any] = mapped_column(JSON, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("plugin_name", "entity_type", "entity_id", "metric_name"),
    )


class PluginRun(Base):
    """Audit row for one plugin execution."""

    __tablename__ = "plugin_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_name: Mapped[str] = mapped_column(String, nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PluginRunStatus] = mapped_column(
        _enum(PluginRunStatus), nullable=False
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    metrics_produced: Mapped[Optional[int]] = mapped_column(Integer)
    input_message_count: Mapped[Optional[int]] = mapped_column(Integer)
    input_token_count: Mapped[Optional[int]] = mapped_column(Integer)
