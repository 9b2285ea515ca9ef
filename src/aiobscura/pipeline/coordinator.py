"""
Ingest coordinator.

Drives discovery -> parse -> persist for every installed assistant. Each
file is persisted in a single transaction so that either all new rows land
together with the advanced checkpoint, or nothing changes.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.orm import Session

from aiobscura.db.connection import Database
from aiobscura.db.repositories import (
    AgentSpawnRepository,
    BackingModelRepository,
    MessageRepository,
    PlanRepository,
    ProjectRepository,
    PublishStateRepository,
    SessionRepository,
    SourceFileRepository,
    ThreadRepository,
    main_thread_id,
)
from aiobscura.exceptions import AiobscuraError, ParseError, SourceIOError
from aiobscura.models.db import Assistant, CheckpointType, FileType, MessageType
from aiobscura.models.parsed import Checkpoint, ParsedMessage
from aiobscura.parsers import AssistantParser, create_all_parsers
from aiobscura.parsers.base import ParseContext, ParseResult
from aiobscura.parsers.claude_code import is_agent_file

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 80

ProgressCallback = Callable[[int, int, Path], None]


class SkipReason(str, enum.Enum):
    """Why a file produced no new records."""

    ALREADY_PARSED = "already_parsed"  # Checkpoint at or past the end of the file
    EMPTY_FILE = "empty_file"
    NO_NEW_CONTENT = "no_new_content"


@dataclass
class MessageSummary:
    """Short description of an ingested message for live display."""

    thread_id: str
    author_role: str
    message_type: str
    preview: str


@dataclass
class FileSyncResult:
    """Outcome of syncing a single file."""

    path: Path
    new_checkpoint: Checkpoint
    new_messages: int = 0
    new_tool_calls: int = 0
    threads_created: int = 0
    session_id: Optional[str] = None
    is_new_session: bool = False
    warnings: list[str] = field(default_factory=list)
    skip_reason: Optional[SkipReason] = None
    message_summaries: list[MessageSummary] = field(default_factory=list)


@dataclass
class SyncResult:
    """Aggregate report for one sync run."""

    files_processed: int = 0
    files_skipped: int = 0
    sessions_created: int = 0
    sessions_updated: int = 0
    messages_inserted: int = 0
    threads_created: int = 0
    statuses_changed: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    file_results: list[FileSyncResult] = field(default_factory=list)

    def add(self, file_result: FileSyncResult) -> None:
        self.file_results.append(file_result)
        if file_result.new_messages > 0:
            self.files_processed += 1
            self.messages_inserted += file_result.new_messages
            if file_result.is_new_session:
                self.sessions_created += 1
            elif file_result.session_id:
                self.sessions_updated += 1
        else:
            self.files_skipped += 1
        self.threads_created += file_result.threads_created
        self.warnings.extend(file_result.warnings)

    def tool_calls_by_session(self) -> dict[str, int]:
        """New tool calls per session in this run."""
        counts: dict[str, int] = {}
        for file_result in self.file_results:
            if file_result.session_id and file_result.new_tool_calls:
                counts[file_result.session_id] = (
                    counts.get(file_result.session_id, 0) + file_result.new_tool_calls
                )
        return counts

    def touched_sessions(self) -> list[str]:
        """Sessions that received new messages, in first-seen order."""
        seen: dict[str, None] = {}
        for file_result in self.file_results:
            if file_result.session_id and file_result.new_messages:
                seen.setdefault(file_result.session_id, None)
        return list(seen)


def summarize_message(message: ParsedMessage) -> MessageSummary:
    text = message.content or message.tool_name or message.tool_result or ""
    text = " ".join(text.split())
    if len(text) > PREVIEW_CHARS:
        text = text[: PREVIEW_CHARS - 3] + "..."
    return MessageSummary(
        thread_id=message.thread_id,
        author_role=message.author_role.value,
        message_type=message.message_type.value,
        preview=text,
    )


class IngestCoordinator:
    """
    Coordinates ingestion across all registered parsers.

    Responsibilities:
    - discover source files using each parser's patterns
    - load checkpoints from the store and call the owning parser
    - renumber messages so seq stays dense per thread across rounds
    - persist spawn records and resolve agent-thread parents in either
      ingestion order

    Example:
        >>> coordinator = IngestCoordinator(Database.open(settings.database_path))
        >>> result = coordinator.sync_all()
        >>> print(result.messages_inserted, result.files_processed)
    """

    def __init__(self, db: Database, parsers: Optional[list[AssistantParser]] = None):
        self.db = db
        self.parsers = parsers if parsers is not None else create_all_parsers()

    def installed_assistants(self) -> list[Assistant]:
        return [parser.assistant for parser in self.parsers if parser.is_installed()]

    def discover_files(self) -> list[Path]:
        """All files of installed parsers, deduplicated and sorted."""
        found: set[Path] = set()
        for parser in self.parsers:
            if not parser.is_installed():
                logger.debug(f"{parser.assistant.value} not installed, skipping")
                continue
            try:
                files = parser.discover_files()
            except OSError as e:
                logger.warning(f"Failed to discover {parser.assistant.value} files: {e}")
                continue
            logger.info(f"Discovered {len(files)} {parser.assistant.value} source files")
            found.update(files)
        return sorted(found)

    def refresh_statuses(self, now: Optional[datetime] = None) -> int:
        """Re-derive every session's status from the clock."""
        with self.db.session() as session:
            changed = SessionRepository(session).refresh_statuses(now)
        if changed:
            logger.debug(f"Updated status of {changed} sessions")
        return changed

    def parser_for_file(self, path: Path) -> Optional[AssistantParser]:
        for parser in self.parsers:
            if path.is_relative_to(parser.root_path):
                return parser
        return None

    def sync_all(
        self,
        on_progress: Optional[ProgressCallback] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """
        Sync every discovered file.

        A parse or file-system error for one file is recorded in
        ``SyncResult.errors`` and the run continues; storage errors propagate.

        Args:
            on_progress: Called as ``(index, total, path)`` before each file
            dry_run: Parse and report without writing to the store
            now: Clock used to re-derive stored session statuses
        """
        files = self.discover_files()
        total = len(files)
        result = SyncResult()

        for index, path in enumerate(files):
            if on_progress:
                on_progress(index, total, path)
            try:
                file_result = self.sync_file(path, dry_run=dry_run)
            except (ParseError, SourceIOError) as e:
                logger.warning(f"Failed to sync {path}: {e}")
                result.errors.append((str(path), str(e)))
                continue
            result.add(file_result)

        if not dry_run:
            result.statuses_changed = self.refresh_statuses(now)

        logger.info(
            f"Sync complete: {result.files_processed} files processed, "
            f"{result.files_skipped} skipped, {result.messages_inserted} messages, "
            f"{len(result.errors)} errors"
        )
        return result

    def sync_file(self, path: Path, dry_run: bool = False) -> FileSyncResult:
        """
        Parse new content of one file and persist it.

        Raises:
            ParseError: If no parser owns the file or the parser failed
            SourceIOError: If the file cannot be read
            StorageError: If persisting failed (nothing was written)
        """
        path = Path(path)
        parser = self.parser_for_file(path)
        if parser is None:
            raise ParseError("unknown", f"No parser found for file: {path}")

        try:
            stat = path.stat()
        except OSError as e:
            raise SourceIOError(str(path), str(e)) from e

        with self.db.session() as session:
            checkpoint = SourceFileRepository(session).get_checkpoint(str(path))

        ctx = ParseContext(
            path=path,
            checkpoint=checkpoint,
            file_size=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
        )
        try:
            parsed = parser.parse(ctx)
        except AiobscuraError:
            raise
        except Exception as e:
            logger.exception(f"Parser {parser.assistant.value} failed on {path}")
            raise ParseError(parser.assistant.value, f"{path}: {e}") from e

        for warning in parsed.warnings:
            logger.warning(f"{path}: {warning}")

        file_result = FileSyncResult(
            path=path,
            new_checkpoint=parsed.new_checkpoint,
            warnings=[f"{path.name}: {w}" for w in parsed.warnings],
        )

        if parsed.is_empty:
            file_result.skip_reason = self._skip_reason(checkpoint, stat.st_size)
            advanced = parsed.new_checkpoint != checkpoint
            if not dry_run and (parsed.restarted or advanced):
                with self.db.session() as session:
                    self._store_source_file(session, parser, ctx, parsed)
            return file_result

        file_result.session_id = parsed.session.id if parsed.session else None
        file_result.new_messages = len(parsed.messages)
        file_result.new_tool_calls = sum(
            1 for m in parsed.messages if m.message_type == MessageType.TOOL_CALL
        )
        file_result.message_summaries = [summarize_message(m) for m in parsed.messages]

        if dry_run:
            return file_result

        with self.db.session() as session:
            self._persist(session, parser, ctx, parsed, file_result)

        logger.debug(
            f"Synced {path}: {file_result.new_messages} messages, "
            f"checkpoint {parsed.new_checkpoint.to_payload()}"
        )
        return file_result

    @staticmethod
    def _skip_reason(checkpoint: Checkpoint, file_size: int) -> SkipReason:
        if file_size == 0:
            return SkipReason.EMPTY_FILE
        if checkpoint.type == CheckpointType.BYTE_OFFSET and (checkpoint.offset or 0) >= file_size:
            return SkipReason.ALREADY_PARSED
        return SkipReason.NO_NEW_CONTENT

    @staticmethod
    def _file_type(parser: AssistantParser, path: Path) -> FileType:
        relative = path.relative_to(parser.root_path)
        for pattern in parser.source_patterns():
            if relative.match(pattern.pattern):
                return pattern.file_type
        return FileType.JSONL

    def _store_source_file(
        self,
        session: Session,
        parser: AssistantParser,
        ctx: ParseContext,
        parsed: ParseResult,
    ) -> None:
        SourceFileRepository(session).upsert(
            path=str(ctx.path),
            file_type=self._file_type(parser, ctx.path),
            assistant=parser.assistant,
            checkpoint=parsed.new_checkpoint,
            size_bytes=ctx.file_size,
            created_at=ctx.modified_at,
            modified_at=ctx.modified_at,
        )
        if parsed.restarted:
            # Re-read from byte 0: drop what the old content produced so seq stays dense
            purged = MessageRepository(session).delete_for_source(str(ctx.path))
            logger.warning(f"{ctx.path} was truncated; purged {purged} stored messages")

    def _persist(
        self,
        session: Session,
        parser: AssistantParser,
        ctx: ParseContext,
        parsed: ParseResult,
        file_result: FileSyncResult,
    ) -> None:
        messages_repo = MessageRepository(session)
        threads_repo = ThreadRepository(session)
        spawns_repo = AgentSpawnRepository(session)
        agent_file = is_agent_file(ctx.path)

        self._store_source_file(session, parser, ctx, parsed)

        if parsed.project is not None:
            ProjectRepository(session).upsert(parsed.project)

        sessions_repo = SessionRepository(session)
        if parsed.session is not None:
            if parsed.session.backing_model_id:
                BackingModelRepository(session).upsert(
                    parsed.session.backing_model_id, parsed.session.started_at
                )
            if agent_file:
                # The main file owns the session row; agent files only make sure it exists
                file_result.is_new_session = sessions_repo.insert_if_missing(parsed.session)
            else:
                file_result.is_new_session = sessions_repo.upsert(parsed.session)

        # Stored max seq per thread, read before anything from this round is inserted
        offsets = {
            thread_id: messages_repo.get_last_seq(thread_id)
            for thread_id in {t.id for t in parsed.threads} | {m.thread_id for m in parsed.messages}
        }

        session_id = parsed.session.id if parsed.session else None
        if session_id and not agent_file:
            main_offset = offsets.get(main_thread_id(session_id), 0)
            for agent_id, spawning_seq in parsed.agent_spawn_map.items():
                spawns_repo.upsert(agent_id, session_id, spawning_seq + main_offset)

        for thread in parsed.threads:
            if threads_repo.insert(thread):
                file_result.threads_created += 1
            else:
                threads_repo.touch(thread.id, thread.last_activity_at)

        for message in parsed.messages:
            message.seq += offsets.get(message.thread_id, 0)
        messages_repo.insert_many(parsed.messages)

        self._resolve_spawns(session, parsed, agent_file)

        if parsed.restarted and session_id:
            PublishStateRepository(session).clamp_seq(
                session_id, messages_repo.max_main_seq(session_id)
            )

        if session_id:
            plans_repo = PlanRepository(session)
            first_used_at = parsed.session.started_at
            for plan in parsed.plans:
                plans_repo.upsert_plan(plan)
                plans_repo.insert_version(plan, captured_at=plan.modified_at)
                plans_repo.link_session(session_id, plan.slug, first_used_at)

    def _resolve_spawns(self, session: Session, parsed: ParseResult, agent_file: bool) -> None:
        """
        Link agent threads to the tool call that spawned them.

        Agent file: look up the stored spawn for the thread's agent id.
        Main file: backfill every stored thread of the agents it spawned.
        Either order yields the same edge; re-applying it is a no-op.
        """
        spawns_repo = AgentSpawnRepository(session)
        threads_repo = ThreadRepository(session)

        if agent_file:
            for thread in parsed.threads:
                if not thread.agent_id:
                    continue
                spawn = spawns_repo.get(thread.agent_id)
                if spawn is not None:
                    self._link_thread(session, thread.id, spawn.session_id, spawn.spawning_message_seq)
            return

        for agent_id in parsed.agent_spawn_map:
            spawn = spawns_repo.get(agent_id)
            if spawn is None:
                continue
            for thread in threads_repo.list_agent_threads(agent_id):
                self._link_thread(session, thread.id, spawn.session_id, spawn.spawning_message_seq)

    @staticmethod
    def _link_thread(session: Session, thread_id: str, session_id: str, spawning_seq: int) -> None:
        threads_repo = ThreadRepository(session)
        parent_id = main_thread_id(session_id)
        if not threads_repo.exists(parent_id):
            return
        spawning = MessageRepository(session).get_by_thread_seq(parent_id, spawning_seq)
        threads_repo.update_spawn_info(
            thread_id,
            parent_thread_id=parent_id,
            spawned_by_message_id=spawning.id if spawning else None,
        )
        if spawning is not None and isinstance(spawning.tool_input, dict):
            subtype = spawning.tool_input.get("subagent_type")
            if subtype:
                threads_repo.touch(thread_id, None, agent_subtype=subtype)
