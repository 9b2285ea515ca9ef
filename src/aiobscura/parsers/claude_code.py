"""
Claude Code conversation log parser.

Claude Code writes one JSONL file per session under
``~/.claude/projects/<encoded-cwd>/<session-id>.jsonl``. Subagents spawned
through the Task tool get their own ``agent-<agent-id>.jsonl`` file in the
same folder. Each line is a JSON record with a ``type`` (user, assistant,
summary, system, ...) and, for conversational records, a ``message`` in the
Anthropic messages API shape.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from aiobscura.models.db import (
    Assistant,
    AuthorRole,
    FileType,
    MessageType,
    SessionStatus,
    ThreadType,
)
from aiobscura.models.parsed import (
    Checkpoint,
    ParsedMessage,
    ParsedProject,
    ParsedSession,
    ParsedThread,
)
from aiobscura.parsers.base import (
    JsonlReader,
    ParseContext,
    ParseResult,
    SourcePattern,
    discover_pattern_files,
)
from aiobscura.parsers.plans import parse_plan_file
from aiobscura.utils.hashing import project_id_for_path
from aiobscura.utils.timestamps import parse_iso_timestamp, utc_now

logger = logging.getLogger(__name__)

AGENT_FILE_PREFIX = "agent-"

# Bookkeeping records that carry no conversation content
SKIPPED_RECORD_TYPES = {"file-history-snapshot"}


def default_claude_root() -> Path:
    return Path.home() / ".claude"


def is_agent_file(path: Path) -> bool:
    """True for subagent logs (``agent-<id>.jsonl``)."""
    return path.stem.startswith(AGENT_FILE_PREFIX)


def agent_id_from_path(path: Path) -> Optional[str]:
    """Given ``agent-a4767a09.jsonl``, return ``a4767a09``."""
    if not is_agent_file(path):
        return None
    return path.stem[len(AGENT_FILE_PREFIX) :] or None


def decode_project_folder(folder_name: str) -> Optional[str]:
    """
    Decode Claude's project folder name back into a path.

    ``-home-user-dev-app`` becomes ``/home/user/dev/app``. The encoding is
    lossy (dashes in the original path are indistinguishable from
    separators), so this is a best-effort hint only. The record's ``cwd`` is
    the authoritative project path.
    """
    if not folder_name.startswith("-"):
        return None
    return folder_name.replace("-", "/")


@dataclass
class _ParseState:
    """Mutable state carried across records of one parse round."""

    is_agent: bool
    observed_at: datetime
    session_id: Optional[str] = None
    thread_id: Optional[str] = None
    model: Optional[str] = None
    cwd: Optional[str] = None
    git_branch: Optional[str] = None
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    seq: int = 0
    slugs: list[str] = field(default_factory=list)
    uuid_to_seq: dict[str, int] = field(default_factory=dict)
    tool_use_to_seq: dict[str, int] = field(default_factory=dict)
    thread_last_activity: Optional[datetime] = None

    @property
    def user_role(self) -> AuthorRole:
        # In agent threads the "user" is the parent assistant driving the agent
        return AuthorRole.CALLER if self.is_agent else AuthorRole.HUMAN

    @property
    def assistant_role(self) -> AuthorRole:
        return AuthorRole.AGENT if self.is_agent else AuthorRole.ASSISTANT


class ClaudeCodeParser:
    """
    Parser for Claude Code JSONL conversation logs.

    Main session files produce the ``{session}-main`` thread. Agent files
    produce ``{session}-agent-{agent_id}`` threads whose parent link is
    resolved by the ingest coordinator from the recorded spawn map.

    Role assignment:
    - main file: user -> human, assistant -> assistant
    - agent file: user -> caller, assistant -> agent
    - tool_result blocks -> tool (error if ``is_error``)

    Sidechain records in main files are skipped; they are duplicated in the
    agent's own file.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        self._root = Path(root).expanduser() if root else default_claude_root()

    @property
    def assistant(self) -> Assistant:
        return Assistant.CLAUDE_CODE

    @property
    def root_path(self) -> Path:
        return self._root

    def source_patterns(self) -> list[SourcePattern]:
        return [
            SourcePattern(
                pattern="projects/*/*.jsonl",
                file_type=FileType.JSONL,
                description="Claude Code session logs",
            )
        ]

    def is_installed(self) -> bool:
        return self._root.is_dir()

    def discover_files(self) -> list[Path]:
        return discover_pattern_files(self._root, self.source_patterns())

    def parse(self, ctx: ParseContext) -> ParseResult:
        """
        Parse new records of a Claude Code log since the checkpoint.

        Args:
            ctx: Parse context with the file's current checkpoint

        Returns:
            ParseResult with messages numbered from 1 for this round

        Raises:
            SourceIOError: If the file cannot be read
        """
        result = ParseResult()
        reader = JsonlReader(ctx, result.warnings)
        result.restarted = reader.reset

        if reader.at_eof:
            result.new_checkpoint = Checkpoint.byte_offset(ctx.file_size)
            return result

        state = _ParseState(is_agent=is_agent_file(ctx.path), observed_at=utc_now())
        agent_id = agent_id_from_path(ctx.path)
        source_path = str(ctx.path)

        for record in reader.records():
            raw = record.data
            record_type = raw.get("type") or "unknown"

            if record_type in SKIPPED_RECORD_TYPES:
                continue
            if not state.is_agent and raw.get("isSidechain") is True:
                continue

            if state.session_id is None:
                state.session_id = raw.get("sessionId") or ctx.path.stem
            if state.cwd is None:
                state.cwd = raw.get("cwd")
            if state.git_branch is None:
                state.git_branch = raw.get("gitBranch")
            if agent_id is None and state.is_agent and raw.get("agentId"):
                agent_id = raw.get("agentId")

            slug = raw.get("slug")
            if slug and slug not in state.slugs:
                state.slugs.append(slug)

            # Records without a timestamp inherit the last one seen
            emitted_at = (
                parse_iso_timestamp(raw.get("timestamp"))
                or state.last_timestamp
                or state.observed_at
            )
            if state.first_timestamp is None:
                state.first_timestamp = emitted_at
            state.last_timestamp = emitted_at

            if state.thread_id is None:
                state.thread_id = self._thread_id(state.session_id, agent_id)
                result.threads.append(
                    ParsedThread(
                        id=state.thread_id,
                        session_id=state.session_id,
                        thread_type=ThreadType.AGENT if state.is_agent else ThreadType.MAIN,
                        started_at=emitted_at,
                        agent_id=agent_id if state.is_agent else None,
                    )
                )

            message = raw.get("message")
            if isinstance(message, dict) and state.model is None:
                state.model = message.get("model")

            seq_before = state.seq
            messages = self._record_to_messages(
                raw,
                record_type,
                state,
                emitted_at=emitted_at,
                source_path=source_path,
                source_offset=record.offset,
                source_line=record.line_number,
            )

            uuid = raw.get("uuid")
            if uuid and state.seq > seq_before:
                state.uuid_to_seq[uuid] = seq_before + 1

            if not state.is_agent:
                self._record_agent_spawn(raw, messages, state, result)

            if any(m.message_type != MessageType.CONTEXT for m in messages):
                state.thread_last_activity = emitted_at

            result.messages.extend(messages)

        result.new_checkpoint = reader.checkpoint

        for thread in result.threads:
            thread.last_activity_at = state.thread_last_activity

        if state.session_id is not None:
            self._build_session(ctx, state, result, source_path)

        return result

    def _thread_id(self, session_id: str, agent_id: Optional[str]) -> str:
        if agent_id is None:
            return f"{session_id}-main"
        return f"{session_id}-agent-{agent_id}"

    def _record_agent_spawn(
        self,
        raw: dict[str, Any],
        messages: list[ParsedMessage],
        state: _ParseState,
        result: ParseResult,
    ) -> None:
        """
        Record agent_id -> spawning tool_use seq from a Task tool result.

        The tool result's ``tool_use_id`` identifies the spawning call; the
        record's ``parentUuid`` is the fallback when the id is unknown.
        """
        tool_use_result = raw.get("toolUseResult")
        if not isinstance(tool_use_result, dict):
            return
        spawned_agent_id = tool_use_result.get("agentId")
        if not spawned_agent_id:
            return

        spawning_seq = None
        for msg in messages:
            tool_use_id = msg.metadata.get("tool_use_id")
            if msg.author_role == AuthorRole.TOOL and tool_use_id in state.tool_use_to_seq:
                spawning_seq = state.tool_use_to_seq[tool_use_id]
                break
        if spawning_seq is None:
            spawning_seq = state.uuid_to_seq.get(raw.get("parentUuid") or "")

        if spawning_seq is not None:
            result.agent_spawn_map[str(spawned_agent_id)] = spawning_seq
        else:
            logger.debug(f"Could not locate spawning tool call for agent {spawned_agent_id}")

    def _new_message(
        self,
        state: _ParseState,
        *,
        emitted_at: datetime,
        author_role: AuthorRole,
        message_type: MessageType,
        source_path: str,
        source_offset: int,
        source_line: int,
        raw: dict[str, Any],
        **fields: Any,
    ) -> ParsedMessage:
        state.seq += 1
        return ParsedMessage(
            session_id=state.session_id or "",
            thread_id=state.thread_id or "",
            seq=state.seq,
            emitted_at=emitted_at,
            observed_at=state.observed_at,
            author_role=author_role,
            message_type=message_type,
            source_file_path=source_path,
            source_offset=source_offset,
            source_line=source_line,
            raw_data=raw,
            **fields,
        )

    def _record_to_messages(
        self,
        raw: dict[str, Any],
        record_type: str,
        state: _ParseState,
        **position: Any,
    ) -> list[ParsedMessage]:
        message = raw.get("message") if isinstance(raw.get("message"), dict) else None

        if record_type == "assistant":
            if message is None:
                return []
            return self._assistant_messages(raw, message, state, **position)
        if record_type == "user":
            if message is None:
                return []
            return self._user_messages(raw, message, state, **position)

        # Anything else (summary, system, progress...) is kept as context
        return [
            self._new_message(
                state,
                author_role=AuthorRole.SYSTEM,
                message_type=MessageType.CONTEXT,
                author_name=record_type,
                raw=raw,
                **position,
            )
        ]

    def _assistant_messages(
        self,
        raw: dict[str, Any],
        message: dict[str, Any],
        state: _ParseState,
        **position: Any,
    ) -> list[ParsedMessage]:
        usage = message.get("usage") or {}
        tokens = {
            "tokens_in": usage.get("input_tokens"),
            "tokens_out": usage.get("output_tokens"),
        }
        role = state.assistant_role
        content = message.get("content")
        messages: list[ParsedMessage] = []

        def emit(message_type: MessageType, **fields: Any) -> None:
            # Usage is per API response; attribute it to the first message only
            if not messages:
                fields.update(tokens)
            messages.append(
                self._new_message(
                    state,
                    author_role=role,
                    message_type=message_type,
                    raw=raw,
                    **position,
                    **fields,
                )
            )

        if isinstance(content, str):
            if content:
                emit(MessageType.RESPONSE, content=content)
            return messages

        for block in content or []:
            block_type = block.get("type") if isinstance(block, dict) else None
            if block_type == "text":
                text = block.get("text") or ""
                if text:
                    emit(MessageType.RESPONSE, content=text)
            elif block_type == "tool_use":
                emit(
                    MessageType.TOOL_CALL,
                    tool_name=block.get("name"),
                    tool_input=block.get("input"),
                    metadata={"tool_use_id": block.get("id")},
                )
                if block.get("id"):
                    state.tool_use_to_seq[block["id"]] = state.seq
            elif block_type == "image":
                emit(MessageType.CONTEXT, metadata=_image_metadata(block))
            elif block_type == "tool_result":
                emit(
                    MessageType.CONTEXT,
                    content="[unexpected tool_result in assistant message]",
                )
            elif block_type == "thinking":
                # Extended thinking is internal reasoning; keep it as context
                emit(
                    MessageType.CONTEXT,
                    content=block.get("thinking"),
                    metadata={"thinking": True},
                )
            else:
                emit(MessageType.CONTEXT, content="[unknown content block]")

        return messages

    def _user_messages(
        self,
        raw: dict[str, Any],
        message: dict[str, Any],
        state: _ParseState,
        **position: Any,
    ) -> list[ParsedMessage]:
        role = state.user_role
        content = message.get("content")
        messages: list[ParsedMessage] = []

        if isinstance(content, str):
            if content:
                messages.append(
                    self._new_message(
                        state,
                        author_role=role,
                        message_type=MessageType.PROMPT,
                        content=content,
                        raw=raw,
                        **position,
                    )
                )
            return messages

        for block in content or []:
            block_type = block.get("type") if isinstance(block, dict) else None
            if block_type == "text":
                text = block.get("text") or ""
                if not text:
                    continue
                messages.append(
                    self._new_message(
                        state,
                        author_role=role,
                        message_type=MessageType.PROMPT,
                        content=text,
                        raw=raw,
                        **position,
                    )
                )
            elif block_type == "tool_result":
                messages.append(
                    self._new_message(
                        state,
                        author_role=AuthorRole.TOOL,
                        message_type=(
                            MessageType.ERROR if block.get("is_error") else MessageType.TOOL_RESULT
                        ),
                        tool_result=_render_tool_result(block.get("content")),
                        metadata={"tool_use_id": block.get("tool_use_id")},
                        raw=raw,
                        **position,
                    )
                )
            elif block_type == "image":
                # Screenshots pasted by the user are part of the prompt
                messages.append(
                    self._new_message(
                        state,
                        author_role=role,
                        message_type=MessageType.PROMPT,
                        metadata=_image_metadata(block),
                        raw=raw,
                        **position,
                    )
                )
            else:
                text = (
                    "[unexpected tool_use in user message]"
                    if block_type == "tool_use"
                    else "[unknown content block]"
                )
                messages.append(
                    self._new_message(
                        state,
                        author_role=role,
                        message_type=MessageType.CONTEXT,
                        content=text,
                        raw=raw,
                        **position,
                    )
                )

        return messages

    def _build_session(
        self,
        ctx: ParseContext,
        state: _ParseState,
        result: ParseResult,
        source_path: str,
    ) -> None:
        first = state.first_timestamp or state.observed_at
        last = state.last_timestamp or first

        project_id = None
        if state.cwd:
            project_id = project_id_for_path(state.cwd)
            result.project = ParsedProject(
                id=project_id,
                path=state.cwd,
                name=Path(state.cwd).name or "unknown",
                created_at=first,
                last_activity_at=last,
            )

        result.session = ParsedSession(
            id=state.session_id,
            assistant=Assistant.CLAUDE_CODE,
            started_at=first,
            source_file_path=source_path,
            backing_model_id=f"anthropic:{state.model}" if state.model else None,
            project_id=project_id,
            last_activity_at=last,
            status=SessionStatus.from_last_activity(last),
            metadata={
                "project_path": decode_project_folder(ctx.path.parent.name),
                "cwd": state.cwd,
                "git_branch": state.git_branch,
                "slugs": list(state.slugs),
            },
        )

        plans_dir = self._root / "plans"
        for slug in state.slugs:
            plan = parse_plan_file(plans_dir / f"{slug}.md", slug)
            if plan is not None:
                result.plans.append(plan)


def _render_tool_result(content: Any) -> Optional[str]:
    """Tool results are stored as text; structured content is JSON-encoded."""
    if content is None:
        return None
    if isinstance(content, str):
        return content
    return json.dumps(content)


def _image_metadata(block: dict[str, Any]) -> dict[str, Any]:
    source = block.get("source") or {}
    # The base64 payload is deliberately dropped
    return {"content_type": "image", "media_type": source.get("media_type")}
