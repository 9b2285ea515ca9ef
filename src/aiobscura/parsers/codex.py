"""
OpenAI Codex conversation log parser.

Codex stores JSONL session logs under
``~/.codex/sessions/YYYY/MM/DD/rollout-<timestamp>-<uuid>.jsonl``.
Each line contains a JSON object with a ``type`` and ``payload``.
Key record types:
- session_meta: session id, cwd, git info, cli_version, model_provider
- turn_context: model and cwd for the following turn
- response_item: user/assistant messages, function calls, reasoning
- event_msg: UI events; mostly duplicates of response_item, plus token counts
"""

import json
import logging
import re
from dataclasses import dataclass
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
from aiobscura.utils.hashing import project_id_for_path
from aiobscura.utils.timestamps import parse_iso_timestamp, utc_now

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$", re.IGNORECASE
)

# event_msg types that duplicate response_item records
DUPLICATE_EVENT_TYPES = {"user_message", "agent_message", "agent_reasoning"}

# User-role messages that the CLI injects rather than the human typing them
INJECTED_CONTEXT_PREFIXES = (
    "<environment_context>",
    "<user_shell_command>",
    "<INSTRUCTIONS>",
    "<user_instructions>",
    "<system",
    "# AGENTS.md instructions for",
)

TEXT_BLOCK_TYPES = {"input_text", "output_text", "text"}


def default_codex_root() -> Path:
    return Path.home() / ".codex"


def is_injected_context(text: str) -> bool:
    return text.strip().startswith(INJECTED_CONTEXT_PREFIXES)


def session_id_from_path(path: Path) -> Optional[str]:
    """``rollout-2025-12-04T10-00-00-<uuid>.jsonl`` -> ``<uuid>``."""
    match = _UUID_RE.search(path.stem)
    return match.group(1) if match else None


@dataclass
class _CodexState:
    observed_at: datetime
    session_id: Optional[str]
    seq: int = 0
    model: Optional[str] = None
    cwd: Optional[str] = None
    git: Optional[dict[str, Any]] = None
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    last_usage: Optional[dict[str, Any]] = None
    # The first real user message is the CLI invocation, later ones are the human
    seen_first_prompt: bool = False

    @property
    def thread_id(self) -> str:
        return f"{self.session_id}-main"


class CodexParser:
    """Parser for OpenAI Codex JSONL session logs."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self._root = Path(root).expanduser() if root else default_codex_root()

    @property
    def assistant(self) -> Assistant:
        return Assistant.CODEX

    @property
    def root_path(self) -> Path:
        return self._root

    def source_patterns(self) -> list[SourcePattern]:
        return [
            SourcePattern(
                pattern="sessions/*/*/*/rollout-*.jsonl",
                file_type=FileType.JSONL,
                description="Codex session rollouts",
            )
        ]

    def is_installed(self) -> bool:
        return self._root.is_dir()

    def discover_files(self) -> list[Path]:
        return discover_pattern_files(self._root, self.source_patterns())

    def parse(self, ctx: ParseContext) -> ParseResult:
        result = ParseResult()
        reader = JsonlReader(ctx, result.warnings)
        result.restarted = reader.reset

        if reader.at_eof:
            result.new_checkpoint = Checkpoint.byte_offset(ctx.file_size)
            return result

        state = _CodexState(
            observed_at=utc_now(),
            session_id=session_id_from_path(ctx.path),
            # On an incremental round the initial prompt was already seen
            seen_first_prompt=reader.start_offset > 0,
        )
        source_path = str(ctx.path)

        for record in reader.records():
            raw = record.data
            emitted_at = parse_iso_timestamp(raw.get("timestamp")) or state.observed_at
            if state.first_timestamp is None:
                state.first_timestamp = emitted_at
            state.last_timestamp = emitted_at

            event_type = raw.get("type") or "unknown"
            payload = raw.get("payload") if isinstance(raw.get("payload"), dict) else {}
            position = {
                "emitted_at": emitted_at,
                "source_path": source_path,
                "source_offset": record.offset,
                "source_line": record.line_number,
                "raw": raw,
            }

            if event_type == "session_meta":
                self._handle_session_meta(payload, state, result, emitted_at)
            elif event_type == "turn_context":
                if state.model is None and payload.get("model"):
                    state.model = payload["model"]
                if payload.get("cwd"):
                    state.cwd = payload["cwd"]
            elif event_type == "event_msg":
                msg_type = payload.get("type") or "unknown"
                if msg_type in DUPLICATE_EVENT_TYPES:
                    continue
                if msg_type == "token_count":
                    info = payload.get("info") or {}
                    if isinstance(info, dict) and info.get("last_token_usage"):
                        state.last_usage = info["last_token_usage"]
                    continue
                self._emit(
                    result,
                    state,
                    author_role=AuthorRole.SYSTEM,
                    message_type=MessageType.CONTEXT,
                    author_name=msg_type,
                    **position,
                )
            elif event_type == "response_item":
                self._handle_response_item(payload, state, result, position)
            else:
                self._emit(
                    result,
                    state,
                    author_role=AuthorRole.SYSTEM,
                    message_type=MessageType.CONTEXT,
                    author_name=event_type,
                    **position,
                )

        result.new_checkpoint = reader.checkpoint

        if state.session_id is None:
            if result.messages:
                result.warnings.append(
                    f"No session id in {ctx.path.name}; {len(result.messages)} records dropped"
                )
                result.messages = []
            return result

        if not result.messages and not result.threads:
            return result

        if not result.threads:
            result.threads.append(
                ParsedThread(
                    id=state.thread_id,
                    session_id=state.session_id,
                    thread_type=ThreadType.MAIN,
                    started_at=state.first_timestamp or state.observed_at,
                )
            )
        for thread in result.threads:
            thread.last_activity_at = state.last_timestamp

        self._build_session(state, result, source_path)
        return result

    def _handle_session_meta(
        self,
        payload: dict[str, Any],
        state: _CodexState,
        result: ParseResult,
        emitted_at: datetime,
    ) -> None:
        # payload.id takes precedence over the filename
        if payload.get("id"):
            new_id = str(payload["id"])
            if new_id != state.session_id:
                for msg in result.messages:
                    msg.session_id = new_id
                    msg.thread_id = f"{new_id}-main"
            state.session_id = new_id
        if state.cwd is None:
            state.cwd = payload.get("cwd")
        if state.git is None and isinstance(payload.get("git"), dict):
            state.git = payload["git"]

        if not result.threads and state.session_id:
            result.threads.append(
                ParsedThread(
                    id=state.thread_id,
                    session_id=state.session_id,
                    thread_type=ThreadType.MAIN,
                    started_at=emitted_at,
                    metadata={
                        key: payload.get(key)
                        for key in ("originator", "cli_version", "source", "model_provider")
                        if payload.get(key)
                    },
                )
            )

    def _handle_response_item(
        self,
        payload: dict[str, Any],
        state: _CodexState,
        result: ParseResult,
        position: dict[str, Any],
    ) -> None:
        item_type = payload.get("type") or "unknown"

        if item_type == "message":
            role = payload.get("role") or "unknown"
            for block in payload.get("content") or []:
                if not isinstance(block, dict) or block.get("type") not in TEXT_BLOCK_TYPES:
                    continue
                text = block.get("text") or ""
                if not text:
                    continue
                author_role, message_type = self._classify_message(role, text, state)
                tokens: dict[str, Any] = {}
                if author_role == AuthorRole.ASSISTANT and state.last_usage:
                    tokens = {
                        "tokens_in": state.last_usage.get("input_tokens"),
                        "tokens_out": state.last_usage.get("output_tokens"),
                    }
                self._emit(
                    result,
                    state,
                    author_role=author_role,
                    message_type=message_type,
                    content=text,
                    **tokens,
                    **position,
                )

        elif item_type in ("function_call", "custom_tool_call"):
            custom = item_type == "custom_tool_call"
            if custom:
                tool_input: Any = {"input": payload.get("input")}
            else:
                tool_input = _parse_arguments(payload.get("arguments"))
            metadata: dict[str, Any] = {"call_id": payload.get("call_id")}
            if custom:
                metadata["custom_tool"] = True
            self._emit(
                result,
                state,
                author_role=AuthorRole.ASSISTANT,
                message_type=MessageType.TOOL_CALL,
                tool_name=payload.get("name"),
                tool_input=tool_input,
                metadata=metadata,
                **position,
            )

        elif item_type in ("function_call_output", "custom_tool_call_output"):
            metadata = {"call_id": payload.get("call_id")}
            if item_type == "custom_tool_call_output":
                metadata["custom_tool"] = True
            output = payload.get("output")
            if output is not None and not isinstance(output, str):
                output = json.dumps(output)
            self._emit(
                result,
                state,
                author_role=AuthorRole.TOOL,
                message_type=MessageType.TOOL_RESULT,
                tool_result=output,
                metadata=metadata,
                **position,
            )

        elif item_type == "reasoning":
            summary_text = None
            summary = payload.get("summary")
            if isinstance(summary, list) and summary and isinstance(summary[0], dict):
                summary_text = summary[0].get("text")
            encrypted = payload.get("encrypted_content") is not None
            if summary_text and encrypted:
                content: Optional[str] = f"{summary_text}\n[encrypted reasoning]"
            elif summary_text:
                content = summary_text
            elif encrypted:
                content = "[encrypted reasoning]"
            else:
                content = None
            self._emit(
                result,
                state,
                author_role=AuthorRole.ASSISTANT,
                message_type=MessageType.CONTEXT,
                content=content,
                metadata={"reasoning": True, "encrypted": encrypted},
                **position,
            )

        elif item_type == "ghost_snapshot":
            ghost_commit = payload.get("ghost_commit")
            commit_id = ghost_commit.get("id") if isinstance(ghost_commit, dict) else None
            self._emit(
                result,
                state,
                author_role=AuthorRole.SYSTEM,
                author_name="snapshot",
                message_type=MessageType.CONTEXT,
                content=f"git checkpoint: {(commit_id or 'unknown')[:8]}",
                metadata={"git_snapshot": ghost_commit},
                **position,
            )

        else:
            self._emit(
                result,
                state,
                author_role=AuthorRole.SYSTEM,
                author_name=item_type,
                message_type=MessageType.CONTEXT,
                **position,
            )

    def _classify_message(
        self, role: str, text: str, state: _CodexState
    ) -> tuple[AuthorRole, MessageType]:
        if role == "assistant":
            return AuthorRole.ASSISTANT, MessageType.RESPONSE
        if role == "user":
            if is_injected_context(text):
                return AuthorRole.CALLER, MessageType.CONTEXT
            if not state.seen_first_prompt:
                state.seen_first_prompt = True
                return AuthorRole.CALLER, MessageType.PROMPT
            return AuthorRole.HUMAN, MessageType.PROMPT
        return AuthorRole.SYSTEM, MessageType.CONTEXT

    def _emit(
        self,
        result: ParseResult,
        state: _CodexState,
        *,
        author_role: AuthorRole,
        message_type: MessageType,
        emitted_at: datetime,
        source_path: str,
        source_offset: int,
        source_line: int,
        raw: dict[str, Any],
        **fields: Any,
    ) -> None:
        state.seq += 1
        result.messages.append(
            ParsedMessage(
                session_id=state.session_id or "",
                thread_id=state.thread_id,
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
        )

    def _build_session(self, state: _CodexState, result: ParseResult, source_path: str) -> None:
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
            assistant=Assistant.CODEX,
            started_at=first,
            source_file_path=source_path,
            backing_model_id=f"openai:{state.model}" if state.model else None,
            project_id=project_id,
            last_activity_at=last,
            status=SessionStatus.from_last_activity(last),
            metadata={"cwd": state.cwd, "git": state.git},
        )


def _parse_arguments(arguments: Any) -> Any:
    """Function call arguments arrive as a JSON string; keep raw text if it isn't JSON."""
    if not isinstance(arguments, str):
        return arguments
    try:
        return json.loads(arguments)
    except ValueError:
        return {"raw": arguments}
