"""
Pytest configuration and fixtures for aiobscura tests.

This module provides an in-memory store, a session seeder, builders for
Claude Code and Codex log files, and a fake collector server.
"""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Generator, Optional
from unittest.mock import Mock

import httpx
import pytest

from aiobscura.collector.client import CollectorClient
from aiobscura.collector.publisher import StatefulSyncPublisher
from aiobscura.config import CollectorSettings
from aiobscura.db.connection import Database
from aiobscura.db.repositories import (
    MessageRepository,
    ProjectRepository,
    SessionRepository,
    SourceFileRepository,
    ThreadRepository,
    main_thread_id,
)
from aiobscura.models.db import (
    Assistant,
    AuthorRole,
    FileType,
    MessageType,
    ThreadType,
)
from aiobscura.models.parsed import (
    Checkpoint,
    ParsedMessage,
    ParsedProject,
    ParsedSession,
    ParsedThread,
)
from aiobscura.parsers.claude_code import ClaudeCodeParser
from aiobscura.parsers.codex import CodexParser
from aiobscura.pipeline.coordinator import IngestCoordinator
from aiobscura.utils.hashing import project_id_for_path

BASE_TIME = datetime(2025, 6, 2, 10, 0, 0, tzinfo=UTC)

CODEX_SESSION_ID = "0199a1b2-c3d4-7e5f-8a9b-0c1d2e3f4a5b"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point XDG directories into tmp_path and drop ambient credentials."""
    home = tmp_path / "home"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(home / ".local" / "share"))
    monkeypatch.setenv("XDG_STATE_HOME", str(home / ".local" / "state"))
    for var in ("AIOBSCURA_CONFIG_FILE", "ANTHROPIC_API_KEY", "OPENAI_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("aiobscura.config._settings", None)
    return home


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def db() -> Generator[Database, None, None]:
    """A migrated in-memory store."""
    database = Database.open_in_memory()
    yield database
    database.close()


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


@pytest.fixture
def seed_session(db: Database) -> Callable[..., str]:
    """
    Factory that stores a session with its threads and messages.

    Each message is a dict with optional keys ``role``, ``type``,
    ``content``, ``tool_name``, ``tool_input``, ``tool_result``,
    ``tokens_in``, ``tokens_out``, ``metadata``, ``at`` (datetime) and
    ``agent`` (agent id; the message goes to that agent's thread).
    Messages without ``at`` are one second apart from ``started_at``.
    """

    def _seed(
        session_id: str = "sess-1",
        messages: tuple[dict[str, Any], ...] | list[dict[str, Any]] = (),
        *,
        assistant: Assistant = Assistant.CLAUDE_CODE,
        started_at: datetime = BASE_TIME,
        cwd: str = "/home/dev/proj",
        last_activity_at: Optional[datetime] = None,
    ) -> str:
        source = f"/logs/{session_id}.jsonl"
        main_id = main_thread_id(session_id)
        seqs: dict[str, int] = {}
        agent_ids: list[str] = []
        parsed: list[ParsedMessage] = []

        for index, entry in enumerate(messages):
            agent_id = entry.get("agent")
            if agent_id and agent_id not in agent_ids:
                agent_ids.append(agent_id)
            thread_id = f"{session_id}-agent-{agent_id}" if agent_id else main_id
            seqs[thread_id] = seqs.get(thread_id, 0) + 1
            emitted_at = entry.get("at", started_at + timedelta(seconds=index))
            parsed.append(
                ParsedMessage(
                    session_id=session_id,
                    thread_id=thread_id,
                    seq=seqs[thread_id],
                    emitted_at=emitted_at,
                    observed_at=emitted_at,
                    author_role=entry.get("role", AuthorRole.HUMAN),
                    message_type=entry.get("type", MessageType.PROMPT),
                    source_file_path=source,
                    source_offset=index * 100,
                    content=entry.get("content"),
                    tool_name=entry.get("tool_name"),
                    tool_input=entry.get("tool_input"),
                    tool_result=entry.get("tool_result"),
                    tokens_in=entry.get("tokens_in"),
                    tokens_out=entry.get("tokens_out"),
                    raw_data={"index": index},
                    metadata=entry.get("metadata", {}),
                )
            )

        last = last_activity_at or (
            max(m.emitted_at for m in parsed) if parsed else started_at
        )
        project = ParsedProject(
            id=project_id_for_path(cwd),
            path=cwd,
            name=Path(cwd).name,
            created_at=started_at,
            last_activity_at=last,
        )

        with db.session() as session:
            SourceFileRepository(session).upsert(
                path=source,
                file_type=FileType.JSONL,
                assistant=assistant,
                checkpoint=Checkpoint.byte_offset(0),
            )
            ProjectRepository(session).upsert(project)
            SessionRepository(session).upsert(
                ParsedSession(
                    id=session_id,
                    assistant=assistant,
                    started_at=started_at,
                    source_file_path=source,
                    project_id=project.id,
                    last_activity_at=last,
                    metadata={"cwd": cwd, "git_branch": "main"},
                )
            )
            threads = ThreadRepository(session)
            threads.insert(
                ParsedThread(
                    id=main_id,
                    session_id=session_id,
                    thread_type=ThreadType.MAIN,
                    started_at=started_at,
                    last_activity_at=last,
                )
            )
            for agent_id in agent_ids:
                threads.insert(
                    ParsedThread(
                        id=f"{session_id}-agent-{agent_id}",
                        session_id=session_id,
                        thread_type=ThreadType.AGENT,
                        started_at=started_at,
                        parent_thread_id=main_id,
                        last_activity_at=last,
                        agent_id=agent_id,
                    )
                )
            MessageRepository(session).insert_many(parsed)
        return session_id

    return _seed


def prompt(content: str, **extra: Any) -> dict[str, Any]:
    return {"role": AuthorRole.HUMAN, "type": MessageType.PROMPT, "content": content, **extra}


@pytest.fixture
def tool_call() -> Callable[..., dict[str, Any]]:
    """Factory for seed_session message dicts describing a tool call."""

    def _tool_call(tool_name: str, tool_input: Optional[dict] = None, **extra: Any) -> dict[str, Any]:
        return {
            "role": AuthorRole.ASSISTANT,
            "type": MessageType.TOOL_CALL,
            "tool_name": tool_name,
            "tool_input": tool_input or {},
            **extra,
        }

    return _tool_call


@pytest.fixture
def prompts() -> Callable[[int], list[dict[str, Any]]]:
    """Factory for ``n`` alternating prompt/response message dicts."""

    def _prompts(count: int) -> list[dict[str, Any]]:
        specs = []
        for i in range(count):
            if i % 2 == 0:
                specs.append(prompt(f"question {i}"))
            else:
                specs.append(
                    {
                        "role": AuthorRole.ASSISTANT,
                        "type": MessageType.RESPONSE,
                        "content": f"answer {i}",
                        "tokens_in": 100,
                        "tokens_out": 20,
                    }
                )
        return specs

    return _prompts


# ---------------------------------------------------------------------------
# Log file builders
# ---------------------------------------------------------------------------


class _JsonlLog:
    path: Path

    def __init__(self) -> None:
        self._counter = 0

    def _next_timestamp(self) -> str:
        self._counter += 1
        ts = BASE_TIME + timedelta(seconds=self._counter)
        return ts.isoformat().replace("+00:00", "Z")

    @staticmethod
    def line(record: dict[str, Any]) -> str:
        return json.dumps(record) + "\n"

    def write(self, *records: dict[str, Any]) -> Path:
        self.path.write_text("".join(self.line(r) for r in records), encoding="utf-8")
        return self.path

    def append(self, *records: dict[str, Any]) -> Path:
        with self.path.open("a", encoding="utf-8") as f:
            for record in records:
                f.write(self.line(record))
        return self.path


class ClaudeLog(_JsonlLog):
    """Builds Claude Code records for one session (or one of its agents)."""

    def __init__(
        self,
        root: Path,
        session_id: str,
        agent_id: Optional[str] = None,
        cwd: str = "/home/dev/proj",
    ):
        super().__init__()
        self.session_id = session_id
        self.agent_id = agent_id
        self.cwd = cwd
        folder = root / "projects" / "-home-dev-proj"
        folder.mkdir(parents=True, exist_ok=True)
        name = f"agent-{agent_id}.jsonl" if agent_id else f"{session_id}.jsonl"
        self.path = folder / name

    def _record(self, record_type: str, message: dict[str, Any], **extra: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "type": record_type,
            "sessionId": self.session_id,
            "uuid": f"{self.agent_id or 'main'}-{record_type}-{self._counter + 1}",
            "cwd": self.cwd,
            "gitBranch": "main",
            "version": "2.0.17",
            "timestamp": self._next_timestamp(),
            "message": message,
        }
        if self.agent_id:
            record["isSidechain"] = True
            record["agentId"] = self.agent_id
        record.update(extra)
        return record

    def user(self, text: str, **extra: Any) -> dict[str, Any]:
        return self._record("user", {"role": "user", "content": text}, **extra)

    def assistant(
        self,
        *blocks: dict[str, Any],
        text: str = "Done.",
        model: str = "claude-sonnet-4-5",
        usage: Optional[dict[str, int]] = None,
        **extra: Any,
    ) -> dict[str, Any]:
        message: dict[str, Any] = {
            "role": "assistant",
            "model": model,
            "content": list(blocks) or [{"type": "text", "text": text}],
        }
        if usage:
            message["usage"] = usage
        return self._record("assistant", message, **extra)

    def tool_result(
        self,
        tool_use_id: str,
        content: str = "ok",
        is_error: bool = False,
        **extra: Any,
    ) -> dict[str, Any]:
        block = {
            "type": "tool_result",
            "tool_use_id": tool_use_id,
            "content": content,
            "is_error": is_error,
        }
        return self._record("user", {"role": "user", "content": [block]}, **extra)

    @staticmethod
    def tool_use(tool_use_id: str, name: str, **tool_input: Any) -> dict[str, Any]:
        return {"type": "tool_use", "id": tool_use_id, "name": name, "input": tool_input}


class CodexLog(_JsonlLog):
    """Builds Codex rollout records for one session."""

    def __init__(self, root: Path, session_id: str = CODEX_SESSION_ID):
        super().__init__()
        self.session_id = session_id
        folder = root / "sessions" / "2025" / "06" / "02"
        folder.mkdir(parents=True, exist_ok=True)
        self.path = folder / f"rollout-2025-06-02T10-00-00-{session_id}.jsonl"

    def _record(self, record_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {"timestamp": self._next_timestamp(), "type": record_type, "payload": payload}

    def session_meta(self, cwd: str = "/home/dev/codex-proj", **extra: Any) -> dict[str, Any]:
        payload = {
            "id": self.session_id,
            "cwd": cwd,
            "originator": "codex_cli_rs",
            "cli_version": "0.46.0",
            "git": {"branch": "main", "commit_hash": "abc123"},
            **extra,
        }
        return self._record("session_meta", payload)

    def turn_context(self, model: str = "gpt-5-codex", cwd: str = "/home/dev/codex-proj") -> dict[str, Any]:
        return self._record("turn_context", {"model": model, "cwd": cwd})

    def message(self, role: str, text: str) -> dict[str, Any]:
        block_type = "input_text" if role == "user" else "output_text"
        return self._record(
            "response_item",
            {"type": "message", "role": role, "content": [{"type": block_type, "text": text}]},
        )

    def function_call(self, name: str, arguments: dict[str, Any], call_id: str) -> dict[str, Any]:
        return self._record(
            "response_item",
            {
                "type": "function_call",
                "name": name,
                "arguments": json.dumps(arguments),
                "call_id": call_id,
            },
        )

    def function_call_output(self, call_id: str, output: str) -> dict[str, Any]:
        return self._record(
            "response_item",
            {"type": "function_call_output", "call_id": call_id, "output": output},
        )

    def token_count(self, input_tokens: int, output_tokens: int) -> dict[str, Any]:
        return self.event(
            "token_count",
            info={
                "last_token_usage": {
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                }
            },
        )

    def event(self, msg_type: str, **payload: Any) -> dict[str, Any]:
        return self._record("event_msg", {"type": msg_type, **payload})


@pytest.fixture
def claude_root(tmp_path: Path) -> Path:
    root = tmp_path / ".claude"
    (root / "projects").mkdir(parents=True)
    return root


@pytest.fixture
def codex_root(tmp_path: Path) -> Path:
    root = tmp_path / ".codex"
    (root / "sessions").mkdir(parents=True)
    return root


@pytest.fixture
def claude_log(claude_root: Path) -> Callable[..., ClaudeLog]:
    def _make(session_id: str = "sess-main", agent_id: Optional[str] = None) -> ClaudeLog:
        return ClaudeLog(claude_root, session_id, agent_id=agent_id)

    return _make


@pytest.fixture
def codex_log(codex_root: Path) -> Callable[..., CodexLog]:
    def _make(session_id: str = CODEX_SESSION_ID) -> CodexLog:
        return CodexLog(codex_root, session_id)

    return _make


@pytest.fixture
def coordinator(db: Database, claude_root: Path, codex_root: Path) -> IngestCoordinator:
    return IngestCoordinator(db, [ClaudeCodeParser(claude_root), CodexParser(codex_root)])


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------


class FakeCollector:
    """
    Request handler for ``httpx.MockTransport`` emulating a collector server.

    Every request is recorded as ``(method, path, json_body)``. Failures
    can be queued per path suffix with ``fail_next``. ``raw_paths`` keeps
    each path as sent, percent-escapes included.
    """

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, Any]] = []
        self.raw_paths: list[str] = []
        self._failures: dict[str, list[int]] = {}

    def fail_next(self, suffix: str, *status_codes: int) -> None:
        self._failures.setdefault(suffix, []).extend(status_codes)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def posted(self, suffix: str) -> list[Any]:
        """Bodies of POST requests whose path ends with ``suffix``."""
        return [
            body
            for method, path, body in self.requests
            if method == "POST" and path.endswith(suffix)
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.requests.append((request.method, path, body))
        self.raw_paths.append(request.url.raw_path.decode("ascii").split("?", 1)[0])

        for suffix, codes in self._failures.items():
            if path.endswith(suffix) and codes:
                return httpx.Response(codes.pop(0), json={"detail": "unavailable"})

        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if path == "/collectors/register":
            return httpx.Response(
                201,
                json={
                    "collector_id": "col-123",
                    "api_key": "cs_live_secret",
                    "api_key_prefix": "cs_live",
                },
            )
        if path.endswith("/events"):
            return httpx.Response(
                200, json={"accepted": len(body["events"]), "rejected": 0}
            )
        if path.endswith("/start"):
            return httpx.Response(201, json={"status": "active"})
        if path.endswith("/complete"):
            return httpx.Response(200, json={"completed": True})
        return httpx.Response(404, json={"detail": "not found"})


@pytest.fixture
def fake_collector() -> FakeCollector:
    return FakeCollector()


@pytest.fixture
def collector_settings() -> CollectorSettings:
    return CollectorSettings(
        enabled=True,
        server_url="https://collector.test",
        collector_id="col-1",
        api_key="key-1",
        batch_size=4,
        max_retries=3,
        stale_minutes=60,
    )


@pytest.fixture
def sleep() -> Mock:
    """Stands in for time.sleep in retry loops."""
    return Mock()


@pytest.fixture
def make_publisher(
    db: Database,
    collector_settings: CollectorSettings,
    fake_collector: FakeCollector,
    sleep: Mock,
) -> Callable[..., StatefulSyncPublisher]:
    """Factory for publishers talking to the fake collector at a fixed clock."""

    def _make(
        now: datetime = BASE_TIME + timedelta(minutes=1),
        settings: Optional[CollectorSettings] = None,
    ) -> StatefulSyncPublisher:
        settings = settings or collector_settings
        client = CollectorClient.from_settings(
            settings, transport=fake_collector.transport, sleep=sleep
        )
        return StatefulSyncPublisher(settings, db, client=client, now=lambda: now)

    return _make


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def write_config(
    isolated_env: Path, monkeypatch: pytest.MonkeyPatch
) -> Callable[[str], Path]:
    """Factory that writes config.toml and points AIOBSCURA_CONFIG_FILE at it."""

    def _write(content: str) -> Path:
        path = isolated_env / ".config" / "aiobscura" / "config.toml"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        monkeypatch.setenv("AIOBSCURA_CONFIG_FILE", str(path))
        return path

    return _write
