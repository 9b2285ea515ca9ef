"""Tests for the store repositories."""

from datetime import timedelta
from typing import Callable

import pytest

from aiobscura.db.connection import Database
from aiobscura.db.repositories import (
    AgentSpawnRepository,
    MessageRepository,
    PlanRepository,
    PublishStateRepository,
    SessionRepository,
    SourceFileRepository,
    ThreadRepository,
    main_thread_id,
)
from aiobscura.models.db import (
    Assistant,
    CheckpointType,
    FileType,
    PlanStatus,
    PublishStatus,
    SessionStatus,
)
from aiobscura.models.parsed import Checkpoint, ParsedPlan, ParsedSession


def _parsed_session(base_time, **overrides) -> ParsedSession:
    values = dict(
        id="sess-1",
        assistant=Assistant.CLAUDE_CODE,
        started_at=base_time,
        source_file_path="/logs/sess-1.jsonl",
        last_activity_at=base_time + timedelta(minutes=5),
        metadata={"cwd": "/home/dev/proj"},
    )
    values.update(overrides)
    return ParsedSession(**values)


@pytest.fixture
def source_file(db: Database) -> str:
    path = "/logs/sess-1.jsonl"
    with db.session() as session:
        SourceFileRepository(session).upsert(
            path=path,
            file_type=FileType.JSONL,
            assistant=Assistant.CLAUDE_CODE,
            checkpoint=Checkpoint.byte_offset(0),
        )
    return path


class TestSourceFileRepository:
    """Tests for checkpoints stored with source files."""

    def test_never_parsed_file_has_no_checkpoint(self, db: Database):
        with db.session() as session:
            checkpoint = SourceFileRepository(session).get_checkpoint("/nope.jsonl")

        assert checkpoint == Checkpoint.none()

    def test_checkpoint_round_trips(self, db: Database):
        """Test that a byte offset checkpoint is stored and read back."""
        with db.session() as session:
            SourceFileRepository(session).upsert(
                path="/logs/a.jsonl",
                file_type=FileType.JSONL,
                assistant=Assistant.CODEX,
                checkpoint=Checkpoint.byte_offset(1234),
                size_bytes=2000,
            )

        with db.session() as session:
            repo = SourceFileRepository(session)
            checkpoint = repo.get_checkpoint("/logs/a.jsonl")
            record = repo.get("/logs/a.jsonl")

        assert checkpoint.type == CheckpointType.BYTE_OFFSET
        assert checkpoint.offset == 1234
        assert record.size_bytes == 2000
        assert record.last_parsed_at is not None

    def test_upsert_advances_checkpoint(self, db: Database):
        with db.session() as session:
            repo = SourceFileRepository(session)
            repo.upsert("/logs/a.jsonl", FileType.JSONL, Assistant.CODEX, Checkpoint.byte_offset(10))
            repo.upsert("/logs/a.jsonl", FileType.JSONL, Assistant.CODEX, Checkpoint.byte_offset(20))

        with db.session() as session:
            assert SourceFileRepository(session).get_checkpoint("/logs/a.jsonl").offset == 20
            assert SourceFileRepository(session).count() == 1


class TestSessionRepository:
    """Tests for session upserts."""

    def test_upsert_is_idempotent(self, db: Database, source_file: str, base_time):
        """Test that upserting the same session twice leaves one identical row."""
        parsed = _parsed_session(base_time)

        with db.session() as session:
            created = SessionRepository(session).upsert(parsed)
        with db.session() as session:
            first = SessionRepository(session).get("sess-1")
        with db.session() as session:
            created_again = SessionRepository(session).upsert(parsed)
        with db.session() as session:
            repo = SessionRepository(session)
            second = repo.get("sess-1")
            count = repo.count()

        assert created is True
        assert created_again is False
        assert count == 1
        assert second.started_at == first.started_at
        assert second.last_activity_at == first.last_activity_at
        assert second.extra_data == first.extra_data

    def test_upsert_keeps_earliest_start_and_latest_activity(
        self, db: Database, source_file: str, base_time
    ):
        """Test that an incremental round never moves timestamps the wrong way."""
        with db.session() as session:
            SessionRepository(session).upsert(_parsed_session(base_time))
        with db.session() as session:
            SessionRepository(session).upsert(
                _parsed_session(
                    base_time,
                    started_at=base_time + timedelta(minutes=10),
                    last_activity_at=base_time + timedelta(minutes=2),
                    metadata={"git_branch": "feature"},
                )
            )

        with db.session() as session:
            record = SessionRepository(session).get("sess-1")

        assert record.started_at == base_time
        assert record.last_activity_at == base_time + timedelta(minutes=5)
        assert record.extra_data["cwd"] == "/home/dev/proj"
        assert record.extra_data["git_branch"] == "feature"

    def test_insert_if_missing_does_not_override(self, db: Database, source_file: str, base_time):
        with db.session() as session:
            repo = SessionRepository(session)
            assert repo.insert_if_missing(_parsed_session(base_time)) is True
            assert repo.insert_if_missing(
                _parsed_session(base_time, metadata={"cwd": "/elsewhere"})
            ) is False

        with db.session() as session:
            assert SessionRepository(session).get("sess-1").extra_data["cwd"] == "/home/dev/proj"

    def test_find_by_prefix(self, seed_session: Callable[..., str], db: Database):
        seed_session("abc123")
        seed_session("abd456")

        with db.session() as session:
            repo = SessionRepository(session)
            assert [s.id for s in repo.find_by_prefix("ab")] == ["abc123", "abd456"]
            assert [s.id for s in repo.find_by_prefix("abc")] == ["abc123"]
            assert repo.find_by_prefix("zzz") == []

    def test_refresh_statuses(self, seed_session: Callable[..., str], db: Database, base_time):
        """Test that statuses are derived from last activity at a given time."""
        seed_session("sess-1", last_activity_at=base_time)

        with db.session() as session:
            SessionRepository(session).refresh_statuses(now=base_time + timedelta(minutes=2))
        with db.session() as session:
            assert SessionRepository(session).get("sess-1").status == SessionStatus.ACTIVE

        with db.session() as session:
            SessionRepository(session).refresh_statuses(now=base_time + timedelta(minutes=30))
            counts = SessionRepository(session).count_by_status()

        assert counts[SessionStatus.INACTIVE] == 1
        assert counts[SessionStatus.STALE] == 0


class TestMessageRepository:
    """Tests for message storage and ordered reads."""

    def test_last_seq_per_thread(self, seed_session: Callable[..., str], db: Database, prompts):
        seed_session("sess-1", prompts(3) + [{"content": "agent work", "agent": "a1"}])

        with db.session() as session:
            repo = MessageRepository(session)
            assert repo.get_last_seq(main_thread_id("sess-1")) == 3
            assert repo.get_last_seq("sess-1-agent-a1") == 1
            assert repo.get_last_seq("unknown-thread") == 0
            assert repo.count_for_session("sess-1") == 4

    def test_list_after_seq_reads_main_thread_only(
        self, seed_session: Callable[..., str], db: Database, prompts
    ):
        """Test that the publish cursor never sees agent-thread messages."""
        seed_session(
            "sess-1",
            prompts(5) + [{"content": "agent work", "agent": "a1"}],
        )

        with db.session() as session:
            batch = MessageRepository(session).list_after_seq("sess-1", 2, limit=2)

        assert [m.seq for m in batch] == [3, 4]
        assert {m.thread_id for m in batch} == {"sess-1-main"}

    def test_delete_for_source(self, seed_session: Callable[..., str], db: Database, prompts):
        seed_session("sess-1", prompts(4))

        with db.session() as session:
            purged = MessageRepository(session).delete_for_source("/logs/sess-1.jsonl")

        with db.session() as session:
            remaining = MessageRepository(session).count_for_session("sess-1")

        assert purged == 4
        assert remaining == 0


class TestThreadRepository:
    def test_insert_is_idempotent(self, seed_session: Callable[..., str], db: Database):
        seed_session("sess-1", [{"content": "hi", "agent": "a1"}])

        with db.session() as session:
            repo = ThreadRepository(session)
            threads = repo.list_for_session("sess-1")
            agents = repo.list_agent_threads("a1")

        assert [t.id for t in threads] == ["sess-1-main", "sess-1-agent-a1"]
        assert [t.id for t in agents] == ["sess-1-agent-a1"]
        assert agents[0].extra_data["agent_id"] == "a1"

    def test_update_spawn_info(self, seed_session: Callable[..., str], db: Database):
        seed_session("sess-1", [{"content": "hi"}, {"content": "sub", "agent": "a1"}])

        with db.session() as session:
            message = MessageRepository(session).get_by_thread_seq("sess-1-main", 1)
            ThreadRepository(session).update_spawn_info(
                "sess-1-agent-a1", "sess-1-main", message.id
            )

        with db.session() as session:
            thread = ThreadRepository(session).get("sess-1-agent-a1")

        assert thread.parent_thread_id == "sess-1-main"
        assert thread.spawned_by_message_id == message.id


class TestAgentSpawnRepository:
    def test_upsert_replaces_seq(self, seed_session: Callable[..., str], db: Database):
        seed_session("sess-1")

        with db.session() as session:
            repo = AgentSpawnRepository(session)
            repo.upsert("a1", "sess-1", 5)
            repo.upsert("a1", "sess-1", 7)

        with db.session() as session:
            spawns = AgentSpawnRepository(session).list_for_session("sess-1")

        assert [(s.agent_id, s.spawning_message_seq) for s in spawns] == [("a1", 7)]


class TestPlanRepository:
    def test_versions_are_deduplicated_by_hash(
        self, seed_session: Callable[..., str], db: Database, base_time
    ):
        """Test that identical plan content is stored as a single version."""
        seed_session("sess-1")
        plan = ParsedPlan(
            slug="quiet-river",
            path="/home/dev/.claude/plans/quiet-river.md",
            content_hash="h1",
            created_at=base_time,
            modified_at=base_time,
            title="Refactor parser",
            content="# Refactor parser",
            status=PlanStatus.UNKNOWN,
        )

        with db.session() as session:
            repo = PlanRepository(session)
            repo.upsert_plan(plan)
            assert repo.insert_version(plan) is True
            assert repo.insert_version(plan) is False
            assert repo.link_session("sess-1", plan.slug, base_time) is True
            assert repo.link_session("sess-1", plan.slug, base_time) is False

        with db.session() as session:
            repo = PlanRepository(session)
            assert len(repo.list_versions("quiet-river")) == 1
            assert [p.title for p in repo.list_for_session("sess-1")] == ["Refactor parser"]


class TestPublishStateRepository:
    """Tests for the collector publish high-water mark."""

    def test_get_or_create_starts_at_zero(self, seed_session: Callable[..., str], db: Database):
        seed_session("sess-1")

        with db.session() as session:
            state = PublishStateRepository(session).get_or_create("sess-1")

        assert state.last_published_seq == 0
        assert state.status == PublishStatus.ACTIVE
        assert state.started_at is None

    def test_mark_published_clears_error(self, seed_session: Callable[..., str], db: Database):
        seed_session("sess-1")

        with db.session() as session:
            repo = PublishStateRepository(session)
            repo.mark_error("sess-1", "HTTP 503")
            repo.mark_published("sess-1", 4)

        with db.session() as session:
            state = PublishStateRepository(session).get("sess-1")

        assert state.last_published_seq == 4
        assert state.error_message is None
        assert state.last_published_at is not None

    def test_clamp_seq_only_lowers(self, seed_session: Callable[..., str], db: Database):
        """Test that clamping pulls the mark back but never forward."""
        seed_session("sess-1")

        with db.session() as session:
            repo = PublishStateRepository(session)
            repo.mark_published("sess-1", 10)
            assert repo.clamp_seq("sess-1", 12) is False
            assert repo.clamp_seq("sess-1", 3) is True

        with db.session() as session:
            assert PublishStateRepository(session).get("sess-1").last_published_seq == 3

    def test_list_incomplete(self, seed_session: Callable[..., str], db: Database, prompts):
        """Test that only active states with unpublished main-thread messages are listed."""
        seed_session("behind", prompts(3))
        seed_session("caught-up", prompts(2))
        seed_session("done", prompts(4))

        with db.session() as session:
            repo = PublishStateRepository(session)
            repo.mark_published("behind", 1)
            repo.mark_published("caught-up", 2)
            repo.mark_published("done", 1)
            repo.mark_completed("done")

        with db.session() as session:
            repo = PublishStateRepository(session)
            incomplete = [s.session_id for s in repo.list_incomplete()]
            active = {s.session_id for s in repo.list_active()}

        assert incomplete == ["behind"]
        assert active == {"behind", "caught-up"}
