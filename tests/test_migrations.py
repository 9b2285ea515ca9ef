"""Tests for the store connection and schema migrations."""

from pathlib import Path

import pytest
from sqlalchemy import inspect, text

from aiobscura.db.connection import Database
from aiobscura.db.migrations import TARGET_VERSION, split_statements
from aiobscura.exceptions import StorageError

EXPECTED_TABLES = {
    "projects",
    "backing_models",
    "source_files",
    "sessions",
    "threads",
    "messages",
    "session_metrics",
    "assessments",
    "plugin_metrics",
    "plugin_runs",
    "agent_spawns",
    "plans",
    "plan_versions",
    "session_plans",
    "collector_publish_state",
}


class TestMigrations:
    """Tests for forward-only migrations tracked in user_version."""

    def test_fresh_store_is_at_target_version(self, tmp_path: Path):
        """Test that opening a new file applies every migration."""
        db = Database.open(tmp_path / "data.db")
        try:
            assert db.schema_version() == TARGET_VERSION == 4
            assert EXPECTED_TABLES <= set(inspect(db.engine).get_table_names())
        finally:
            db.close()

    def test_reopening_is_a_no_op(self, tmp_path: Path):
        """Test that migrating an up-to-date store changes nothing."""
        path = tmp_path / "data.db"
        Database.open(path).close()

        db = Database.open(path)
        try:
            assert db.migrate() == TARGET_VERSION
            assert db.schema_version() == TARGET_VERSION
        finally:
            db.close()

    def test_open_creates_parent_directories(self, tmp_path: Path):
        path = tmp_path / "nested" / "dir" / "data.db"

        Database.open(path).close()

        assert path.exists()

    def test_split_statements_drops_comments(self):
        script = """
        -- a comment
        CREATE TABLE a (id INTEGER);
        CREATE INDEX idx_a ON a(id);
        """

        assert split_statements(script) == [
            "CREATE TABLE a (id INTEGER)",
            "CREATE INDEX idx_a ON a(id)",
        ]


class TestSessions:
    """Tests for units of work on the store."""

    def test_commit_on_success(self, db: Database):
        with db.session() as session:
            session.execute(
                text(
                    "INSERT INTO projects (id, path, created_at) "
                    "VALUES ('p1', '/p', '2025-01-01T00:00:00.000000+00:00')"
                )
            )

        with db.session() as session:
            assert session.execute(text("SELECT COUNT(*) FROM projects")).scalar() == 1

    def test_rollback_on_error(self, db: Database):
        """Test that a failed unit of work leaves nothing behind."""
        with pytest.raises(RuntimeError):
            with db.session() as session:
                session.execute(
                    text(
                        "INSERT INTO projects (id, path, created_at) "
                        "VALUES ('p1', '/p', '2025-01-01T00:00:00.000000+00:00')"
                    )
                )
                raise RuntimeError("boom")

        with db.session() as session:
            assert session.execute(text("SELECT COUNT(*) FROM projects")).scalar() == 0

    def test_sqlalchemy_errors_become_storage_errors(self, db: Database):
        """Test that constraint violations surface as StorageError."""
        with pytest.raises(StorageError):
            with db.session() as session:
                session.execute(
                    text(
                        "INSERT INTO sessions (id, assistant, started_at, source_file_path) "
                        "VALUES ('s1', 'claude_code', '2025-01-01', '/missing.jsonl')"
                    )
                )

    def test_check_connection(self, db: Database):
        assert db.check_connection() is True
