"""
Database connection management for aiobscura.

The store is a single SQLite file in WAL mode. All reads and writes share
one connection, and every unit of work serializes on a process-wide lock,
so callers never observe a half-written ingest batch.
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from aiobscura.exceptions import StorageError

logger = logging.getLogger(__name__)

# Negative cache_size is in KiB: ~64MB page cache
CACHE_SIZE_KIB = 64000


def _configure_sqlite(engine: Engine) -> None:
    """Install pragmas and explicit BEGIN so every unit of work is transactional."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Let SQLAlchemy emit BEGIN itself (pysqlite defers it otherwise)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA cache_size=-{CACHE_SIZE_KIB}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


class Database:
    """
    Handle to the local store.

    Opened once at startup (running migrations) and passed explicitly to
    the components that need it.

    Example:
        >>> db = Database.open(Path("~/.local/share/aiobscura/data.db"))
        >>> with db.session() as session:
        >>>     SessionRepository(session).get("abc")
    """

    def __init__(self, url: str, path: Path | None = None):
        self.path = path
        self.engine = create_engine(
            url,
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        _configure_sqlite(self.engine)
        self._lock = threading.RLock()
        self._session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    @classmethod
    def open(cls, path: Path, migrate: bool = True) -> "Database":
        """Open (creating if needed) the store at ``path`` and apply migrations."""
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Opening database at {path}")
        db = cls(f"sqlite:///{path}", path=path)
        if migrate:
            db.migrate()
        return db

    @classmethod
    def open_in_memory(cls, migrate: bool = True) -> "Database":
        """Open a private in-memory store (tests and dry runs)."""
        db = cls("sqlite://")
        if migrate:
            db.migrate()
        return db

    def migrate(self) -> int:
        """Apply pending migrations; returns the resulting schema version."""
        from aiobscura.db.migrations import run_migrations

        with self._lock:
            return run_migrations(self.engine)

    def schema_version(self) -> int:
        from aiobscura.db.migrations import get_schema_version

        with self._lock:
            return get_schema_version(self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Context manager for one unit of work.

        Commits on success and rolls back on any exception. SQLAlchemy
        failures are re-raised as StorageError.

        Yields:
            Session: A SQLAlchemy session bound to the shared connection
        """
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(str(e)) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def check_connection(self) -> bool:
        """Return True if the store answers a trivial query."""
        try:
            with self.session() as session:
                session.execute(text("SELECT 1"))
            return True
        except StorageError as e:
            logger.error(f"Database connection failed: {e}")
            return False

    def close(self) -> None:
        self.engine.dispose()
