"""Local SQLite store: connection handling, migrations and repositories."""

from aiobscura.db.connection import Database

__all__ = ["Database"]
