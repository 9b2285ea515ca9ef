"""
Repository layer for database operations.

Each repository wraps one ORM ``Session`` opened through
``Database.session()``; the caller owns the transaction.
"""

from aiobscura.db.repositories.agent_spawn import AgentSpawnRepository
from aiobscura.db.repositories.analytics import AnalyticsRepository
from aiobscura.db.repositories.base import BaseRepository
from aiobscura.db.repositories.message import MessageRepository, main_thread_id
from aiobscura.db.repositories.plan import PlanRepository
from aiobscura.db.repositories.project import BackingModelRepository, ProjectRepository
from aiobscura.db.repositories.publish_state import PublishStateRepository
from aiobscura.db.repositories.session import SessionFilter, SessionRepository
from aiobscura.db.repositories.source_file import SourceFileRepository
from aiobscura.db.repositories.stats import StatsRepository
from aiobscura.db.repositories.thread import ThreadRepository

__all__ = [
    "AgentSpawnRepository",
    "AnalyticsRepository",
    "BackingModelRepository",
    "BaseRepository",
    "MessageRepository",
    "PlanRepository",
    "ProjectRepository",
    "PublishStateRepository",
    "SessionFilter",
    "SessionRepository",
    "SourceFileRepository",
    "StatsRepository",
    "ThreadRepository",
    "main_thread_id",
]
