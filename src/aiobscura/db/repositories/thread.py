"""
Thread repository.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import Thread, ThreadType
from aiobscura.models.parsed import ParsedThread


class ThreadRepository(BaseRepository[Thread]):
    """Repository for Thread model."""

    def __init__(self, session: Session):
        super().__init__(Thread, session)

    def insert(self, parsed: ParsedThread) -> bool:
        """
        Insert a thread if it does not exist yet.

        Returns:
            True if the thread was created
        """
        metadata = dict(parsed.metadata)
        if parsed.agent_id:
            metadata["agent_id"] = parsed.agent_id
        return self._insert_or_ignore(
            {
                "id": parsed.id,
                "session_id": parsed.session_id,
                "thread_type": parsed.thread_type,
                "parent_thread_id": parsed.parent_thread_id,
                "spawned_by_message_id": None,
                "started_at": parsed.started_at,
                "ended_at": parsed.ended_at,
                "last_activity_at": parsed.last_activity_at,
                "agent_subtype": parsed.agent_subtype,
                "metadata": metadata or None,
            }
        )

    def exists(self, thread_id: str) -> bool:
        return (
            self.session.query(Thread.id).filter(Thread.id == thread_id).first()
            is not None
        )

    def touch(
        self,
        thread_id: str,
        last_activity_at: Optional[datetime],
        agent_subtype: Optional[str] = None,
    ) -> None:
        """Move ``last_activity_at`` forward and fill in a late-discovered subtype."""
        thread = self.get(thread_id)
        if thread is None:
            return
        if last_activity_at and (
            thread.last_activity_at is None or last_activity_at > thread.last_activity_at
        ):
            thread.last_activity_at = last_activity_at
        if agent_subtype and not thread.agent_subtype:
            thread.agent_subtype = agent_subtype
        self.session.flush()

    def list_for_session(self, session_id: str) -> List[Thread]:
        """
        Threads of a session, main thread first.

        Args:
            session_id: Session id

        Returns:
            Threads ordered by start time
        """
        threads = (
            self.session.query(Thread)
            .filter(Thread.session_id == session_id)
            .order_by(Thread.started_at, Thread.id)
            .all()
        )
        return sorted(threads, key=lambda t: t.thread_type != ThreadType.MAIN)

    def update_spawn_info(
        self,
        thread_id: str,
        parent_thread_id: str,
        spawned_by_message_id: Optional[int],
    ) -> None:
        """Set the spawn edge of an agent thread. Re-applying the same edge is a no-op."""
        thread = self.get(thread_id)
        if thread is None:
            return
        thread.parent_thread_id = parent_thread_id
        thread.spawned_by_message_id = spawned_by_message_id
        self.session.flush()

    def list_agent_threads(self, agent_id: str) -> List[Thread]:
        """Agent threads created for ``agent_id`` in any session."""
        return (
            self.session.query(Thread)
            .filter(
                Thread.thread_type == ThreadType.AGENT,
                func.json_extract(Thread.extra_data, "$.agent_id") == agent_id,
            )
            .all()
        )
