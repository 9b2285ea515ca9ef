"""
Collector publish state repository.

One row per session holds the publish high-water mark. The row is the
state of record; publisher buffers are advisory.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import CollectorPublishState, Message, PublishStatus
from aiobscura.utils.timestamps import utc_now

logger = logging.getLogger(__name__)


class PublishStateRepository(BaseRepository[CollectorPublishState]):
    """Repository for CollectorPublishState model."""

    def __init__(self, session: Session):
        super().__init__(CollectorPublishState, session)

    def get_or_create(self, session_id: str) -> CollectorPublishState:
        """
        Get the publish state for a session, creating it at seq 0.

        Args:
            session_id: Session id

        Returns:
            Existing or new CollectorPublishState
        """
        state = self.get(session_id)
        if state is None:
            now = utc_now()
            state = CollectorPublishState(
                session_id=session_id,
                last_published_seq=0,
                status=PublishStatus.ACTIVE,
                created_at=now,
                updated_at=now,
            )
            self.session.add(state)
            self.session.flush()
            logger.debug(f"Created publish state for session {session_id}")
        return state

    def upsert(self, state: CollectorPublishState) -> None:
        state.updated_at = utc_now()
        self._upsert(
            {
                "session_id": state.session_id,
                "last_published_seq": state.last_published_seq,
                "status": state.status,
                "started_at": state.started_at,
                "last_published_at": state.last_published_at,
                "error_message": state.error_message,
                "created_at": state.created_at or state.updated_at,
                "updated_at": state.updated_at,
            },
            index_elements=["session_id"],
            update_columns=[
                "last_published_seq",
                "status",
                "started_at",
                "last_published_at",
                "error_message",
                "updated_at",
            ],
        )

    def mark_started(self, session_id: str, at: Optional[datetime] = None) -> None:
        state = self.get_or_create(session_id)
        state.started_at = at or utc_now()
        state.updated_at = utc_now()
        self.session.flush()

    def mark_published(self, session_id: str, seq: int) -> None:
        """Advance the high-water mark to ``seq`` and clear any recorded error."""
        state = self.get_or_create(session_id)
        now = utc_now()
        state.last_published_seq = seq
        state.last_published_at = now
        state.error_message = None
        state.updated_at = now
        self.session.flush()

    def mark_error(self, session_id: str, message: str) -> None:
        state = self.get_or_create(session_id)
        state.error_message = message
        state.updated_at = utc_now()
        self.session.flush()

    def mark_completed(self, session_id: str) -> None:
        state = self.get_or_create(session_id)
        state.status = PublishStatus.COMPLETED
        state.updated_at = utc_now()
        self.session.flush()

    def clamp_seq(self, session_id: str, max_seq: int) -> bool:
        """
        Pull the high-water mark back to ``max_seq`` if it is beyond it.

        Needed after a truncated log was re-read and its messages renumbered.
        """
        state = self.get(session_id)
        if state is None or state.last_published_seq <= max_seq:
            return False
        logger.info(
            f"Resetting publish seq of {session_id} from "
            f"{state.last_published_seq} to {max_seq}"
        )
        state.last_published_seq = max_seq
        state.updated_at = utc_now()
        self.session.flush()
        return True

    def list_active(self) -> List[CollectorPublishState]:
        return (
            self.session.query(CollectorPublishState)
            .filter(CollectorPublishState.status == PublishStatus.ACTIVE)
            .order_by(CollectorPublishState.updated_at)
            .all()
        )

    def list_incomplete(self) -> List[CollectorPublishState]:
        """
        Active states whose main thread has messages past the high-water mark.
        """
        max_seq = (
            self.session.query(func.max(Message.seq))
            .filter(
                Message.session_id == CollectorPublishState.session_id,
                Message.thread_id == CollectorPublishState.session_id + "-main",
            )
            .scalar_subquery()
        )
        return (
            self.session.query(CollectorPublishState)
            .filter(
                CollectorPublishState.status == PublishStatus.ACTIVE,
                func.coalesce(max_seq, 0) > CollectorPublishState.last_published_seq,
            )
            .order_by(CollectorPublishState.updated_at)
            .all()
        )

    def list_all(self) -> List[CollectorPublishState]:
        return (
            self.session.query(CollectorPublishState)
            .order_by(CollectorPublishState.updated_at.desc())
            .all()
        )
