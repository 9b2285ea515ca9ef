"""
Stateful publishing of stored messages to the remote collector.

The publish high-water mark (``collector_publish_state.last_published_seq``)
is the state of record. Each publish reads the next batch of main-thread
messages past the mark, sends it, and advances the mark only after the
server accepted the batch, so a crash replays at most one batch.

Publishing never blocks local ingest: network failures are retried, then
recorded on the session's publish state and logged.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from aiobscura.collector.client import CollectorClient
from aiobscura.collector.events import CollectorEvent, session_start_event
from aiobscura.config import CollectorSettings
from aiobscura.db.connection import Database
from aiobscura.db.repositories import (
    MessageRepository,
    ProjectRepository,
    PublishStateRepository,
    SessionRepository,
    main_thread_id,
)
from aiobscura.exceptions import NetworkError, SessionNotFoundError
from aiobscura.models.db import Message, PublishStatus
from aiobscura.utils.timestamps import utc_now

logger = logging.getLogger(__name__)

STALE_OUTCOME = "partial"


@dataclass
class PublishStats:
    """Publishing counters for the lifetime of a publisher."""

    events_sent: int = 0
    events_rejected: int = 0
    api_calls: int = 0
    api_failures: int = 0
    sessions_started: int = 0
    sessions_completed: int = 0


@dataclass
class _Buffered:
    seq: int
    event: CollectorEvent


class StatefulSyncPublisher:
    """
    Publishes sessions to the collector, resuming from the stored mark.

    Example:
        >>> publisher = StatefulSyncPublisher(settings.collector, db)
        >>> publisher.publish_session(session_id, batch_size=20)
        20
    """

    def __init__(
        self,
        settings: CollectorSettings,
        db: Database,
        client: Optional[CollectorClient] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.db = db
        self.client = client or CollectorClient.from_settings(settings)
        self.stats = PublishStats()
        self._now = now
        self._buffers: dict[str, list[_Buffered]] = {}

    @classmethod
    def create(cls, settings: CollectorSettings, db: Database) -> Optional["StatefulSyncPublisher"]:
        """Publisher for ready settings, or None when the collector is off."""
        if not settings.is_ready():
            return None
        return cls(settings, db)

    def close(self) -> None:
        self.client.close()

    @property
    def stale_threshold(self) -> timedelta:
        return timedelta(minutes=self.settings.stale_minutes)

    # ------------------------------------------------------------------
    # Session start
    # ------------------------------------------------------------------

    def _ensure_started(self, session_id: str) -> bool:
        """
        Send ``session_start`` once per session.

        Returns:
            False if the start event could not be delivered

        Raises:
            SessionNotFoundError: If the session is not in the store
        """
        with self.db.session() as session:
            record = SessionRepository(session).get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            state = PublishStateRepository(session).get_or_create(session_id)
            if state.last_published_seq > 0 or state.started_at is not None:
                return True
            project = ProjectRepository(session).get(record.project_id) if record.project_id else None
            event = session_start_event(record, project, observed_at=self._now())

        self.stats.api_calls += 1
        try:
            self.client.start_session(session_id, event)
        except NetworkError as e:
            self._record_failure(session_id, f"session_start failed: {e}")
            return False

        with self.db.session() as session:
            PublishStateRepository(session).mark_started(session_id, self._now())
        self.stats.sessions_started += 1
        logger.debug(f"Started remote session {session_id}")
        return True

    def _record_failure(self, session_id: str, message: str) -> None:
        self.stats.api_failures += 1
        logger.warning(f"Failed to publish session {session_id}: {message}")
        with self.db.session() as session:
            PublishStateRepository(session).mark_error(session_id, message)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_session(self, session_id: str, batch_size: Optional[int] = None) -> int:
        """
        Publish the next batch of a session's unpublished messages.

        When nothing is left to send, the session is completed remotely if
        it has gone stale.

        Returns:
            Number of messages published by this call (0 on failure)
        """
        batch_size = max(batch_size or self.settings.batch_size, 1)
        try:
            if not self._ensure_started(session_id):
                return 0
        except SessionNotFoundError as e:
            logger.warning(f"Skipping publish: {e}")
            return 0

        with self.db.session() as session:
            state = PublishStateRepository(session).get_or_create(session_id)
            after_seq = state.last_published_seq
            messages = MessageRepository(session).list_after_seq(session_id, after_seq, batch_size)

        if not messages:
            self._complete_if_stale(session_id)
            return 0

        return self._send(session_id, messages)

    def _send(self, session_id: str, messages: Sequence[Message]) -> int:
        events = [CollectorEvent.from_message(message) for message in messages]
        self.stats.api_calls += 1
        try:
            response = self.client.send_events_with_retry(session_id, events)
        except NetworkError as e:
            self._record_failure(session_id, str(e))
            return 0

        last_seq = max(message.seq for message in messages)
        with self.db.session() as session:
            PublishStateRepository(session).mark_published(session_id, last_seq)
        self.stats.events_sent += response.accepted
        self.stats.events_rejected += response.rejected
        logger.debug(
            f"Published {len(messages)} events for {session_id} "
            f"(accepted={response.accepted}, rejected={response.rejected}, seq={last_seq})"
        )
        return len(messages)

    def publish_all(self, session_id: str, batch_size: Optional[int] = None) -> int:
        """Publish batches until the session is caught up or a batch fails."""
        batch_size = max(batch_size or self.settings.batch_size, 1)
        total = 0
        while True:
            sent = self.publish_session(session_id, batch_size)
            total += sent
            if sent < batch_size:
                return total

    def resume_incomplete(self, batch_size: Optional[int] = None) -> int:
        """
        Publish every active session that has messages past its mark.

        Returns:
            Number of messages published
        """
        with self.db.session() as session:
            session_ids = [s.session_id for s in PublishStateRepository(session).list_incomplete()]

        total = 0
        for session_id in session_ids:
            total += self.publish_all(session_id, batch_size)
        if total:
            logger.info(f"Resumed {len(session_ids)} incomplete sessions ({total} events)")
        return total

    # ------------------------------------------------------------------
    # Stale completion
    # ------------------------------------------------------------------

    def _is_stale(self, session_id: str) -> bool:
        """Active, fully published, and idle past the stale threshold."""
        with self.db.session() as session:
            state = PublishStateRepository(session).get(session_id)
            if state is None or state.status != PublishStatus.ACTIVE:
                return False
            if MessageRepository(session).max_main_seq(session_id) > state.last_published_seq:
                return False
            record = SessionRepository(session).get(session_id)
            if record is None or record.last_activity_at is None:
                return False
            return self._now() - record.last_activity_at > self.stale_threshold

    def _complete_if_stale(self, session_id: str) -> bool:
        if not self._is_stale(session_id):
            return False

        with self.db.session() as session:
            event_count = PublishStateRepository(session).get_or_create(session_id).last_published_seq

        self.stats.api_calls += 1
        try:
            self.client.complete_session(session_id, outcome=STALE_OUTCOME, event_count=event_count)
        except NetworkError as e:
            self._record_failure(session_id, f"session_complete failed: {e}")
            return False

        with self.db.session() as session:
            PublishStateRepository(session).mark_completed(session_id)
        self.stats.sessions_completed += 1
        logger.info(f"Completed stale session {session_id} ({event_count} events)")
        return True

    def complete_stale_sessions(self) -> int:
        """Complete every active session that went stale; returns how many."""
        with self.db.session() as session:
            session_ids = [s.session_id for s in PublishStateRepository(session).list_active()]
        return sum(1 for session_id in session_ids if self._complete_if_stale(session_id))

    # ------------------------------------------------------------------
    # In-memory queue
    # ------------------------------------------------------------------

    def queue(self, messages: Sequence[Message]) -> int:
        """
        Buffer main-thread messages per session, flushing full buffers.

        Buffers are advisory; anything lost here is picked up again from
        the publish mark by ``resume_incomplete``.

        Returns:
            Number of messages published by flushes triggered here
        """
        sent = 0
        touched: list[str] = []
        for message in messages:
            if message.thread_id != main_thread_id(message.session_id):
                continue
            buffer = self._buffers.setdefault(message.session_id, [])
            buffer.append(_Buffered(message.seq, CollectorEvent.from_message(message)))
            if message.session_id not in touched:
                touched.append(message.session_id)

        for session_id in touched:
            if len(self._buffers[session_id]) >= self.settings.batch_size:
                sent += self.flush_session(session_id)
        return sent

    def flush_session(self, session_id: str) -> int:
        """Send a session's buffered events in seq order, skipping published ones."""
        buffered = self._buffers.pop(session_id, [])
        if not buffered:
            return 0
        try:
            if not self._ensure_started(session_id):
                return 0
        except SessionNotFoundError as e:
            logger.warning(f"Dropping buffered events: {e}")
            return 0

        with self.db.session() as session:
            mark = PublishStateRepository(session).get_or_create(session_id).last_published_seq

        pending = sorted((b for b in buffered if b.seq > mark), key=lambda b: b.seq)
        # Only a gap-free run starting right after the mark may advance it
        contiguous: list[_Buffered] = []
        for item in pending:
            if item.seq != mark + len(contiguous) + 1:
                break
            contiguous.append(item)
        if not contiguous:
            return 0

        self.stats.api_calls += 1
        try:
            response = self.client.send_events_with_retry(
                session_id, [item.event for item in contiguous]
            )
        except NetworkError as e:
            self._record_failure(session_id, str(e))
            return 0

        with self.db.session() as session:
            PublishStateRepository(session).mark_published(session_id, contiguous[-1].seq)
        self.stats.events_sent += response.accepted
        self.stats.events_rejected += response.rejected
        return len(contiguous)

    def flush_all(self) -> int:
        """Flush every buffered session."""
        return sum(self.flush_session(session_id) for session_id in list(self._buffers))

    def pending_count(self) -> int:
        return sum(len(buffer) for buffer in self._buffers.values())

    def has_pending(self) -> bool:
        return any(self._buffers.values())
