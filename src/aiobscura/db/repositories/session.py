"""
Assistant session repository.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import Assistant, AssistantSession, SessionStatus
from aiobscura.models.parsed import ParsedSession


@dataclass
class SessionFilter:
    """Optional filters for listing sessions; unset fields match everything."""

    assistant: Optional[Assistant] = None
    status: Optional[SessionStatus] = None
    project_id: Optional[str] = None
    since: Optional[datetime] = None
    limit: Optional[int] = None


def _merge_metadata(
    existing: Optional[dict[str, Any]], incoming: Optional[dict[str, Any]]
) -> Optional[dict[str, Any]]:
    if not existing:
        return incoming or None
    merged = dict(existing)
    for key, value in (incoming or {}).items():
        if isinstance(value, list) and isinstance(merged.get(key), list):
            merged[key] = merged[key] + [v for v in value if v not in merged[key]]
        elif value is not None:
            merged[key] = value
    return merged


class SessionRepository(BaseRepository[AssistantSession]):
    """Repository for AssistantSession model."""

    def __init__(self, session: Session):
        super().__init__(AssistantSession, session)

    def _values(self, parsed: ParsedSession) -> dict[str, Any]:
        return {
            "id": parsed.id,
            "assistant": parsed.assistant,
            "backing_model_id": parsed.backing_model_id,
            "project_id": parsed.project_id,
            "started_at": parsed.started_at,
            "last_activity_at": parsed.last_activity_at,
            "status": parsed.status,
            "source_file_path": parsed.source_file_path,
            "metadata": parsed.metadata or None,
        }

    def upsert(self, parsed: ParsedSession) -> bool:
        """
        Insert or update a session by id.

        Incremental parses only see the tail of a log, so the stored
        ``started_at`` is kept when earlier, ``last_activity_at`` never moves
        backwards, and metadata is merged rather than replaced.

        Returns:
            True if the session was newly created
        """
        existing = self.get(parsed.id)
        values = self._values(parsed)
        if existing is not None:
            values["started_at"] = min(existing.started_at, parsed.started_at)
            candidates = [
                ts for ts in (existing.last_activity_at, parsed.last_activity_at) if ts
            ]
            values["last_activity_at"] = max(candidates) if candidates else None
            values["status"] = SessionStatus.from_last_activity(values["last_activity_at"])
            values["backing_model_id"] = parsed.backing_model_id or existing.backing_model_id
            values["project_id"] = parsed.project_id or existing.project_id
            values["metadata"] = _merge_metadata(existing.extra_data, parsed.metadata)
            # Keep the identity map in sync with the row we are about to write
            self.session.expunge(existing)

        self._upsert(values, index_elements=["id"])
        return existing is None

    def insert_if_missing(self, parsed: ParsedSession) -> bool:
        """
        Insert a placeholder session unless one already exists.

        Used for sessions first seen through an agent file; the main log's
        upsert overrides it later.

        Returns:
            True if a row was inserted
        """
        return self._insert_or_ignore(self._values(parsed))

    def list(self, filters: Optional[SessionFilter] = None) -> List[AssistantSession]:
        """
        List sessions, most recently active first.

        Args:
            filters: Optional SessionFilter

        Returns:
            Matching sessions
        """
        filters = filters or SessionFilter()
        query = self.session.query(AssistantSession)
        if filters.assistant is not None:
            query = query.filter(AssistantSession.assistant == filters.assistant)
        if filters.status is not None:
            query = query.filter(AssistantSession.status == filters.status)
        if filters.project_id is not None:
            query = query.filter(AssistantSession.project_id == filters.project_id)
        if filters.since is not None:
            query = query.filter(AssistantSession.last_activity_at >= filters.since)
        query = query.order_by(
            AssistantSession.last_activity_at.desc(), AssistantSession.id
        )
        if filters.limit:
            query = query.limit(filters.limit)
        return query.all()

    def find_by_prefix(self, prefix: str, limit: int = 10) -> List[AssistantSession]:
        """Sessions whose id starts with ``prefix`` (for short ids on the CLI)."""
        return (
            self.session.query(AssistantSession)
            .filter(AssistantSession.id.startswith(prefix, autoescape=True))
            .order_by(AssistantSession.id)
            .limit(limit)
            .all()
        )

    def count_by_status(self) -> dict[SessionStatus, int]:
        rows = (
            self.session.query(AssistantSession.status, func.count(AssistantSession.id))
            .group_by(AssistantSession.status)
            .all()
        )
        counts = {status: 0 for status in SessionStatus}
        for status, count in rows:
            if status is not None:
                counts[status] = count
        return counts

    def refresh_statuses(self, now: Optional[datetime] = None) -> int:
        """
        Recompute the derived status of every session from its last activity.

        Returns:
            Number of sessions whose status changed
        """
        changed = 0
        for record in self.session.query(AssistantSession).all():
            status = SessionStatus.from_last_activity(record.last_activity_at, now)
            if record.status != status:
                record.status = status
                changed += 1
        self.session.flush()
        return changed
