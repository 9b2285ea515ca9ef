"""
Plan repository: latest plan state, append-only versions and session links.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import Plan, PlanVersion, SessionPlan
from aiobscura.models.parsed import ParsedPlan
from aiobscura.utils.timestamps import utc_now


class PlanRepository(BaseRepository[Plan]):
    """Repository for Plan, PlanVersion and SessionPlan models."""

    def __init__(self, session: Session):
        super().__init__(Plan, session)

    def upsert_plan(self, plan: ParsedPlan) -> None:
        self._upsert(
            {
                "slug": plan.slug,
                "path": plan.path,
                "title": plan.title,
                "created_at": plan.created_at,
                "modified_at": plan.modified_at,
                "status": plan.status,
                "content": plan.content,
                "content_hash": plan.content_hash,
                "metadata": None,
            },
            index_elements=["slug"],
            update_columns=[
                "path",
                "title",
                "modified_at",
                "status",
                "content",
                "content_hash",
            ],
        )

    def insert_version(
        self, plan: ParsedPlan, captured_at: Optional[datetime] = None
    ) -> bool:
        """
        Record a plan's content unless that exact content is already stored.

        Returns:
            True if a new version was created
        """
        stmt = (
            sqlite_insert(PlanVersion.__table__)
            .values(
                plan_slug=plan.slug,
                content_hash=plan.content_hash,
                title=plan.title,
                content=plan.content,
                captured_at=captured_at or utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["plan_slug", "content_hash"])
        )
        return bool(self.session.execute(stmt).rowcount)

    def link_session(
        self, session_id: str, plan_slug: str, first_used_at: datetime
    ) -> bool:
        stmt = (
            sqlite_insert(SessionPlan.__table__)
            .values(
                session_id=session_id,
                plan_slug=plan_slug,
                first_used_at=first_used_at,
            )
            .on_conflict_do_nothing()
        )
        return bool(self.session.execute(stmt).rowcount)

    def list_versions(self, plan_slug: str) -> List[PlanVersion]:
        return (
            self.session.query(PlanVersion)
            .filter(PlanVersion.plan_slug == plan_slug)
            .order_by(PlanVersion.captured_at, PlanVersion.id)
            .all()
        )

    def list_for_session(self, session_id: str) -> List[Plan]:
        return (
            self.session.query(Plan)
            .join(SessionPlan, SessionPlan.plan_slug == Plan.slug)
            .filter(SessionPlan.session_id == session_id)
            .order_by(SessionPlan.first_used_at)
            .all()
        )
