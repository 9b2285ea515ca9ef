"""
Project and backing model repositories.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import BackingModel, Project
from aiobscura.models.parsed import ParsedProject


class ProjectRepository(BaseRepository[Project]):
    """Repository for Project model."""

    def __init__(self, session: Session):
        super().__init__(Project, session)

    def upsert(self, project: ParsedProject) -> None:
        """
        Insert a project or refresh its activity timestamp.

        Projects are identified by path; ``created_at`` is kept from the
        first sighting and ``last_activity_at`` only moves forward.
        """
        table = Project.__table__
        stmt = sqlite_insert(table).values(
            id=project.id,
            path=project.path,
            name=project.name,
            created_at=project.created_at,
            last_activity_at=project.last_activity_at,
            metadata=project.metadata or None,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "name": func.coalesce(stmt.excluded["name"], table.c.name),
                "last_activity_at": func.coalesce(
                    func.max(table.c.last_activity_at, stmt.excluded["last_activity_at"]),
                    table.c.last_activity_at,
                    stmt.excluded["last_activity_at"],
                ),
            },
        )
        self.session.execute(stmt)

    def get_by_path(self, path: str) -> Optional[Project]:
        """
        Get project by its working directory path.

        Args:
            path: Absolute directory path

        Returns:
            Project instance or None
        """
        return self.session.query(Project).filter(Project.path == path).first()

    def list_all(self) -> List[Project]:
        return (
            self.session.query(Project)
            .order_by(Project.last_activity_at.desc(), Project.path)
            .all()
        )


class BackingModelRepository(BaseRepository[BackingModel]):
    """Repository for BackingModel model."""

    def __init__(self, session: Session):
        super().__init__(BackingModel, session)

    def upsert(self, model_id: str, seen_at: Optional[datetime] = None) -> BackingModel:
        """
        Record a backing model on first sighting.

        Existing rows are left untouched so ``first_seen_at`` stays stable.
        """
        model = BackingModel.from_id(model_id, first_seen_at=seen_at)
        self._upsert(
            {
                "id": model.id,
                "provider": model.provider,
                "model_id": model.model_id,
                "display_name": model.display_name,
                "first_seen_at": model.first_seen_at,
                "metadata": None,
            },
            index_elements=["id"],
            update_columns=[],
        )
        return model
