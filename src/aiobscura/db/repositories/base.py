"""
Base repository with common CRUD operations.
"""

from typing import Any, Generic, Iterable, List, Optional, Type, TypeVar

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from aiobscura.models.db import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Base repository providing common database operations."""

    def __init__(self, model: Type[ModelType], session: Session):
        """
        Initialize repository.

        Args:
            model: SQLAlchemy model class
            session: Database session
        """
        self.model = model
        self.session = session

    def get(self, id: Any) -> Optional[ModelType]:
        """
        Get a single record by primary key.

        Args:
            id: Primary key value

        Returns:
            Model instance or None if not found
        """
        return self.session.get(self.model, id)

    def get_all(self, limit: Optional[int] = None, offset: int = 0) -> List[ModelType]:
        query = self.session.query(self.model).offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def count(self) -> int:
        return self.session.query(self.model).count()

    def delete(self, id: Any) -> bool:
        """
        Delete a record by primary key.

        Returns:
            True if a row was deleted
        """
        instance = self.get(id)
        if instance is None:
            return False
        self.session.delete(instance)
        self.session.flush()
        return True

    def _upsert(
        self,
        values: dict[str, Any],
        index_elements: Iterable[str],
        update_columns: Optional[Iterable[str]] = None,
    ) -> None:
        """
        ``INSERT ... ON CONFLICT DO UPDATE`` against the model's table.

        ``values`` is keyed by column name (``metadata``, not ``extra_data``).
        With no ``update_columns``, every non-key column is overwritten.
        """
        table = self.model.__table__
        index_elements = list(index_elements)
        stmt = sqlite_insert(table).values(**values)
        if update_columns is None:
            update_columns = [k for k in values if k not in index_elements]
        set_ = {name: stmt.excluded[name] for name in update_columns}
        if set_:
            stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
        self.session.execute(stmt)

    def _insert_or_ignore(self, values: dict[str, Any]) -> bool:
        """Insert a row unless it violates a uniqueness constraint; True if inserted."""
        stmt = sqlite_insert(self.model.__table__).values(**values).on_conflict_do_nothing()
        result = self.session.execute(stmt)
        return bool(result.rowcount)
