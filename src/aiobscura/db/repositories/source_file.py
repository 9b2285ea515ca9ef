"""
Source file repository.
"""

from typing import Optional

from sqlalchemy.orm import Session

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import Assistant, FileType, SourceFile
from aiobscura.models.parsed import Checkpoint
from aiobscura.utils.timestamps import utc_now


class SourceFileRepository(BaseRepository[SourceFile]):
    """Repository for SourceFile model."""

    def __init__(self, session: Session):
        super().__init__(SourceFile, session)

    def upsert(
        self,
        path: str,
        file_type: FileType,
        assistant: Assistant,
        checkpoint: Checkpoint,
        size_bytes: Optional[int] = None,
        created_at=None,
        modified_at=None,
    ) -> None:
        """
        Insert or update a source file together with its new checkpoint.

        Args:
            path: Absolute path of the log artifact
            file_type: Format of the file
            assistant: Assistant that wrote it
            checkpoint: Checkpoint reached by the latest parse
            size_bytes: Observed file size
            created_at: File creation time, if known
            modified_at: File modification time
        """
        values = {
            "path": path,
            "file_type": file_type,
            "assistant": assistant,
            "created_at": created_at,
            "modified_at": modified_at,
            "size_bytes": size_bytes,
            "last_parsed_at": utc_now(),
            "checkpoint_type": checkpoint.type,
            "checkpoint_data": checkpoint.to_payload(),
        }
        self._upsert(
            values,
            index_elements=["path"],
            update_columns=[
                "modified_at",
                "size_bytes",
                "last_parsed_at",
                "checkpoint_type",
                "checkpoint_data",
            ],
        )

    def get_checkpoint(self, path: str) -> Checkpoint:
        """Return the stored checkpoint for ``path`` (``none`` if never parsed)."""
        source = self.get(path)
        if source is None or source.checkpoint_type is None:
            return Checkpoint.none()
        return Checkpoint.from_payload(source.checkpoint_type.value, source.checkpoint_data)
