"""
Message repository.
"""

from typing import Any, List, Optional, Sequence

from sqlalchemy import delete, func, insert
from sqlalchemy.orm import Session

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import Message
from aiobscura.models.parsed import ParsedMessage


def main_thread_id(session_id: str) -> str:
    return f"{session_id}-main"


def _row(message: ParsedMessage) -> dict[str, Any]:
    return {
        "session_id": message.session_id,
        "thread_id": message.thread_id,
        "seq": message.seq,
        "emitted_at": message.emitted_at,
        "observed_at": message.observed_at,
        "author_role": message.author_role,
        "author_name": message.author_name,
        "message_type": message.message_type,
        "content": message.content,
        "tool_name": message.tool_name,
        "tool_input": message.tool_input,
        "tool_result": message.tool_result,
        "tokens_in": message.tokens_in,
        "tokens_out": message.tokens_out,
        "duration_ms": message.duration_ms,
        "source_file_path": message.source_file_path,
        "source_offset": message.source_offset,
        "source_line": message.source_line,
        "raw_data": message.raw_data if message.raw_data is not None else {},
        "metadata": message.metadata or None,
    }


class MessageRepository(BaseRepository[Message]):
    """Repository for Message model. Messages are immutable once inserted."""

    def __init__(self, session: Session):
        super().__init__(Message, session)

    def insert_many(self, messages: Sequence[ParsedMessage]) -> int:
        """
        Bulk insert messages in the caller's transaction.

        Args:
            messages: Messages with final (already shifted) seq numbers

        Returns:
            Number of rows inserted
        """
        if not messages:
            return 0
        self.session.execute(insert(Message.__table__), [_row(m) for m in messages])
        return len(messages)

    def get_last_seq(self, thread_id: str) -> int:
        """Highest seq stored for ``thread_id``, or 0 for an empty thread."""
        value = (
            self.session.query(func.max(Message.seq))
            .filter(Message.thread_id == thread_id)
            .scalar()
        )
        return int(value or 0)

    def get_by_thread_seq(self, thread_id: str, seq: int) -> Optional[Message]:
        return (
            self.session.query(Message)
            .filter(Message.thread_id == thread_id, Message.seq == seq)
            .first()
        )

    def list_for_session(self, session_id: str) -> List[Message]:
        """All messages of a session in emission order."""
        return (
            self.session.query(Message)
            .filter(Message.session_id == session_id)
            .order_by(Message.emitted_at, Message.thread_id, Message.seq)
            .all()
        )

    def list_for_thread(self, thread_id: str) -> List[Message]:
        return (
            self.session.query(Message)
            .filter(Message.thread_id == thread_id)
            .order_by(Message.seq)
            .all()
        )

    def list_after_seq(self, session_id: str, after_seq: int, limit: int) -> List[Message]:
        """
        Unpublished tail of a session's main thread.

        Args:
            session_id: Session id
            after_seq: Exclusive lower bound (the publish high-water mark)
            limit: Maximum number of messages

        Returns:
            Messages ordered by seq
        """
        return (
            self.session.query(Message)
            .filter(
                Message.session_id == session_id,
                Message.thread_id == main_thread_id(session_id),
                Message.seq > after_seq,
            )
            .order_by(Message.seq)
            .limit(limit)
            .all()
        )

    def count_for_session(self, session_id: str) -> int:
        return (
            self.session.query(func.count(Message.id))
            .filter(Message.session_id == session_id)
            .scalar()
            or 0
        )

    def max_main_seq(self, session_id: str) -> int:
        return self.get_last_seq(main_thread_id(session_id))

    def delete_for_source(self, source_file_path: str) -> int:
        """Purge messages read from one file (used when the file was truncated)."""
        result = self.session.execute(
            delete(Message).where(Message.source_file_path == source_file_path)
        )
        return result.rowcount or 0
