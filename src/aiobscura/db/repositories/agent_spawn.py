"""
Agent spawn repository.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import AgentSpawn
from aiobscura.utils.timestamps import utc_now


class AgentSpawnRepository(BaseRepository[AgentSpawn]):
    """Index from agent id to the main-thread message that spawned it."""

    def __init__(self, session: Session):
        super().__init__(AgentSpawn, session)

    def upsert(self, agent_id: str, session_id: str, spawning_message_seq: int) -> None:
        self._upsert(
            {
                "agent_id": agent_id,
                "session_id": session_id,
                "spawning_message_seq": spawning_message_seq,
                "created_at": utc_now(),
            },
            index_elements=["agent_id"],
            update_columns=["session_id", "spawning_message_seq"],
        )

    def get(self, agent_id: str) -> Optional[AgentSpawn]:
        return (
            self.session.query(AgentSpawn).filter(AgentSpawn.agent_id == agent_id).first()
        )

    def list_for_session(self, session_id: str) -> List[AgentSpawn]:
        return (
            self.session.query(AgentSpawn)
            .filter(AgentSpawn.session_id == session_id)
            .order_by(AgentSpawn.spawning_message_seq)
            .all()
        )
