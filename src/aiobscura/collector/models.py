"""Response models for the collector API."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Response(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RegisterResponse(_Response):
    """Response from ``POST /collectors/register``."""

    collector_id: str
    api_key: str = Field(..., description="API key (only shown once)")
    api_key_prefix: str = Field("", description="API key prefix for identification")


class EventsResponse(_Response):
    """Response from ``POST /sessions/{id}/events``."""

    accepted: int = 0
    rejected: int = 0


class SessionCompleteResponse(_Response):
    completed: bool = True


class SessionStatusResponse(_Response):
    """Response from ``GET /sessions/{id}``."""

    session_id: str
    status: str = "active"
    event_count: int = 0
    last_event_at: Optional[str] = None
