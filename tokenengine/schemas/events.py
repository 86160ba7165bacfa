"""Pydantic schemas for the event outbox."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class EventResponse(BaseModel):
    id: str
    asset_id: str | None
    event_type: str
    payload: dict[str, Any]
    created_at: datetime
    dispatched_at: datetime | None

    model_config = {"from_attributes": True}


class EventListResponse(BaseModel):
    events: list[EventResponse] = Field(default_factory=list)


class EventAck(BaseModel):
    """Acknowledge consumed events."""

    event_ids: list[str] = Field(..., min_length=1)


class EventAckResponse(BaseModel):
    acknowledged: int
