"""Event outbox endpoints for notification and bookkeeping consumers."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tokenengine.database import get_session
from tokenengine.schemas.events import (
    EventAck,
    EventAckResponse,
    EventListResponse,
    EventResponse,
)
from tokenengine.services import events as events_service

router = APIRouter()


@router.get(
    "/events",
    response_model=EventListResponse,
    summary="Read engine events",
)
async def list_events(
    asset_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    undispatched: bool = Query(default=False, description="Only unacknowledged events"),
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> EventListResponse:
    events = await events_service.list_events(
        session, asset_id, event_type, undispatched, limit
    )
    return EventListResponse(events=[EventResponse.model_validate(e) for e in events])


@router.post(
    "/events/ack",
    response_model=EventAckResponse,
    summary="Acknowledge consumed events",
)
async def acknowledge_events(
    data: EventAck,
    session: AsyncSession = Depends(get_session),
) -> EventAckResponse:
    count = await events_service.mark_dispatched(session, data.event_ids)
    return EventAckResponse(acknowledged=count)
