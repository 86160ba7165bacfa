"""Outbox of audit and notification events."""

import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenengine.database import utcnow
from tokenengine.models import EngineEvent


def emit(
    session: AsyncSession,
    event_type: str,
    asset_id: str | None = None,
    **payload: Any,
) -> EngineEvent:
    """Add an event to the current transaction.

    Nothing is committed here: the event becomes visible together with
    the change it describes, or not at all.
    """
    event = EngineEvent(
        id=str(uuid.uuid4()),
        asset_id=asset_id,
        event_type=event_type,
        payload=_jsonable(payload),
        created_at=utcnow(),
    )
    session.add(event)
    return event


def _jsonable(payload: dict[str, Any]) -> dict[str, Any]:
    # Decimals and datetimes are stored as strings
    out = {}
    for key, value in payload.items():
        if value is None or isinstance(value, (bool, int, float, str)):
            out[key] = value
        else:
            out[key] = str(value)
    return out


async def list_events(
    session: AsyncSession,
    asset_id: str | None = None,
    event_type: str | None = None,
    undispatched: bool = False,
    limit: int = 100,
) -> list[EngineEvent]:
    """List events, oldest first.

    Args:
        session: Database session
        asset_id: Filter by asset (optional)
        event_type: Filter by exact event type (optional)
        undispatched: Only events no collaborator has acknowledged yet
        limit: Maximum number of events

    Returns:
        List of events
    """
    query = select(EngineEvent)
    if asset_id:
        query = query.where(EngineEvent.asset_id == asset_id)
    if event_type:
        query = query.where(EngineEvent.event_type == event_type)
    if undispatched:
        query = query.where(EngineEvent.dispatched_at.is_(None))

    query = query.order_by(EngineEvent.created_at, EngineEvent.id).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def mark_dispatched(session: AsyncSession, event_ids: list[str]) -> int:
    """Acknowledge events. Already-acknowledged events are left untouched.

    Returns:
        Number of events newly marked as dispatched
    """
    if not event_ids:
        return 0

    result = await session.execute(
        update(EngineEvent)
        .where(EngineEvent.id.in_(event_ids), EngineEvent.dispatched_at.is_(None))
        .values(dispatched_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount
