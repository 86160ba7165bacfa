"""
EngineEvent model - transactional outbox for audit and notification events.

Events are written in the same transaction as the change they describe,
so an event exists if and only if that change committed. Notification
and bookkeeping collaborators poll undispatched events and acknowledge them.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from tokenengine.database import Base, utcnow


class EngineEvent(Base):
    """An audit/notification event emitted by the engine."""

    __tablename__ = "engine_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)

    asset_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    # e.g. "asset.approve", "sale.primary", "distribution.completed"
    event_type: Mapped[str] = mapped_column(String, nullable=False)

    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    # Set once a collaborator has consumed the event
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"EngineEvent(id={self.id!r}, type={self.event_type!r}, asset={self.asset_id!r})"
