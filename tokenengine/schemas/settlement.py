"""Pydantic schemas for settlement callbacks."""

from pydantic import BaseModel, Field


class SettlementCallback(BaseModel):
    """Outcome of a settlement intent, correlated by its idempotency key."""

    idempotency_key: str = Field(..., min_length=1, max_length=255)
    succeeded: bool
    reason: str | None = Field(default=None, max_length=1000)
