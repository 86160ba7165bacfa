"""Pydantic schemas for tokenized assets and lifecycle actions."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from tokenengine.models import AssetStatus, DistributionType


# ============================================================================
# Requests
# ============================================================================


class AssetCreate(BaseModel):
    """Request schema for creating a tokenized asset (starts in draft)."""

    property_id: str | None = Field(default=None, max_length=255)
    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    symbol: str = Field(..., min_length=1, max_length=16, description="Unit symbol")
    total_supply: int = Field(..., gt=0, description="Number of units to issue")
    unit_price: Decimal = Field(..., gt=0, decimal_places=2, description="Price per unit")
    minimum_investment: Decimal = Field(
        default=Decimal("0.00"), ge=0, decimal_places=2,
        description="Smallest primary purchase value",
    )
    expected_yield_pct: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    sale_start: datetime | None = None
    sale_end: datetime | None = None

    @model_validator(mode="after")
    def sale_window_ordered(self) -> "AssetCreate":
        """Validate that the sale window ends after it starts."""
        if self.sale_start and self.sale_end and self.sale_end <= self.sale_start:
            raise ValueError("sale_end must be after sale_start")
        return self


class VersionedAction(BaseModel):
    """Any lifecycle action: the caller must send the version it last read."""

    expected_version: int = Field(..., ge=1)


class AssetUpdate(VersionedAction):
    """Edit draft metadata. Omitted fields are left unchanged."""

    property_id: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, min_length=1, max_length=255)
    symbol: str | None = Field(default=None, min_length=1, max_length=16)
    total_supply: int | None = Field(default=None, gt=0)
    unit_price: Decimal | None = Field(default=None, gt=0, decimal_places=2)
    minimum_investment: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    expected_yield_pct: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    sale_start: datetime | None = None
    sale_end: datetime | None = None


class ReviewAction(VersionedAction):
    reviewer_id: str = Field(..., min_length=1, max_length=255)


class RejectAction(ReviewAction):
    reason: str = Field(..., min_length=1, max_length=1000)


class PauseAction(VersionedAction):
    reason: str | None = Field(default=None, max_length=1000)


class GoLiveAction(VersionedAction):
    """Confirm a closed sale; optionally distribute the initial period's revenue."""

    initial_revenue: Decimal | None = Field(default=None, gt=0, decimal_places=2)
    distribution_type: DistributionType = DistributionType.RENTAL_INCOME
    source_description: str | None = Field(default=None, max_length=1000)


# ============================================================================
# Responses
# ============================================================================


class AssetResponse(BaseModel):
    """Response schema for asset data."""

    id: str
    property_id: str | None
    name: str
    symbol: str
    total_supply: int
    unit_price: Decimal
    minimum_investment: Decimal
    expected_yield_pct: Decimal
    sale_start: datetime | None
    sale_end: datetime | None
    status: AssetStatus
    paused_from: AssetStatus | None
    units_sold: int
    remaining_supply: int
    issuance_attempt: int
    issuance_key: str | None
    status_reason: str | None
    is_frozen: bool
    frozen_reason: str | None
    archived_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AssetListResponse(BaseModel):
    assets: list[AssetResponse] = Field(default_factory=list)


class ReconcileResponse(BaseModel):
    asset_id: str
    consistent: bool
    violation: str | None = None


class FreezeAction(VersionedAction):
    reason: str = Field(..., min_length=1, max_length=1000)


class SweepResponse(BaseModel):
    """Counts from one scheduler sweep."""

    activated: int
    closed: int
    cancelled: int
    expired_listings: int
    skipped: int
