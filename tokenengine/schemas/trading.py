"""Pydantic schemas for primary purchases, holdings and the marketplace."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from tokenengine.models import ListingStatus, TradeKind


# ============================================================================
# Primary sale
# ============================================================================


class PrimaryPurchaseCreate(BaseModel):
    """Request schema for buying units during the sale window."""

    buyer_id: str = Field(..., min_length=1, max_length=255)
    units: int = Field(..., gt=0, description="Number of units")
    price_per_unit: Decimal = Field(
        ..., gt=0, decimal_places=2, description="Must match the asset's unit price"
    )


# ============================================================================
# Holdings
# ============================================================================


class HoldingResponse(BaseModel):
    """A holder's position in one asset."""

    asset_id: str
    holder_id: str
    units_owned: int
    units_reserved: int
    units_sellable: int
    total_invested: Decimal
    acquired_at: datetime
    updated_at: datetime
    version: int

    model_config = {"from_attributes": True}


class HoldingListResponse(BaseModel):
    holdings: list[HoldingResponse] = Field(default_factory=list)


# ============================================================================
# Listings
# ============================================================================


class ListingCreate(BaseModel):
    """Request schema for offering owned units for resale."""

    seller_id: str = Field(..., min_length=1, max_length=255)
    units: int = Field(..., gt=0)
    price_per_unit: Decimal = Field(..., gt=0, decimal_places=2)
    expires_at: datetime | None = Field(
        default=None, description="Defaults to the configured listing lifetime"
    )


class ListingPurchase(BaseModel):
    buyer_id: str = Field(..., min_length=1, max_length=255)
    units: int = Field(..., gt=0)


class ListingCancel(BaseModel):
    seller_id: str = Field(..., min_length=1, max_length=255)


class ListingResponse(BaseModel):
    """Response schema for listing data."""

    id: str
    asset_id: str
    seller_id: str
    units_initial: int
    units_listed: int
    price_per_unit: Decimal
    status: ListingStatus
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    version: int

    model_config = {"from_attributes": True}


class ListingListResponse(BaseModel):
    listings: list[ListingResponse] = Field(default_factory=list)


# ============================================================================
# Trades
# ============================================================================


class TradeResponse(BaseModel):
    """An executed sale (primary or resale)."""

    id: str
    kind: TradeKind
    asset_id: str
    buyer_id: str
    seller_id: str | None
    listing_id: str | None
    units: int
    price_per_unit: Decimal
    total_price: Decimal
    executed_at: datetime

    model_config = {"from_attributes": True}


class TradeListResponse(BaseModel):
    trades: list[TradeResponse] = Field(default_factory=list)
