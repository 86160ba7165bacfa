"""Pydantic schemas for revenue distributions and payouts."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from tokenengine.models import DistributionStatus, DistributionType, PayoutStatus


class DistributionCreate(BaseModel):
    """Request schema for distributing collected revenue."""

    revenue_total: Decimal = Field(..., gt=0, decimal_places=2)
    distribution_type: DistributionType = DistributionType.RENTAL_INCOME
    source_description: str | None = Field(default=None, max_length=1000)
    disburse: bool = Field(
        default=True, description="Submit the payouts to settlement right away"
    )


class AbandonAction(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class PayoutLineResponse(BaseModel):
    """One holder's share of a distribution."""

    id: str
    distribution_event_id: str
    holder_id: str
    units_at_snapshot: int
    amount: Decimal
    tax_withheld: Decimal
    net_amount: Decimal
    settlement_status: PayoutStatus
    settlement_key: str
    attempts: int
    failure_reason: str | None
    settled_at: datetime | None
    updated_at: datetime

    model_config = {"from_attributes": True}


class DistributionResponse(BaseModel):
    """Response schema for a distribution event (without lines)."""

    id: str
    asset_id: str
    revenue_total: Decimal
    distribution_type: DistributionType
    source_description: str | None
    snapshot_at: datetime
    per_unit_amount: Decimal
    total_supply_at_snapshot: int
    subscribed_units: int
    unallocated_amount: Decimal
    withholding_rate: Decimal
    status: DistributionStatus
    created_at: datetime
    updated_at: datetime
    version: int

    model_config = {"from_attributes": True}


class DistributionDetailResponse(DistributionResponse):
    lines: list[PayoutLineResponse] = Field(default_factory=list)


class DistributionListResponse(BaseModel):
    distributions: list[DistributionResponse] = Field(default_factory=list)


class PayoutListResponse(BaseModel):
    payouts: list[PayoutLineResponse] = Field(default_factory=list)
