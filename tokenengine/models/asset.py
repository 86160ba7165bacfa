"""
TokenizedAsset model - a property represented as a fixed supply of units.

The asset row is also the per-asset lock: every ledger mutation starts
with a conditional UPDATE on it, which linearizes purchases, trades and
distribution snapshots for that asset.
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenengine.database import Base, utcnow


class AssetStatus(enum.Enum):
    """Tokenization lifecycle status."""

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    ISSUING = "issuing"  # Mint intent sent, waiting for the settlement callback
    ISSUED = "issued"  # Minted, waiting for sale_start
    ISSUANCE_FAILED = "issuance_failed"
    SALE_ACTIVE = "sale_active"
    SALE_ENDED = "sale_ended"
    DISTRIBUTING = "distributing"  # Transient, never committed
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"  # Sale window closed with no subscriptions


class TokenizedAsset(Base):
    """A tokenized property."""

    __tablename__ = "tokenized_assets"

    id: Mapped[str] = mapped_column(String, primary_key=True)

    # External property reference (trusted, supplied by the property service)
    property_id: Mapped[str | None] = mapped_column(String, nullable=True)

    name: Mapped[str] = mapped_column(String, nullable=False)
    symbol: Mapped[str] = mapped_column(String(16), nullable=False)

    # Fixed unit count; immutable once issuance has been requested
    total_supply: Mapped[int] = mapped_column(BigInteger, nullable=False)

    unit_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    # Smallest primary purchase value accepted
    minimum_investment: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )

    expected_yield_pct: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), nullable=False, default=Decimal("0.00")
    )

    # Sale window (naive UTC)
    sale_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sale_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    status: Mapped[AssetStatus] = mapped_column(
        Enum(AssetStatus), nullable=False, default=AssetStatus.DRAFT
    )

    # Status to return to on resume
    paused_from: Mapped[AssetStatus | None] = mapped_column(
        Enum(AssetStatus), nullable=True
    )

    # Running count of units sold in the primary sale.
    # Always equals the sum of HoldingRecord.units_owned for this asset.
    units_sold: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Mint intent correlation: issuance_key = f"{id}:{issuance_attempt}"
    issuance_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    issuance_key: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)

    # Last rejection / failure / cancellation reason
    status_reason: Mapped[str | None] = mapped_column(String, nullable=True)

    # Set when an invariant violation is detected
    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    frozen_reason: Mapped[str | None] = mapped_column(String, nullable=True)

    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Optimistic concurrency counter, bumped by every mutation
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    # Relationships
    holdings: Mapped[list["HoldingRecord"]] = relationship(back_populates="asset")
    listings: Mapped[list["MarketplaceListing"]] = relationship(back_populates="asset")
    distributions: Mapped[list["DistributionEvent"]] = relationship(
        back_populates="asset"
    )

    # Database constraints
    __table_args__ = (
        CheckConstraint("total_supply > 0", name="check_total_supply_positive"),
        CheckConstraint("unit_price > 0", name="check_unit_price_positive"),
        CheckConstraint("minimum_investment >= 0", name="check_min_investment"),
        CheckConstraint("units_sold >= 0", name="check_units_sold_non_negative"),
        CheckConstraint(
            "units_sold <= total_supply", name="check_units_sold_not_exceed_supply"
        ),
    )

    @property
    def remaining_supply(self) -> int:
        return self.total_supply - self.units_sold

    def __repr__(self) -> str:
        return (
            f"TokenizedAsset(id={self.id!r}, symbol={self.symbol!r}, "
            f"status={self.status.value}, version={self.version})"
        )


# Import at end to avoid circular imports
from tokenengine.models.distribution import DistributionEvent
from tokenengine.models.holding import HoldingRecord
from tokenengine.models.listing import MarketplaceListing
