"""
MarketplaceListing model - resale offers between holders.

While a listing is ACTIVE its remaining units are reserved on the
seller's HoldingRecord, so they cannot be sold twice.
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenengine.database import Base, utcnow


class ListingStatus(enum.Enum):
    """Listing lifecycle status."""

    ACTIVE = "active"  # Units remaining, reservation held
    FILLED = "filled"  # All units sold
    CANCELLED = "cancelled"  # Withdrawn by the seller
    EXPIRED = "expired"  # Passed expires_at before being filled


class MarketplaceListing(Base):
    """A holder's offer to sell units of an asset."""

    __tablename__ = "marketplace_listings"

    id: Mapped[str] = mapped_column(String, primary_key=True)

    asset_id: Mapped[str] = mapped_column(
        String, ForeignKey("tokenized_assets.id"), nullable=False, index=True
    )
    seller_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    # Original listing size
    units_initial: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Units still available (decreases with each fill)
    units_listed: Mapped[int] = mapped_column(BigInteger, nullable=False)

    price_per_unit: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    status: Mapped[ListingStatus] = mapped_column(
        Enum(ListingStatus), nullable=False, default=ListingStatus.ACTIVE
    )

    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    asset: Mapped["TokenizedAsset"] = relationship(back_populates="listings")

    # Database constraints
    __table_args__ = (
        CheckConstraint("units_initial > 0", name="check_listing_units_positive"),
        CheckConstraint("units_listed >= 0", name="check_units_listed_non_negative"),
        CheckConstraint(
            "units_listed <= units_initial", name="check_listed_not_exceed_initial"
        ),
        CheckConstraint("price_per_unit > 0", name="check_listing_price_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"MarketplaceListing(id={self.id!r}, {self.units_listed}/{self.units_initial} "
            f"@ {self.price_per_unit}, status={self.status.value})"
        )


# Import at end to avoid circular imports
from tokenengine.models.asset import TokenizedAsset
