"""
Trade model - historical record of executed sales.

Trades are append-only (never modified or deleted) and record both
primary issuance sales and resale fills between holders.
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
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from tokenengine.database import Base, utcnow


class TradeKind(enum.Enum):
    PRIMARY = "primary"
    RESALE = "resale"


class Trade(Base):
    """A completed sale of units."""

    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String, primary_key=True)

    kind: Mapped[TradeKind] = mapped_column(Enum(TradeKind), nullable=False)

    asset_id: Mapped[str] = mapped_column(
        String, ForeignKey("tokenized_assets.id"), nullable=False, index=True
    )

    buyer_id: Mapped[str] = mapped_column(String, nullable=False)

    # NULL for primary sales (units come from the unsold supply)
    seller_id: Mapped[str | None] = mapped_column(String, nullable=True)
    listing_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("marketplace_listings.id"), nullable=True
    )

    units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    price_per_unit: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    executed_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    # Database constraints
    __table_args__ = (
        CheckConstraint("units > 0", name="check_trade_units_positive"),
        CheckConstraint("price_per_unit > 0", name="check_trade_price_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"Trade(id={self.id!r}, {self.kind.value} {self.units} x {self.asset_id} "
            f"@ {self.price_per_unit}, buyer={self.buyer_id!r}, seller={self.seller_id!r})"
        )
