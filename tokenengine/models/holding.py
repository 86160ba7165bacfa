"""
HoldingRecord model - the holdings ledger.

Represents how many units of each asset a holder owns, and their cost basis.
Uses a composite primary key (asset_id, holder_id). Rows are never deleted:
zero units is a valid terminal state that preserves history.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenengine.database import Base, utcnow


class HoldingRecord(Base):
    """Unit ownership record - links a holder to units of an asset."""

    __tablename__ = "holding_records"

    # Composite primary key: asset + holder
    asset_id: Mapped[str] = mapped_column(
        String, ForeignKey("tokenized_assets.id"), primary_key=True
    )
    holder_id: Mapped[str] = mapped_column(String, primary_key=True)

    units_owned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Units locked by this holder's active marketplace listings
    units_reserved: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Total cost basis of the units currently owned
    total_invested: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )

    acquired_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    asset: Mapped["TokenizedAsset"] = relationship(back_populates="holdings")

    # Database constraints
    __table_args__ = (
        CheckConstraint("units_owned >= 0", name="check_units_owned_non_negative"),
        CheckConstraint("units_reserved >= 0", name="check_units_reserved_non_negative"),
        CheckConstraint(
            "units_reserved <= units_owned", name="check_reserved_not_exceed_owned"
        ),
    )

    @property
    def units_sellable(self) -> int:
        """Units not already committed to an active listing."""
        return self.units_owned - self.units_reserved

    def __repr__(self) -> str:
        return (
            f"HoldingRecord(asset={self.asset_id!r}, holder={self.holder_id!r}, "
            f"units_owned={self.units_owned}, units_reserved={self.units_reserved})"
        )


# Import at end to avoid circular imports
from tokenengine.models.asset import TokenizedAsset
