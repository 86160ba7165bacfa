"""
DistributionEvent and PayoutLine models - revenue payouts to holders.

A DistributionEvent is one revenue-collection-and-payout cycle. Its
PayoutLines are computed once, from a snapshot of the holdings ledger,
and are never recomputed: failed lines are retried individually.
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenengine.database import Base, utcnow


class DistributionStatus(enum.Enum):
    """Distribution event lifecycle status."""

    COMPUTED = "computed"  # Lines created, not yet handed to settlement
    DISBURSING = "disbursing"  # At least one line in flight
    COMPLETED = "completed"  # Every line settled or abandoned (immutable)
    FAILED = "failed"  # Nothing in flight, some lines failed and await an operator


class DistributionType(enum.Enum):
    RENTAL_INCOME = "rental_income"
    SALE_PROCEEDS = "sale_proceeds"
    OTHER = "other"


class PayoutStatus(enum.Enum):
    """Settlement status of a single payout line."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    SETTLED = "settled"
    FAILED = "failed"  # Retryable by an operator
    ABANDONED = "abandoned"  # Permanently failed


class DistributionEvent(Base):
    """One revenue distribution for an asset."""

    __tablename__ = "distribution_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)

    asset_id: Mapped[str] = mapped_column(
        String, ForeignKey("tokenized_assets.id"), nullable=False, index=True
    )

    revenue_total: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    distribution_type: Mapped[DistributionType] = mapped_column(
        Enum(DistributionType), nullable=False, default=DistributionType.RENTAL_INCOME
    )
    source_description: Mapped[str | None] = mapped_column(String, nullable=True)

    # Instant whose ledger state defines the payout proportions
    snapshot_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # revenue_total // total_supply, in currency units
    per_unit_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    total_supply_at_snapshot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    subscribed_units: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Share belonging to units nobody held at the snapshot (kept by the issuer)
    unallocated_amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )

    withholding_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 4), nullable=False, default=Decimal("0")
    )

    status: Mapped[DistributionStatus] = mapped_column(
        Enum(DistributionStatus), nullable=False, default=DistributionStatus.COMPUTED
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    asset: Mapped["TokenizedAsset"] = relationship(back_populates="distributions")
    lines: Mapped[list["PayoutLine"]] = relationship(
        back_populates="event", order_by="PayoutLine.holder_id"
    )

    def __repr__(self) -> str:
        return (
            f"DistributionEvent(id={self.id!r}, asset={self.asset_id!r}, "
            f"revenue={self.revenue_total}, status={self.status.value})"
        )


class PayoutLine(Base):
    """A single holder's share of a distribution."""

    __tablename__ = "payout_lines"

    id: Mapped[str] = mapped_column(String, primary_key=True)

    distribution_event_id: Mapped[str] = mapped_column(
        String, ForeignKey("distribution_events.id"), nullable=False, index=True
    )
    holder_id: Mapped[str] = mapped_column(String, nullable=False)

    units_at_snapshot: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Gross share; the lines of an event sum to its allocated revenue exactly
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    tax_withheld: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )
    net_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    settlement_status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING
    )

    # Idempotency key sent to the settlement collaborator; stable across retries
    settlement_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    event: Mapped["DistributionEvent"] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return (
            f"PayoutLine(id={self.id!r}, holder={self.holder_id!r}, "
            f"amount={self.amount}, status={self.settlement_status.value})"
        )


# Import at end to avoid circular imports
from tokenengine.models.asset import TokenizedAsset
