"""Revenue distribution engine.

A distribution splits revenue across holders in proportion to the units
they held at the snapshot, using largest-remainder apportionment in
integer cents so that nothing is created or lost to rounding:

    sum(line amounts) + unallocated == revenue

`unallocated` is the share of units nobody held at the snapshot.

Lines are computed once. Settlement is at-least-once and keyed by the line
id, so a failed line is retried on its own and proportions never change.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tokenengine import telemetry
from tokenengine.config import get_settings
from tokenengine.database import to_naive_utc, transaction, utcnow
from tokenengine.errors import (
    ConcurrentModificationError,
    DistributionInProgressError,
    IllegalTransitionError,
    NotFoundError,
    SettlementSubmissionError,
    ValidationError,
)
from tokenengine.models import (
    AssetStatus,
    DistributionEvent,
    DistributionStatus,
    DistributionType,
    PayoutLine,
    PayoutStatus,
)
from tokenengine.services import events, ledger
from tokenengine.settlement import SettlementGateway

logger = logging.getLogger(__name__)

CENT = ledger.CENT

# Statuses in which an asset can distribute revenue
DISTRIBUTABLE_STATUSES = (
    AssetStatus.ACTIVE,
    AssetStatus.PAUSED,
    AssetStatus.DISTRIBUTING,
)

OPEN_DISTRIBUTION_STATUSES = (DistributionStatus.COMPUTED, DistributionStatus.DISBURSING)
IN_FLIGHT_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.SUBMITTED)


# ============================================================================
# Allocation
# ============================================================================


@dataclass
class Allocation:
    """Result of apportioning revenue (all amounts in cents)."""

    shares: dict[str, int] = field(default_factory=dict)
    unallocated: int = 0
    per_unit: int = 0


def allocate(
    revenue_cents: int, total_supply: int, holdings: list[tuple[str, int]]
) -> Allocation:
    """Split revenue over the full supply with the largest remainder method.

    Each holder's exact share is revenue * units / total_supply. Everyone
    gets the floor of their share, units held by nobody get the floor of
    theirs as `unallocated`, and the remaining cents go one at a time to the
    holders with the largest fractional remainders (ties by holder id).

    Args:
        revenue_cents: Revenue to distribute, in cents
        total_supply: Total units of the asset
        holdings: (holder_id, units) pairs, units > 0

    Returns:
        Allocation whose shares plus unallocated equal revenue_cents
    """
    if total_supply <= 0:
        raise ValueError("total_supply must be positive")
    held = sum(units for _, units in holdings)
    if held > total_supply:
        raise ValueError(f"{held} units held exceed total supply {total_supply}")

    shares: dict[str, int] = {}
    remainders: list[tuple[int, str]] = []
    for holder_id, units in holdings:
        share, remainder = divmod(revenue_cents * units, total_supply)
        shares[holder_id] = share
        remainders.append((remainder, holder_id))

    unallocated = revenue_cents * (total_supply - held) // total_supply
    leftover = revenue_cents - sum(shares.values()) - unallocated

    remainders.sort(key=lambda item: (-item[0], item[1]))
    for _, holder_id in remainders[:leftover]:
        shares[holder_id] += 1

    return Allocation(
        shares=shares,
        unallocated=unallocated,
        per_unit=revenue_cents // total_supply,
    )


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def validate_revenue(revenue_total: Decimal) -> None:
    """Reject non-positive revenue or amounts finer than a cent."""
    if revenue_total is None or revenue_total <= 0:
        raise ValidationError(
            "Revenue must be positive", detail={"revenue_total": str(revenue_total)}
        )
    if revenue_total != revenue_total.quantize(CENT):
        raise ValidationError(
            "Revenue cannot have more than two decimal places",
            detail={"revenue_total": str(revenue_total)},
        )


def withholding(amount: Decimal, rate: Decimal) -> tuple[Decimal, Decimal]:
    """Split a gross amount into (tax withheld, net)."""
    tax = (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return tax, amount - tax


# ============================================================================
# Queries
# ============================================================================


async def get_distribution(session: AsyncSession, event_id: str) -> DistributionEvent:
    """Load a distribution event with its payout lines.

    Raises:
        NotFoundError: If the event does not exist
    """
    result = await session.execute(
        select(DistributionEvent)
        .where(DistributionEvent.id == event_id)
        .options(selectinload(DistributionEvent.lines))
        .execution_options(populate_existing=True)
    )
    dist_event = result.scalar_one_or_none()
    if dist_event is None:
        raise NotFoundError(f"Distribution '{event_id}' not found")
    return dist_event


async def list_distributions(
    session: AsyncSession,
    asset_id: str,
    status: DistributionStatus | None = None,
) -> list[DistributionEvent]:
    """List an asset's distributions, newest first."""
    query = select(DistributionEvent).where(DistributionEvent.asset_id == asset_id)
    if status:
        query = query.where(DistributionEvent.status == status)
    query = query.order_by(DistributionEvent.created_at.desc(), DistributionEvent.id)
    result = await session.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def get_payout_line(session: AsyncSession, line_id: str) -> PayoutLine:
    result = await session.execute(
        select(PayoutLine)
        .where(PayoutLine.id == line_id)
        .execution_options(populate_existing=True)
    )
    line = result.scalar_one_or_none()
    if line is None:
        raise NotFoundError(f"Payout line '{line_id}' not found")
    return line


async def _event_asset_id(session: AsyncSession, event_id: str) -> str:
    result = await session.execute(
        select(DistributionEvent.asset_id).where(DistributionEvent.id == event_id)
    )
    return result.scalar_one()


async def list_holder_payouts(
    session: AsyncSession,
    holder_id: str,
    status: PayoutStatus | None = None,
) -> list[PayoutLine]:
    """List payout lines of one holder across all distributions.

    Args:
        session: Database session
        holder_id: Holder ID
        status: Filter by settlement status (optional)

    Returns:
        List of payout lines, most recently updated first
    """
    query = select(PayoutLine).where(PayoutLine.holder_id == holder_id)
    if status:
        query = query.where(PayoutLine.settlement_status == status)
    query = query.order_by(PayoutLine.updated_at.desc(), PayoutLine.id)
    result = await session.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


# ============================================================================
# Computing a distribution
# ============================================================================


async def compute_distribution(
    session: AsyncSession,
    asset_id: str,
    revenue_total: Decimal,
    distribution_type: DistributionType = DistributionType.RENTAL_INCOME,
    source_description: str | None = None,
    withholding_rate: Decimal | None = None,
) -> DistributionEvent:
    """Snapshot the ledger and create a distribution, inside the caller's transaction.

    The asset lock taken first keeps trades out until the caller commits,
    so the snapshot is consistent.

    Raises:
        DistributionInProgressError: If another distribution is still open
    """
    if withholding_rate is None:
        withholding_rate = get_settings().distribution_withholding_rate

    asset = await ledger.lock_asset(
        session, asset_id, DISTRIBUTABLE_STATUSES, "distribute revenue"
    )
    # Only a live asset that was paused keeps distributing
    if asset.status == AssetStatus.PAUSED and asset.paused_from != AssetStatus.ACTIVE:
        paused_from = asset.paused_from.value if asset.paused_from else None
        raise IllegalTransitionError(
            f"Cannot distribute revenue while asset is paused from {paused_from}",
            detail={"status": asset.status.value, "paused_from": paused_from},
        )

    result = await session.execute(
        select(DistributionEvent.id).where(
            DistributionEvent.asset_id == asset_id,
            DistributionEvent.status.in_(OPEN_DISTRIBUTION_STATUSES),
        )
    )
    open_event = result.scalars().first()
    if open_event is not None:
        raise DistributionInProgressError(
            f"Distribution '{open_event}' for asset '{asset_id}' is still in progress",
            detail={"distribution_id": open_event},
        )

    snapshot_at = utcnow()
    holdings = await ledger.get_asset_holdings(session, asset_id)
    allocation = allocate(
        to_cents(revenue_total),
        asset.total_supply,
        [(h.holder_id, h.units_owned) for h in holdings],
    )

    dist_event = DistributionEvent(
        id=str(uuid.uuid4()),
        asset_id=asset_id,
        revenue_total=revenue_total,
        distribution_type=distribution_type,
        source_description=source_description,
        snapshot_at=snapshot_at,
        per_unit_amount=from_cents(allocation.per_unit),
        total_supply_at_snapshot=asset.total_supply,
        subscribed_units=sum(h.units_owned for h in holdings),
        unallocated_amount=from_cents(allocation.unallocated),
        withholding_rate=withholding_rate,
        status=DistributionStatus.COMPUTED,
        created_at=snapshot_at,
        updated_at=snapshot_at,
        version=1,
    )
    session.add(dist_event)

    payable = 0
    for holding in holdings:
        amount = from_cents(allocation.shares[holding.holder_id])
        tax, net = withholding(amount, withholding_rate)
        line_id = str(uuid.uuid4())
        # Nothing to pay: settled without a settlement request
        nothing_due = net == 0
        session.add(
            PayoutLine(
                id=line_id,
                distribution_event_id=dist_event.id,
                holder_id=holding.holder_id,
                units_at_snapshot=holding.units_owned,
                amount=amount,
                tax_withheld=tax,
                net_amount=net,
                settlement_status=(
                    PayoutStatus.SETTLED if nothing_due else PayoutStatus.PENDING
                ),
                settlement_key=line_id,
                attempts=0,
                settled_at=snapshot_at if nothing_due else None,
                updated_at=snapshot_at,
                version=1,
            )
        )
        if not nothing_due:
            payable += 1

    if payable == 0:
        dist_event.status = DistributionStatus.COMPLETED
    await session.flush()

    allocated = revenue_total - dist_event.unallocated_amount
    events.emit(
        session,
        "distribution.created",
        asset_id,
        distribution_id=dist_event.id,
        revenue_total=revenue_total,
        allocated=allocated,
        unallocated=dist_event.unallocated_amount,
        holders=len(holdings),
    )
    logger.info(
        "Distribution computed",
        extra={
            "asset_id": asset_id,
            "distribution_id": dist_event.id,
            "revenue_total": str(revenue_total),
            "holders": len(holdings),
            "unallocated": str(dist_event.unallocated_amount),
        },
    )
    telemetry.record_distribution(asset.symbol, allocated)
    return dist_event


async def create_distribution_event(
    session: AsyncSession,
    asset_id: str,
    revenue_total: Decimal,
    distribution_type: DistributionType = DistributionType.RENTAL_INCOME,
    source_description: str | None = None,
) -> DistributionEvent:
    """Compute a distribution for revenue collected on an asset.

    Args:
        session: Database session
        asset_id: Asset ID
        revenue_total: Revenue to distribute (positive, whole cents)
        distribution_type: Kind of revenue
        source_description: Free-text origin of the revenue

    Returns:
        The event with its lines; completed at once when nobody holds units

    Raises:
        ValidationError, NotFoundError, IllegalTransitionError, AssetFrozenError,
        DistributionInProgressError
    """
    validate_revenue(revenue_total)
    async with transaction(session):
        dist_event = await compute_distribution(
            session,
            asset_id,
            revenue_total,
            distribution_type=distribution_type,
            source_description=source_description,
        )
    return await get_distribution(session, dist_event.id)


# ============================================================================
# Disbursement
# ============================================================================


async def _send_payout(gateway: SettlementGateway, line: PayoutLine) -> bool:
    """Hand one line to settlement. A transport error leaves it submitted."""
    try:
        await gateway.request_payout(
            line.id, line.holder_id, line.net_amount, line.settlement_key
        )
    except SettlementSubmissionError as e:
        logger.error(
            "Payout submission failed, line left submitted for resend",
            extra={"payout_line_id": line.id, "error": e.message},
        )
        return False
    return True


async def disburse_distribution(
    session: AsyncSession, event_id: str, gateway: SettlementGateway
) -> DistributionEvent:
    """Submit every pending line of a computed distribution for payment.

    Lines are marked submitted and committed first; requests are sent after,
    outside any transaction.
    """
    async with transaction(session):
        dist_event = await get_distribution(session, event_id)
        if dist_event.status != DistributionStatus.COMPUTED:
            raise IllegalTransitionError(
                f"Cannot disburse a distribution that is {dist_event.status.value}",
                detail={"status": dist_event.status.value},
            )
        result = await session.execute(
            update(DistributionEvent)
            .where(
                DistributionEvent.id == event_id,
                DistributionEvent.status == DistributionStatus.COMPUTED,
                DistributionEvent.version == dist_event.version,
            )
            .values(
                status=DistributionStatus.DISBURSING,
                version=DistributionEvent.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Distribution '{event_id}' is already being disbursed"
            )
        await session.execute(
            update(PayoutLine)
            .where(
                PayoutLine.distribution_event_id == event_id,
                PayoutLine.settlement_status == PayoutStatus.PENDING,
            )
            .values(
                settlement_status=PayoutStatus.SUBMITTED,
                attempts=PayoutLine.attempts + 1,
                version=PayoutLine.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        events.emit(
            session, "distribution.disbursing", dist_event.asset_id, distribution_id=event_id
        )

    dist_event = await get_distribution(session, event_id)
    submitted = [
        line for line in dist_event.lines
        if line.settlement_status == PayoutStatus.SUBMITTED
    ]
    sent = 0
    for line in submitted:
        if await _send_payout(gateway, line):
            sent += 1

    logger.info(
        "Distribution disbursing",
        extra={"distribution_id": event_id, "lines": len(submitted), "sent": sent},
    )
    return dist_event


async def _recompute_status(session: AsyncSession, event_id: str) -> DistributionStatus:
    """Derive the event status from its lines and store it."""
    result = await session.execute(
        select(PayoutLine.settlement_status, func.count())
        .where(PayoutLine.distribution_event_id == event_id)
        .group_by(PayoutLine.settlement_status)
    )
    counts = {status: count for status, count in result.all()}

    in_flight = sum(counts.get(s, 0) for s in IN_FLIGHT_PAYOUT_STATUSES)
    failed = counts.get(PayoutStatus.FAILED, 0)
    if in_flight == 0 and failed == 0:
        new_status = DistributionStatus.COMPLETED
    elif in_flight == 0:
        new_status = DistributionStatus.FAILED
    else:
        new_status = DistributionStatus.DISBURSING

    result = await session.execute(
        update(DistributionEvent)
        .where(
            DistributionEvent.id == event_id,
            DistributionEvent.status != new_status,
            DistributionEvent.status != DistributionStatus.COMPLETED,
        )
        .values(status=new_status, version=DistributionEvent.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount and new_status != DistributionStatus.DISBURSING:
        dist_event = await get_distribution(session, event_id)
        events.emit(
            session,
            f"distribution.{new_status.value}",
            dist_event.asset_id,
            distribution_id=event_id,
            settled=counts.get(PayoutStatus.SETTLED, 0),
            failed=failed,
            abandoned=counts.get(PayoutStatus.ABANDONED, 0),
        )
        logger.info(
            "Distribution status changed",
            extra={"distribution_id": event_id, "status": new_status.value},
        )
    return new_status


async def _set_line_status(
    session: AsyncSession,
    line_id: str,
    from_statuses: tuple[PayoutStatus, ...],
    values: dict,
) -> bool:
    result = await session.execute(
        update(PayoutLine)
        .where(
            PayoutLine.id == line_id,
            PayoutLine.settlement_status.in_(from_statuses),
        )
        .values(version=PayoutLine.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_payout_result(
    session: AsyncSession,
    settlement_key: str,
    succeeded: bool,
    reason: str | None = None,
    now: datetime | None = None,
) -> PayoutLine:
    """Apply a settlement callback for one payout line.

    Callbacks are at-least-once: duplicates change nothing. A success that
    arrives after the line was marked failed is honored.

    Raises:
        NotFoundError: If no line has this key
    """
    now = to_naive_utc(now) or utcnow()

    result = await session.execute(
        select(PayoutLine).where(PayoutLine.settlement_key == settlement_key)
    )
    line = result.scalar_one_or_none()
    if line is None:
        raise NotFoundError(f"Unknown payout key '{settlement_key}'")
    line_id = line.id
    event_id = line.distribution_event_id

    async with transaction(session):
        if succeeded:
            changed = await _set_line_status(
                session,
                line_id,
                (PayoutStatus.SUBMITTED, PayoutStatus.FAILED),
                {
                    "settlement_status": PayoutStatus.SETTLED,
                    "settled_at": now,
                    "failure_reason": None,
                },
            )
        else:
            changed = await _set_line_status(
                session,
                line_id,
                (PayoutStatus.SUBMITTED,),
                {
                    "settlement_status": PayoutStatus.FAILED,
                    "failure_reason": reason or "Payout failed",
                },
            )

        line = await get_payout_line(session, line_id)
        if changed:
            outcome = line.settlement_status.value
            events.emit(
                session,
                f"payout.{outcome}",
                await _event_asset_id(session, event_id),
                distribution_id=event_id,
                payout_line_id=line_id,
                holder_id=line.holder_id,
                net_amount=line.net_amount,
                reason=line.failure_reason,
            )
            await _recompute_status(session, event_id)
            telemetry.record_payout_outcome(outcome)
            logger.info(
                "Payout result recorded",
                extra={"payout_line_id": line_id, "status": outcome},
            )
        elif not succeeded and line.settlement_status == PayoutStatus.SETTLED:
            logger.warning(
                "Ignoring failure callback for a settled payout",
                extra={"payout_line_id": line_id, "reason": reason},
            )
        else:
            logger.info(
                "Ignoring duplicate payout callback",
                extra={
                    "payout_line_id": line_id,
                    "status": line.settlement_status.value,
                    "succeeded": succeeded,
                },
            )
    return line


async def retry_payout_line(
    session: AsyncSession, line_id: str, gateway: SettlementGateway
) -> PayoutLine:
    """Resend a failed or stuck payout under its original idempotency key.

    Raises:
        IllegalTransitionError: If the line is settled, abandoned or not yet submitted
    """
    async with transaction(session):
        line = await get_payout_line(session, line_id)
        changed = await _set_line_status(
            session,
            line_id,
            (PayoutStatus.FAILED, PayoutStatus.SUBMITTED),
            {
                "settlement_status": PayoutStatus.SUBMITTED,
                "attempts": PayoutLine.attempts + 1,
                "failure_reason": None,
            },
        )
        if not changed:
            raise IllegalTransitionError(
                f"Cannot retry a payout that is {line.settlement_status.value}",
                detail={"status": line.settlement_status.value},
            )
        await _recompute_status(session, line.distribution_event_id)
        events.emit(
            session,
            "payout.retried",
            await _event_asset_id(session, line.distribution_event_id),
            distribution_id=line.distribution_event_id,
            payout_line_id=line_id,
        )

    line = await get_payout_line(session, line_id)
    logger.info(
        "Retrying payout",
        extra={"payout_line_id": line_id, "attempts": line.attempts},
    )
    await gateway.request_payout(
        line.id, line.holder_id, line.net_amount, line.settlement_key
    )
    return line


async def abandon_payout_line(
    session: AsyncSession, line_id: str, reason: str
) -> PayoutLine:
    """Give up on a failed payout for good.

    Raises:
        IllegalTransitionError: If the line is not failed
    """
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to abandon a payout")

    async with transaction(session):
        line = await get_payout_line(session, line_id)
        changed = await _set_line_status(
            session,
            line_id,
            (PayoutStatus.FAILED,),
            {"settlement_status": PayoutStatus.ABANDONED, "failure_reason": reason},
        )
        if not changed:
            raise IllegalTransitionError(
                f"Only failed payouts can be abandoned (line is "
                f"{line.settlement_status.value})",
                detail={"status": line.settlement_status.value},
            )
        events.emit(
            session,
            "payout.abandoned",
            await _event_asset_id(session, line.distribution_event_id),
            distribution_id=line.distribution_event_id,
            payout_line_id=line_id,
            reason=reason,
        )
        await _recompute_status(session, line.distribution_event_id)

    logger.warning(
        "Payout abandoned", extra={"payout_line_id": line_id, "reason": reason}
    )
    telemetry.record_payout_outcome(PayoutStatus.ABANDONED.value)
    return await get_payout_line(session, line_id)
