"""Holdings ledger - the single writer of unit quantities.

Every quantity change is a conditional UPDATE evaluated by the store
(compare-and-swap), never a value read earlier and written back. Each
ledger-mutating transaction starts by locking its asset row, which
serializes all mutations of one asset and keeps distribution snapshots
from interleaving with trades.

Invariants checked before every commit:
- sum(units_owned) == units_sold <= total_supply
- units_reserved <= units_owned on every holding
"""

import logging
from collections.abc import Collection
from contextlib import asynccontextmanager
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenengine import telemetry
from tokenengine.database import utcnow
from tokenengine.errors import (
    AssetFrozenError,
    IllegalTransitionError,
    InsufficientHoldingsError,
    InsufficientSupplyError,
    InvariantViolation,
    NotFoundError,
)
from tokenengine.models import AssetStatus, HoldingRecord, TokenizedAsset
from tokenengine.services import events

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ============================================================================
# Reads
# ============================================================================


async def get_asset(session: AsyncSession, asset_id: str) -> TokenizedAsset | None:
    """Load an asset, bypassing any stale copy in the identity map."""
    result = await session.execute(
        select(TokenizedAsset)
        .where(TokenizedAsset.id == asset_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_asset(session: AsyncSession, asset_id: str) -> TokenizedAsset:
    asset = await get_asset(session, asset_id)
    if asset is None:
        raise NotFoundError(f"Asset '{asset_id}' not found")
    return asset


async def get_holding(
    session: AsyncSession, asset_id: str, holder_id: str
) -> HoldingRecord | None:
    """Get one holder's ledger row for an asset.

    Args:
        session: Database session
        asset_id: Asset ID
        holder_id: Holder ID

    Returns:
        HoldingRecord or None if the holder never owned units of the asset
    """
    result = await session.execute(
        select(HoldingRecord)
        .where(
            and_(HoldingRecord.asset_id == asset_id, HoldingRecord.holder_id == holder_id)
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_asset_holdings(
    session: AsyncSession, asset_id: str, include_empty: bool = False
) -> list[HoldingRecord]:
    """Get all holdings of an asset, ordered by holder.

    Args:
        session: Database session
        asset_id: Asset ID
        include_empty: Also return rows whose units_owned is zero

    Returns:
        List of holdings
    """
    query = select(HoldingRecord).where(HoldingRecord.asset_id == asset_id)
    if not include_empty:
        query = query.where(HoldingRecord.units_owned > 0)
    query = query.order_by(HoldingRecord.holder_id).execution_options(
        populate_existing=True
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_holder_holdings(
    session: AsyncSession, holder_id: str, include_empty: bool = False
) -> list[HoldingRecord]:
    """Get all holdings of one holder across assets."""
    query = select(HoldingRecord).where(HoldingRecord.holder_id == holder_id)
    if not include_empty:
        query = query.where(HoldingRecord.units_owned > 0)
    result = await session.execute(query.order_by(HoldingRecord.asset_id))
    return list(result.scalars().all())


# ============================================================================
# Asset lock and supply counter
# ============================================================================


async def _diagnose(
    session: AsyncSession,
    asset_id: str,
    allowed: Collection[AssetStatus],
    action: str,
) -> TokenizedAsset:
    """Explain why a conditional asset update matched no row.

    Raises the specific error when the cause is state-related; returns the
    fresh asset when the state was fine (the caller knows the other cause).
    """
    asset = await require_asset(session, asset_id)
    if asset.archived_at is not None:
        raise IllegalTransitionError(f"Cannot {action}: asset '{asset_id}' is archived")
    if asset.is_frozen:
        raise AssetFrozenError(
            f"Cannot {action}: asset '{asset_id}' is frozen pending reconciliation",
            detail={"reason": asset.frozen_reason},
        )
    if asset.status not in allowed:
        raise IllegalTransitionError(
            f"Cannot {action} while asset is {asset.status.value}",
            detail={"status": asset.status.value},
        )
    return asset


async def lock_asset(
    session: AsyncSession,
    asset_id: str,
    allowed: Collection[AssetStatus],
    action: str,
) -> TokenizedAsset:
    """Take the per-asset lock for a ledger mutation.

    Bumps the asset version with a conditional UPDATE that also checks the
    asset is in one of the allowed statuses, not frozen and not archived.
    The row stays locked until the transaction ends.

    Raises:
        NotFoundError, IllegalTransitionError, AssetFrozenError
    """
    result = await session.execute(
        update(TokenizedAsset)
        .where(
            TokenizedAsset.id == asset_id,
            TokenizedAsset.status.in_(list(allowed)),
            TokenizedAsset.is_frozen.is_(False),
            TokenizedAsset.archived_at.is_(None),
        )
        .values(version=TokenizedAsset.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await _diagnose(session, asset_id, allowed, action)
    return await require_asset(session, asset_id)


async def reserve_supply(
    session: AsyncSession, asset_id: str, units: int
) -> TokenizedAsset:
    """Atomically take `units` from the unsold supply.

    The remaining-supply check and the increment are one statement, so
    two buyers racing for the last units can never both succeed.

    Raises:
        InsufficientSupplyError: If fewer than `units` remain
    """
    result = await session.execute(
        update(TokenizedAsset)
        .where(
            TokenizedAsset.id == asset_id,
            TokenizedAsset.status == AssetStatus.SALE_ACTIVE,
            TokenizedAsset.is_frozen.is_(False),
            TokenizedAsset.archived_at.is_(None),
            TokenizedAsset.units_sold + units <= TokenizedAsset.total_supply,
        )
        .values(
            units_sold=TokenizedAsset.units_sold + units,
            version=TokenizedAsset.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        asset = await _diagnose(
            session, asset_id, (AssetStatus.SALE_ACTIVE,), "purchase units"
        )
        raise InsufficientSupplyError(
            f"Insufficient supply: {asset.remaining_supply} units remaining, "
            f"requested {units}",
            detail={"remaining": asset.remaining_supply, "requested": units},
        )
    return await require_asset(session, asset_id)


# ============================================================================
# Holding mutations
# ============================================================================


async def credit_holding(
    session: AsyncSession,
    asset_id: str,
    holder_id: str,
    units: int,
    cost: Decimal,
) -> HoldingRecord:
    """Add units (and their cost) to a holder's ledger row, creating it if needed.

    Caller must hold the asset lock.
    """
    holding = await get_holding(session, asset_id, holder_id)
    if holding is None:
        now = utcnow()
        holding = HoldingRecord(
            asset_id=asset_id,
            holder_id=holder_id,
            units_owned=units,
            units_reserved=0,
            total_invested=cost,
            acquired_at=now,
            updated_at=now,
        )
        session.add(holding)
        await session.flush()
        return holding

    await session.execute(
        update(HoldingRecord)
        .where(
            HoldingRecord.asset_id == asset_id,
            HoldingRecord.holder_id == holder_id,
        )
        .values(
            units_owned=HoldingRecord.units_owned + units,
            total_invested=HoldingRecord.total_invested + cost,
            version=HoldingRecord.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return await get_holding(session, asset_id, holder_id)


async def debit_reserved_holding(
    session: AsyncSession,
    asset_id: str,
    holder_id: str,
    units: int,
) -> HoldingRecord:
    """Remove reserved units from a seller's ledger row (a listing fill).

    The cost basis is reduced at the holding's average cost.
    Caller must hold the asset lock.

    Raises:
        InvariantViolation: If the seller no longer owns the reserved units
    """
    holding = await get_holding(session, asset_id, holder_id)
    if holding is None or holding.units_owned < units:
        raise InvariantViolation(
            f"Holder '{holder_id}' has no reserved units left for a listing fill "
            f"on asset '{asset_id}'"
        )

    if units == holding.units_owned:
        cost_reduction = holding.total_invested
    else:
        cost_reduction = (holding.total_invested * units / holding.units_owned).quantize(
            CENT, rounding=ROUND_HALF_UP
        )

    result = await session.execute(
        update(HoldingRecord)
        .where(
            HoldingRecord.asset_id == asset_id,
            HoldingRecord.holder_id == holder_id,
            HoldingRecord.units_owned >= units,
            HoldingRecord.units_reserved >= units,
        )
        .values(
            units_owned=HoldingRecord.units_owned - units,
            units_reserved=HoldingRecord.units_reserved - units,
            total_invested=HoldingRecord.total_invested - cost_reduction,
            version=HoldingRecord.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvariantViolation(
            f"Reservation of holder '{holder_id}' on asset '{asset_id}' "
            f"is smaller than the listed units being filled"
        )
    return await get_holding(session, asset_id, holder_id)


async def reserve_units(
    session: AsyncSession, asset_id: str, holder_id: str, units: int
) -> HoldingRecord:
    """Reserve sellable units for a new listing.

    Sellable = units_owned - units_reserved, checked and incremented in
    one statement so simultaneous listings cannot oversell.

    Raises:
        InsufficientHoldingsError: If fewer than `units` are sellable
    """
    result = await session.execute(
        update(HoldingRecord)
        .where(
            HoldingRecord.asset_id == asset_id,
            HoldingRecord.holder_id == holder_id,
            HoldingRecord.units_owned - HoldingRecord.units_reserved >= units,
        )
        .values(
            units_reserved=HoldingRecord.units_reserved + units,
            version=HoldingRecord.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        holding = await get_holding(session, asset_id, holder_id)
        sellable = holding.units_sellable if holding else 0
        raise InsufficientHoldingsError(
            f"Insufficient units: have {sellable} available, need {units}",
            detail={"sellable": sellable, "requested": units},
        )
    return await get_holding(session, asset_id, holder_id)


async def release_units(
    session: AsyncSession, asset_id: str, holder_id: str, units: int
) -> HoldingRecord:
    """Release a listing's reservation without changing owned units.

    Raises:
        InvariantViolation: If the holder has less reserved than is being released
    """
    result = await session.execute(
        update(HoldingRecord)
        .where(
            HoldingRecord.asset_id == asset_id,
            HoldingRecord.holder_id == holder_id,
            HoldingRecord.units_reserved >= units,
        )
        .values(
            units_reserved=HoldingRecord.units_reserved - units,
            version=HoldingRecord.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvariantViolation(
            f"Cannot release {units} units for holder '{holder_id}' on asset "
            f"'{asset_id}': reservation is smaller"
        )
    return await get_holding(session, asset_id, holder_id)


# ============================================================================
# Invariants
# ============================================================================


async def check_supply_invariant(session: AsyncSession, asset_id: str) -> None:
    """Verify the ledger of one asset.

    Raises:
        InvariantViolation: If owned units exceed supply, disagree with the
            units_sold counter, or a reservation exceeds its holding
    """
    asset = await require_asset(session, asset_id)

    result = await session.execute(
        select(
            func.coalesce(func.sum(HoldingRecord.units_owned), 0),
            func.coalesce(
                func.sum(
                    case(
                        (HoldingRecord.units_reserved > HoldingRecord.units_owned, 1),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(HoldingRecord.asset_id == asset_id)
    )
    owned, over_reserved = result.one()

    if owned > asset.total_supply:
        raise InvariantViolation(
            f"Ledger for asset '{asset_id}' holds {owned} units, "
            f"exceeding total supply {asset.total_supply}"
        )
    if owned != asset.units_sold:
        raise InvariantViolation(
            f"Ledger for asset '{asset_id}' holds {owned} units but "
            f"{asset.units_sold} were sold"
        )
    if over_reserved:
        raise InvariantViolation(
            f"Asset '{asset_id}' has {over_reserved} holdings with more units "
            f"reserved than owned"
        )


async def freeze_asset(session: AsyncSession, asset_id: str, reason: str) -> None:
    """Freeze an asset in its own transaction. Trading is refused until unfrozen."""
    await session.execute(
        update(TokenizedAsset)
        .where(TokenizedAsset.id == asset_id)
        .values(
            is_frozen=True,
            frozen_reason=reason,
            version=TokenizedAsset.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    events.emit(session, "asset.frozen", asset_id, reason=reason)
    await session.commit()

    logger.critical(
        "Asset frozen",
        extra={"asset_id": asset_id, "reason": reason},
    )
    telemetry.record_invariant_violation(asset_id)


@asynccontextmanager
async def atomic(session: AsyncSession, asset_id: str):
    """Run a ledger mutation as one all-or-nothing transaction.

    On success the asset's invariants are checked and the transaction is
    committed. Any error rolls everything back. An invariant violation
    additionally freezes the asset before being re-raised.
    """
    try:
        yield
        await check_supply_invariant(session, asset_id)
        await session.commit()
    except InvariantViolation as e:
        await session.rollback()
        await freeze_asset(session, asset_id, str(e))
        raise
    except BaseException:
        await session.rollback()
        raise


async def reconcile(session: AsyncSession, asset_id: str) -> str | None:
    """Check an asset's ledger on demand, freezing it if inconsistent.

    Returns:
        The violation message, or None if the ledger is consistent
    """
    asset = await require_asset(session, asset_id)
    already_frozen = asset.is_frozen
    try:
        await check_supply_invariant(session, asset_id)
    except InvariantViolation as e:
        await session.rollback()
        if not already_frozen:
            await freeze_asset(session, asset_id, str(e))
        return str(e)
    return None
