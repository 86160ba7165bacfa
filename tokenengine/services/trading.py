"""Primary sale and marketplace trading.

Every operation here is one local transaction run through ledger.atomic:
it takes the asset lock, changes the ledger with conditional UPDATEs,
appends a Trade, emits its events and commits only if the supply
invariants still hold. Any error leaves no trace.

Self-trades are prevented (a holder cannot buy their own listing).
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenengine import telemetry
from tokenengine.config import get_settings
from tokenengine.database import to_naive_utc, utcnow
from tokenengine.errors import (
    EngineError,
    IllegalTransitionError,
    InsufficientListingError,
    NotFoundError,
    ValidationError,
)
from tokenengine.models import (
    AssetStatus,
    HoldingRecord,
    ListingStatus,
    MarketplaceListing,
    Trade,
    TradeKind,
)
from tokenengine.services import events, ledger

logger = logging.getLogger(__name__)

# Listings can be withdrawn while trading is paused
CANCELLABLE_STATUSES = (AssetStatus.ACTIVE, AssetStatus.PAUSED)


def generate_id() -> str:
    """Generate a unique listing or trade ID."""
    return str(uuid.uuid4())


def _validate_order(party: str, party_id: str, units: int, price: Decimal | None = None) -> None:
    if not party_id or not party_id.strip():
        raise ValidationError(f"A {party} is required")
    if units is None or units <= 0:
        raise ValidationError("Units must be positive", detail={"units": units})
    if price is not None and price <= 0:
        raise ValidationError("Price must be positive", detail={"price_per_unit": str(price)})


# ============================================================================
# Queries
# ============================================================================


async def get_listing(session: AsyncSession, listing_id: str) -> MarketplaceListing:
    """Get a listing by ID.

    Raises:
        NotFoundError: If the listing does not exist
    """
    result = await session.execute(
        select(MarketplaceListing)
        .where(MarketplaceListing.id == listing_id)
        .execution_options(populate_existing=True)
    )
    listing = result.scalar_one_or_none()
    if listing is None:
        raise NotFoundError(f"Listing '{listing_id}' not found")
    return listing


async def list_listings(
    session: AsyncSession,
    asset_id: str | None = None,
    status: ListingStatus | None = ListingStatus.ACTIVE,
    seller_id: str | None = None,
) -> list[MarketplaceListing]:
    """List marketplace listings.

    Args:
        session: Database session
        asset_id: Filter by asset (optional)
        status: Filter by status (default: active only; None for all)
        seller_id: Filter by seller (optional)

    Returns:
        Listings ordered by price, then age (best offer first)
    """
    query = select(MarketplaceListing)
    if asset_id:
        query = query.where(MarketplaceListing.asset_id == asset_id)
    if status:
        query = query.where(MarketplaceListing.status == status)
    if seller_id:
        query = query.where(MarketplaceListing.seller_id == seller_id)

    query = query.order_by(
        MarketplaceListing.price_per_unit.asc(),
        MarketplaceListing.created_at.asc(),
        MarketplaceListing.id,
    )
    result = await session.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def list_trades(
    session: AsyncSession,
    asset_id: str,
    holder_id: str | None = None,
    limit: int = 100,
) -> list[Trade]:
    """Get recent trades of an asset, newest first.

    Args:
        session: Database session
        asset_id: Asset ID
        holder_id: Only trades where this holder bought or sold (optional)
        limit: Maximum number of trades

    Returns:
        List of trades
    """
    query = select(Trade).where(Trade.asset_id == asset_id)
    if holder_id:
        query = query.where((Trade.buyer_id == holder_id) | (Trade.seller_id == holder_id))
    query = query.order_by(Trade.executed_at.desc(), Trade.id).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


# ============================================================================
# Primary sale
# ============================================================================


async def purchase_primary(
    session: AsyncSession,
    asset_id: str,
    buyer_id: str,
    units: int,
    price_per_unit: Decimal,
    now: datetime | None = None,
) -> HoldingRecord:
    """Buy units from an asset's unsold supply during its sale window.

    Args:
        session: Database session
        asset_id: Asset ID
        buyer_id: Buying holder
        units: Units to buy (> 0)
        price_per_unit: Must equal the asset's unit price
        now: Current time (defaults to utcnow)

    Returns:
        The buyer's updated holding

    Raises:
        ValidationError: Bad quantity, price or below the minimum investment
        InsufficientSupplyError: Fewer units remain than requested
        IllegalTransitionError: The sale is not running
        AssetFrozenError: Trading is blocked on the asset
    """
    _validate_order("buyer", buyer_id, units, price_per_unit)
    now = to_naive_utc(now) or utcnow()

    async with ledger.atomic(session, asset_id):
        asset = await ledger.require_asset(session, asset_id)
        if price_per_unit != asset.unit_price:
            raise ValidationError(
                f"Primary units sell at {asset.unit_price}, not {price_per_unit}",
                detail={"unit_price": str(asset.unit_price)},
            )
        total_price = asset.unit_price * units
        if total_price < asset.minimum_investment:
            raise ValidationError(
                f"Minimum investment is {asset.minimum_investment}",
                detail={
                    "minimum_investment": str(asset.minimum_investment),
                    "total_price": str(total_price),
                },
            )
        if asset.status == AssetStatus.SALE_ACTIVE and asset.sale_end and asset.sale_end <= now:
            raise IllegalTransitionError(
                "The sale window has ended", detail={"sale_end": str(asset.sale_end)}
            )

        asset = await ledger.reserve_supply(session, asset_id, units)
        holding = await ledger.credit_holding(
            session, asset_id, buyer_id, units, total_price
        )

        trade = Trade(
            id=generate_id(),
            kind=TradeKind.PRIMARY,
            asset_id=asset_id,
            buyer_id=buyer_id,
            units=units,
            price_per_unit=asset.unit_price,
            total_price=total_price,
            executed_at=now,
        )
        session.add(trade)
        events.emit(
            session,
            "sale.primary",
            asset_id,
            trade_id=trade.id,
            buyer_id=buyer_id,
            units=units,
            total_price=total_price,
            remaining_supply=asset.remaining_supply,
        )

    logger.info(
        "Primary purchase",
        extra={
            "asset_id": asset_id,
            "buyer_id": buyer_id,
            "units": units,
            "remaining_supply": asset.remaining_supply,
        },
    )
    telemetry.record_primary_sale(asset.symbol, units, asset.unit_price)
    return holding


# ============================================================================
# Marketplace
# ============================================================================


async def create_listing(
    session: AsyncSession,
    asset_id: str,
    seller_id: str,
    units: int,
    price_per_unit: Decimal,
    expires_at: datetime | None = None,
    now: datetime | None = None,
) -> MarketplaceListing:
    """Offer owned units for resale.

    The units are reserved on the seller's holding until the listing is
    filled, cancelled or expires, so they cannot be listed twice.

    Raises:
        ValidationError: Bad quantity, price or expiry
        InsufficientHoldingsError: Fewer sellable units than requested
        IllegalTransitionError: The asset is not trading
    """
    _validate_order("seller", seller_id, units, price_per_unit)
    now = to_naive_utc(now) or utcnow()
    if expires_at is None:
        expires_at = now + timedelta(days=get_settings().listing_ttl_days)
    else:
        expires_at = to_naive_utc(expires_at)
    if expires_at <= now:
        raise ValidationError(
            "Listing expiry must be in the future", detail={"expires_at": str(expires_at)}
        )

    async with ledger.atomic(session, asset_id):
        asset = await ledger.lock_asset(
            session, asset_id, (AssetStatus.ACTIVE,), "list units"
        )
        await ledger.reserve_units(session, asset_id, seller_id, units)

        listing = MarketplaceListing(
            id=generate_id(),
            asset_id=asset_id,
            seller_id=seller_id,
            units_initial=units,
            units_listed=units,
            price_per_unit=price_per_unit,
            status=ListingStatus.ACTIVE,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
            version=1,
        )
        session.add(listing)
        events.emit(
            session,
            "listing.created",
            asset_id,
            listing_id=listing.id,
            seller_id=seller_id,
            units=units,
            price_per_unit=price_per_unit,
        )

    logger.info(
        "Listing created",
        extra={
            "asset_id": asset_id,
            "listing_id": listing.id,
            "seller_id": seller_id,
            "units": units,
        },
    )
    telemetry.record_listing_created(asset.symbol)
    return listing


async def purchase_listing(
    session: AsyncSession,
    listing_id: str,
    buyer_id: str,
    units: int,
    now: datetime | None = None,
) -> HoldingRecord:
    """Buy some or all of the units offered by a listing.

    Units move from the seller's reservation to the buyer at the listing
    price. The listing is filled once nothing is left. The trade itself is
    recorded and can be read back with list_trades.

    Returns:
        The buyer's updated holding

    Raises:
        ValidationError: Bad quantity, or the buyer is the seller
        InsufficientListingError: The listing offers fewer units
        IllegalTransitionError: The listing is closed or expired, or the asset is not trading
    """
    _validate_order("buyer", buyer_id, units)
    now = to_naive_utc(now) or utcnow()

    listing = await get_listing(session, listing_id)
    if listing.seller_id == buyer_id:
        raise ValidationError("Cannot buy units from your own listing")
    asset_id = listing.asset_id

    async with ledger.atomic(session, asset_id):
        asset = await ledger.lock_asset(
            session, asset_id, (AssetStatus.ACTIVE,), "trade units"
        )
        listing = await get_listing(session, listing_id)
        if listing.status != ListingStatus.ACTIVE:
            raise IllegalTransitionError(
                f"Listing is {listing.status.value}",
                detail={"status": listing.status.value},
            )
        if listing.expires_at <= now:
            raise IllegalTransitionError(
                "Listing has expired", detail={"expires_at": str(listing.expires_at)}
            )
        if listing.units_listed < units:
            raise InsufficientListingError(
                f"Listing offers {listing.units_listed} units, requested {units}",
                detail={"available": listing.units_listed, "requested": units},
            )

        remaining = listing.units_listed - units
        new_status = ListingStatus.FILLED if remaining == 0 else ListingStatus.ACTIVE
        result = await session.execute(
            update(MarketplaceListing)
            .where(
                and_(
                    MarketplaceListing.id == listing_id,
                    MarketplaceListing.status == ListingStatus.ACTIVE,
                    MarketplaceListing.units_listed == listing.units_listed,
                    MarketplaceListing.version == listing.version,
                )
            )
            .values(
                units_listed=remaining,
                status=new_status,
                version=MarketplaceListing.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientListingError(
                f"Listing '{listing_id}' changed while buying; re-read it",
                detail={"listing_id": listing_id},
            )

        total_price = listing.price_per_unit * units
        await ledger.debit_reserved_holding(session, asset_id, listing.seller_id, units)
        holding = await ledger.credit_holding(
            session, asset_id, buyer_id, units, total_price
        )

        trade = Trade(
            id=generate_id(),
            kind=TradeKind.RESALE,
            asset_id=asset_id,
            buyer_id=buyer_id,
            seller_id=listing.seller_id,
            listing_id=listing_id,
            units=units,
            price_per_unit=listing.price_per_unit,
            total_price=total_price,
            executed_at=now,
        )
        session.add(trade)
        events.emit(
            session,
            "sale.resale",
            asset_id,
            trade_id=trade.id,
            listing_id=listing_id,
            buyer_id=buyer_id,
            seller_id=listing.seller_id,
            units=units,
            total_price=total_price,
        )
        if new_status == ListingStatus.FILLED:
            events.emit(session, "listing.filled", asset_id, listing_id=listing_id)

    logger.info(
        "Listing purchase",
        extra={
            "asset_id": asset_id,
            "listing_id": listing_id,
            "buyer_id": buyer_id,
            "seller_id": trade.seller_id,
            "units": units,
            "listing_remaining": remaining,
        },
    )
    telemetry.record_resale(asset.symbol, units)
    return holding


async def _close_listing(
    session: AsyncSession,
    listing: MarketplaceListing,
    status: ListingStatus,
    now: datetime,
) -> bool:
    """Take an active listing off the book and release its reservation.

    Caller must hold the asset lock. Returns False if the listing was no
    longer active.
    """
    result = await session.execute(
        update(MarketplaceListing)
        .where(
            MarketplaceListing.id == listing.id,
            MarketplaceListing.status == ListingStatus.ACTIVE,
            MarketplaceListing.version == listing.version,
        )
        .values(status=status, updated_at=now, version=MarketplaceListing.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    if listing.units_listed:
        await ledger.release_units(
            session, listing.asset_id, listing.seller_id, listing.units_listed
        )
    events.emit(
        session,
        f"listing.{status.value}",
        listing.asset_id,
        listing_id=listing.id,
        seller_id=listing.seller_id,
        units_released=listing.units_listed,
    )
    return True


async def cancel_listing(
    session: AsyncSession, listing_id: str, seller_id: str
) -> MarketplaceListing:
    """Withdraw a listing. Its remaining units become sellable again.

    Raises:
        NotFoundError: If the listing does not exist or belongs to someone else
        IllegalTransitionError: If the listing is no longer active
    """
    listing = await get_listing(session, listing_id)
    if listing.seller_id != seller_id:
        raise NotFoundError(f"Listing '{listing_id}' not found")

    async with ledger.atomic(session, listing.asset_id):
        await ledger.lock_asset(
            session, listing.asset_id, CANCELLABLE_STATUSES, "cancel a listing"
        )
        listing = await get_listing(session, listing_id)
        if not await _close_listing(session, listing, ListingStatus.CANCELLED, utcnow()):
            raise IllegalTransitionError(
                f"Cannot cancel a listing that is {listing.status.value}",
                detail={"status": listing.status.value},
            )

    logger.info(
        "Listing cancelled",
        extra={"listing_id": listing_id, "units_released": listing.units_listed},
    )
    telemetry.record_listing_closed("cancelled")
    return await get_listing(session, listing_id)


async def expire_listing(
    session: AsyncSession, listing_id: str, now: datetime | None = None
) -> bool:
    """Expire one listing if it is still active and past its expiry.

    Returns:
        True if the listing was expired by this call
    """
    now = to_naive_utc(now) or utcnow()
    listing = await get_listing(session, listing_id)

    async with ledger.atomic(session, listing.asset_id):
        await ledger.lock_asset(
            session, listing.asset_id, tuple(AssetStatus), "expire a listing"
        )
        listing = await get_listing(session, listing_id)
        if listing.status != ListingStatus.ACTIVE or listing.expires_at > now:
            return False
        expired = await _close_listing(session, listing, ListingStatus.EXPIRED, now)

    if expired:
        logger.info(
            "Listing expired",
            extra={"listing_id": listing_id, "units_released": listing.units_listed},
        )
        telemetry.record_listing_closed("expired")
    return expired


async def expire_listings(
    session: AsyncSession, now: datetime | None = None
) -> tuple[int, int]:
    """Expire every active listing past its expiry, one transaction each.

    A listing that was filled or cancelled in the meantime, or whose asset
    is frozen, is skipped.

    Returns:
        (expired, skipped)
    """
    now = to_naive_utc(now) or utcnow()
    result = await session.execute(
        select(MarketplaceListing.id)
        .where(
            MarketplaceListing.status == ListingStatus.ACTIVE,
            MarketplaceListing.expires_at <= now,
        )
        .order_by(MarketplaceListing.expires_at, MarketplaceListing.id)
    )
    listing_ids = list(result.scalars().all())
    await session.commit()

    expired = skipped = 0
    for listing_id in listing_ids:
        try:
            if await expire_listing(session, listing_id, now):
                expired += 1
            else:
                skipped += 1
        except EngineError as e:
            skipped += 1
            logger.info(
                "Skipped listing expiry",
                extra={"listing_id": listing_id, "reason": e.code},
            )
    return expired, skipped
