"""Tokenization lifecycle - the asset state machine.

Legal moves are listed once, in TRANSITIONS. Every transition is a single
conditional UPDATE on (status, version): a caller holding a stale version
gets ConcurrentModificationError and must re-read. Nothing here retries.

Settlement intents (mint requests) are only sent after the transition
that records them has committed, never while a row is locked.
"""

import enum
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenengine import telemetry
from tokenengine.database import to_naive_utc, transaction, utcnow
from tokenengine.errors import (
    AssetFrozenError,
    ConcurrentModificationError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from tokenengine.models import (
    AssetStatus,
    DistributionEvent,
    DistributionType,
    HoldingRecord,
    TokenizedAsset,
)
from tokenengine.schemas.asset import AssetCreate, AssetUpdate
from tokenengine.services import distribution, events, ledger
from tokenengine.settlement import SettlementGateway

logger = logging.getLogger(__name__)


class AssetEvent(enum.Enum):
    """Triggers of the tokenization state machine."""

    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_ISSUANCE = "request_issuance"
    ISSUANCE_CONFIRMED_OPEN = "issuance_confirmed_open"
    ISSUANCE_CONFIRMED = "issuance_confirmed"
    ISSUANCE_FAILED = "issuance_failed"
    RESUBMIT_ISSUANCE = "resubmit_issuance"
    OPEN_SALE = "open_sale"
    CLOSE_SALE = "close_sale"
    CANCEL_SALE = "cancel_sale"
    BEGIN_DISTRIBUTION = "begin_distribution"
    GO_LIVE = "go_live"
    PAUSE = "pause"
    RESUME = "resume"
    RESUME_SALE = "resume_sale"


S = AssetStatus
E = AssetEvent

TRANSITIONS: dict[tuple[AssetStatus, AssetEvent], AssetStatus] = {
    (S.DRAFT, E.SUBMIT): S.PENDING_APPROVAL,
    (S.PENDING_APPROVAL, E.APPROVE): S.APPROVED,
    (S.PENDING_APPROVAL, E.REJECT): S.DRAFT,
    (S.APPROVED, E.REQUEST_ISSUANCE): S.ISSUING,
    (S.ISSUING, E.ISSUANCE_CONFIRMED_OPEN): S.SALE_ACTIVE,
    (S.ISSUING, E.ISSUANCE_CONFIRMED): S.ISSUED,
    (S.ISSUING, E.ISSUANCE_FAILED): S.ISSUANCE_FAILED,
    (S.ISSUANCE_FAILED, E.RESUBMIT_ISSUANCE): S.ISSUING,
    (S.ISSUED, E.OPEN_SALE): S.SALE_ACTIVE,
    (S.SALE_ACTIVE, E.CLOSE_SALE): S.SALE_ENDED,
    (S.SALE_ACTIVE, E.CANCEL_SALE): S.CANCELLED,
    (S.SALE_ENDED, E.BEGIN_DISTRIBUTION): S.DISTRIBUTING,
    (S.SALE_ENDED, E.GO_LIVE): S.ACTIVE,
    (S.DISTRIBUTING, E.GO_LIVE): S.ACTIVE,
    (S.ACTIVE, E.PAUSE): S.PAUSED,
    (S.SALE_ACTIVE, E.PAUSE): S.PAUSED,
    (S.PAUSED, E.RESUME): S.ACTIVE,
    (S.PAUSED, E.RESUME_SALE): S.SALE_ACTIVE,
}

del S, E

# Statuses in which no unit can have been sold yet
ARCHIVABLE_STATUSES = frozenset(
    {
        AssetStatus.DRAFT,
        AssetStatus.PENDING_APPROVAL,
        AssetStatus.APPROVED,
        AssetStatus.ISSUANCE_FAILED,
        AssetStatus.CANCELLED,
    }
)

NO_SUBSCRIPTIONS_REASON = "No subscriptions received"


def next_status(current: AssetStatus, event: AssetEvent) -> AssetStatus:
    """Look up the target of a transition.

    Raises:
        IllegalTransitionError: If the event is not allowed in `current`
    """
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise IllegalTransitionError(
            f"Cannot {event.value} an asset that is {current.value}",
            detail={"status": current.value, "event": event.value},
        )
    return target


def allowed_events(current: AssetStatus) -> list[AssetEvent]:
    """Events accepted in a given status."""
    return [event for (status, event) in TRANSITIONS if status == current]


# ============================================================================
# Transition machinery
# ============================================================================


def _check_version(asset: TokenizedAsset, expected_version: int) -> None:
    if asset.version != expected_version:
        raise ConcurrentModificationError(
            f"Asset '{asset.id}' was modified: expected version "
            f"{expected_version}, found {asset.version}",
            detail={"expected_version": expected_version, "current_version": asset.version},
        )


def _check_not_frozen(asset: TokenizedAsset, action: str) -> None:
    if asset.is_frozen:
        raise AssetFrozenError(
            f"Cannot {action}: asset '{asset.id}' is frozen pending reconciliation",
            detail={"reason": asset.frozen_reason},
        )


async def _cas(
    session: AsyncSession,
    asset: TokenizedAsset,
    expected_version: int,
    values: dict[str, Any],
) -> TokenizedAsset:
    """Conditionally update an asset that was read at `expected_version`."""
    result = await session.execute(
        update(TokenizedAsset)
        .where(
            TokenizedAsset.id == asset.id,
            TokenizedAsset.status == asset.status,
            TokenizedAsset.version == expected_version,
            TokenizedAsset.archived_at.is_(None),
        )
        .values(version=TokenizedAsset.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        fresh = await ledger.require_asset(session, asset.id)
        _check_version(fresh, expected_version)
        raise ConcurrentModificationError(
            f"Asset '{asset.id}' was modified concurrently",
            detail={"current_version": fresh.version},
        )
    return await ledger.require_asset(session, asset.id)


async def _apply(
    session: AsyncSession,
    asset_id: str,
    event: AssetEvent,
    expected_version: int,
    guard: Callable[[TokenizedAsset], None] | None = None,
    changes: Callable[[TokenizedAsset], dict[str, Any]] | None = None,
    **payload: Any,
) -> TokenizedAsset:
    """Run one state machine transition inside the caller's transaction.

    Emits `asset.<event>` and never commits.
    """
    asset = await ledger.require_asset(session, asset_id)
    if asset.archived_at is not None:
        raise IllegalTransitionError(
            f"Cannot {event.value}: asset '{asset_id}' is archived"
        )
    _check_not_frozen(asset, event.value)
    _check_version(asset, expected_version)
    target = next_status(asset.status, event)
    if guard is not None:
        guard(asset)

    source = asset.status
    values = changes(asset) if changes is not None else {}
    asset = await _cas(session, asset, expected_version, {"status": target, **values})

    events.emit(
        session,
        f"asset.{event.value}",
        asset_id,
        from_status=source.value,
        to_status=target.value,
        version=asset.version,
        **payload,
    )
    logger.info(
        "Asset transition",
        extra={
            "asset_id": asset_id,
            "event": event.value,
            "from_status": source.value,
            "to_status": target.value,
            "version": asset.version,
        },
    )
    telemetry.record_transition(event.value, target.value)
    return asset


# ============================================================================
# Queries
# ============================================================================


async def list_assets(
    session: AsyncSession,
    status: AssetStatus | None = None,
    include_archived: bool = False,
) -> list[TokenizedAsset]:
    """List assets, newest first.

    Args:
        session: Database session
        status: Filter by status (optional)
        include_archived: Also return soft-archived assets

    Returns:
        List of assets
    """
    query = select(TokenizedAsset)
    if status:
        query = query.where(TokenizedAsset.status == status)
    if not include_archived:
        query = query.where(TokenizedAsset.archived_at.is_(None))
    query = query.order_by(TokenizedAsset.created_at.desc(), TokenizedAsset.id)
    result = await session.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


# ============================================================================
# Draft and review
# ============================================================================


def _check_sale_window(sale_start: datetime | None, sale_end: datetime | None) -> None:
    if sale_start and sale_end and sale_end <= sale_start:
        raise ValidationError(
            "sale_end must be after sale_start",
            detail={"sale_start": str(sale_start), "sale_end": str(sale_end)},
        )


async def create_tokenized_asset(
    session: AsyncSession, data: AssetCreate
) -> TokenizedAsset:
    """Create a tokenized asset in draft.

    Args:
        session: Database session
        data: Asset metadata

    Returns:
        The created asset (version 1)
    """
    sale_start = to_naive_utc(data.sale_start)
    sale_end = to_naive_utc(data.sale_end)
    _check_sale_window(sale_start, sale_end)

    now = utcnow()
    asset = TokenizedAsset(
        id=str(uuid.uuid4()),
        property_id=data.property_id,
        name=data.name,
        symbol=data.symbol.upper(),
        total_supply=data.total_supply,
        unit_price=data.unit_price,
        minimum_investment=data.minimum_investment,
        expected_yield_pct=data.expected_yield_pct,
        sale_start=sale_start,
        sale_end=sale_end,
        status=AssetStatus.DRAFT,
        units_sold=0,
        issuance_attempt=0,
        is_frozen=False,
        version=1,
        created_at=now,
        updated_at=now,
    )
    async with transaction(session):
        session.add(asset)
        events.emit(
            session,
            "asset.created",
            asset.id,
            symbol=asset.symbol,
            total_supply=asset.total_supply,
            unit_price=asset.unit_price,
        )

    logger.info(
        "Asset created",
        extra={"asset_id": asset.id, "symbol": asset.symbol, "total_supply": asset.total_supply},
    )
    return asset


_REQUIRED_FIELDS = (
    "name",
    "symbol",
    "total_supply",
    "unit_price",
    "minimum_investment",
    "expected_yield_pct",
)


async def update_draft(
    session: AsyncSession, asset_id: str, data: AssetUpdate
) -> TokenizedAsset:
    """Edit the metadata of a draft asset.

    Raises:
        ValidationError: If a required field is cleared or the window is inverted
        IllegalTransitionError: If the asset has left draft
        ConcurrentModificationError: If `expected_version` is stale
    """
    changes = data.model_dump(exclude_unset=True, exclude={"expected_version"})
    cleared = [key for key in _REQUIRED_FIELDS if key in changes and changes[key] is None]
    if cleared:
        raise ValidationError(
            f"Cannot clear required fields: {', '.join(cleared)}",
            detail={"fields": cleared},
        )
    if "symbol" in changes:
        changes["symbol"] = changes["symbol"].upper()
    for key in ("sale_start", "sale_end"):
        if key in changes:
            changes[key] = to_naive_utc(changes[key])

    async with transaction(session):
        asset = await ledger.require_asset(session, asset_id)
        if asset.status != AssetStatus.DRAFT or asset.archived_at is not None:
            raise IllegalTransitionError(
                f"Only draft assets can be edited (asset is {asset.status.value})",
                detail={"status": asset.status.value},
            )
        _check_not_frozen(asset, "edit")
        _check_version(asset, data.expected_version)
        _check_sale_window(
            changes.get("sale_start", asset.sale_start),
            changes.get("sale_end", asset.sale_end),
        )
        if changes:
            asset = await _cas(session, asset, data.expected_version, changes)
            events.emit(
                session, "asset.updated", asset_id, fields=",".join(sorted(changes))
            )
    return asset


def _require_complete(asset: TokenizedAsset) -> None:
    missing = []
    if not asset.total_supply or asset.total_supply <= 0:
        missing.append("total_supply")
    if not asset.unit_price or asset.unit_price <= 0:
        missing.append("unit_price")
    if asset.sale_start is None:
        missing.append("sale_start")
    if asset.sale_end is None:
        missing.append("sale_end")
    if missing:
        raise ValidationError(
            f"Asset metadata is incomplete: missing {', '.join(missing)}",
            detail={"missing": missing},
        )
    _check_sale_window(asset.sale_start, asset.sale_end)


async def submit_for_approval(
    session: AsyncSession, asset_id: str, expected_version: int
) -> TokenizedAsset:
    async with transaction(session):
        asset = await _apply(
            session, asset_id, AssetEvent.SUBMIT, expected_version, guard=_require_complete
        )
    return asset


def _require_reviewer(reviewer_id: str) -> None:
    if not reviewer_id or not reviewer_id.strip():
        raise ValidationError("A reviewer is required")


async def approve(
    session: AsyncSession, asset_id: str, expected_version: int, reviewer_id: str
) -> TokenizedAsset:
    _require_reviewer(reviewer_id)
    async with transaction(session):
        asset = await _apply(
            session,
            asset_id,
            AssetEvent.APPROVE,
            expected_version,
            changes=lambda a: {"status_reason": None},
            reviewer_id=reviewer_id,
        )
    return asset


async def reject(
    session: AsyncSession,
    asset_id: str,
    expected_version: int,
    reviewer_id: str,
    reason: str,
) -> TokenizedAsset:
    """Send an asset back to draft with the reviewer's reason."""
    _require_reviewer(reviewer_id)
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")
    async with transaction(session):
        asset = await _apply(
            session,
            asset_id,
            AssetEvent.REJECT,
            expected_version,
            changes=lambda a: {"status_reason": reason},
            reviewer_id=reviewer_id,
            reason=reason,
        )
    return asset


# ============================================================================
# Issuance
# ============================================================================


def issuance_key(asset_id: str, attempt: int) -> str:
    return f"{asset_id}:{attempt}"


def _next_attempt(asset: TokenizedAsset) -> dict[str, Any]:
    attempt = asset.issuance_attempt + 1
    return {
        "issuance_attempt": attempt,
        "issuance_key": issuance_key(asset.id, attempt),
        "status_reason": None,
    }


async def _send_issuance(asset: TokenizedAsset, gateway: SettlementGateway) -> None:
    await gateway.request_issuance(asset.id, asset.total_supply, asset.issuance_key)
    logger.info(
        "Issuance requested",
        extra={"asset_id": asset.id, "idempotency_key": asset.issuance_key},
    )


async def request_issuance(
    session: AsyncSession,
    asset_id: str,
    expected_version: int,
    gateway: SettlementGateway,
) -> TokenizedAsset:
    """Move an approved asset to issuing and ask settlement to mint its supply.

    The transition commits before the intent is sent. If sending fails the
    asset stays in issuing and SettlementSubmissionError is raised; use
    resend_issuance to retry with the same key.
    """
    async with transaction(session):
        asset = await _apply(
            session,
            asset_id,
            AssetEvent.REQUEST_ISSUANCE,
            expected_version,
            guard=_require_complete,
            changes=_next_attempt,
        )
    await _send_issuance(asset, gateway)
    return asset


async def resubmit_issuance(
    session: AsyncSession,
    asset_id: str,
    expected_version: int,
    gateway: SettlementGateway,
) -> TokenizedAsset:
    """Retry a failed issuance under a new attempt number."""
    async with transaction(session):
        asset = await _apply(
            session,
            asset_id,
            AssetEvent.RESUBMIT_ISSUANCE,
            expected_version,
            changes=_next_attempt,
        )
    await _send_issuance(asset, gateway)
    return asset


async def resend_issuance(
    session: AsyncSession, asset_id: str, gateway: SettlementGateway
) -> TokenizedAsset:
    """Send the current mint intent again, under the same idempotency key."""
    asset = await ledger.require_asset(session, asset_id)
    if asset.status != AssetStatus.ISSUING:
        raise IllegalTransitionError(
            f"No issuance in flight: asset is {asset.status.value}",
            detail={"status": asset.status.value},
        )
    await _send_issuance(asset, gateway)
    return asset


async def record_issuance_result(
    session: AsyncSession,
    idempotency_key: str,
    succeeded: bool,
    reason: str | None = None,
    now: datetime | None = None,
) -> TokenizedAsset:
    """Apply a settlement callback for a mint intent.

    Callbacks are delivered at least once. A key from a superseded attempt,
    or a repeat for an asset that already left issuing, changes nothing.

    Raises:
        NotFoundError: If the key does not belong to any asset
    """
    now = to_naive_utc(now) or utcnow()

    result = await session.execute(
        select(TokenizedAsset)
        .where(TokenizedAsset.issuance_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    asset = result.scalar_one_or_none()
    if asset is None:
        asset_id, _, _ = idempotency_key.rpartition(":")
        stale = await ledger.get_asset(session, asset_id) if asset_id else None
        if stale is None:
            raise NotFoundError(f"Unknown issuance key '{idempotency_key}'")
        logger.info(
            "Ignoring callback for superseded issuance attempt",
            extra={"asset_id": stale.id, "idempotency_key": idempotency_key},
        )
        return stale

    if asset.status != AssetStatus.ISSUING:
        logger.info(
            "Ignoring duplicate issuance callback",
            extra={"asset_id": asset.id, "status": asset.status.value},
        )
        return asset

    failure = reason or "Issuance failed"

    def record_failure(asset: TokenizedAsset) -> dict[str, Any]:
        return {"status_reason": failure}

    if succeeded:
        opens_now = asset.sale_start is not None and asset.sale_start <= now
        event = AssetEvent.ISSUANCE_CONFIRMED_OPEN if opens_now else AssetEvent.ISSUANCE_CONFIRMED
        changes = None
    else:
        event = AssetEvent.ISSUANCE_FAILED
        changes = record_failure

    asset_id = asset.id
    try:
        async with transaction(session):
            asset = await _apply(
                session,
                asset_id,
                event,
                asset.version,
                changes=changes,
                idempotency_key=idempotency_key,
            )
    except ConcurrentModificationError:
        # A concurrent delivery of the same callback won
        asset = await ledger.require_asset(session, asset_id)
        if asset.status == AssetStatus.ISSUING:
            raise
        return asset
    return asset


# ============================================================================
# Sale window
# ============================================================================


async def open_sale(
    session: AsyncSession, asset_id: str, expected_version: int
) -> TokenizedAsset:
    """Open the primary sale of an issued asset (the scheduler's sale_start step)."""
    async with transaction(session):
        asset = await _apply(session, asset_id, AssetEvent.OPEN_SALE, expected_version)
    return asset


async def _count_investors(session: AsyncSession, asset_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(HoldingRecord)
        .where(HoldingRecord.asset_id == asset_id, HoldingRecord.units_owned > 0)
    )
    return result.scalar_one()


async def close_sale_window(
    session: AsyncSession, asset_id: str, expected_version: int
) -> TokenizedAsset:
    """Close a running primary sale.

    With no units sold the asset is cancelled, otherwise it moves to
    sale_ended. The version check makes this exclusive with purchases,
    which bump the version under the same lock.
    """
    async with transaction(session):
        asset = await ledger.require_asset(session, asset_id)
        if asset.units_sold == 0:
            asset = await _apply(
                session,
                asset_id,
                AssetEvent.CANCEL_SALE,
                expected_version,
                changes=lambda a: {"status_reason": NO_SUBSCRIPTIONS_REASON},
                reason=NO_SUBSCRIPTIONS_REASON,
            )
        else:
            asset = await _apply(session, asset_id, AssetEvent.CLOSE_SALE, expected_version)

        investors = await _count_investors(session, asset_id)
        events.emit(
            session,
            "sale.closed",
            asset_id,
            total_units_sold=asset.units_sold,
            total_investors=investors,
            outcome=asset.status.value,
        )

    logger.info(
        "Sale closed",
        extra={
            "asset_id": asset_id,
            "status": asset.status.value,
            "units_sold": asset.units_sold,
            "investors": investors,
        },
    )
    return asset


async def close_sale_early(
    session: AsyncSession, asset_id: str, expected_version: int
) -> TokenizedAsset:
    """Close a fully subscribed sale before sale_end.

    Raises:
        IllegalTransitionError: If units remain unsold
    """
    asset = await ledger.require_asset(session, asset_id)
    if asset.status == AssetStatus.SALE_ACTIVE and asset.units_sold < asset.total_supply:
        raise IllegalTransitionError(
            f"Sale can only be closed early when fully subscribed "
            f"({asset.units_sold}/{asset.total_supply} units sold)",
            detail={"units_sold": asset.units_sold, "total_supply": asset.total_supply},
        )
    return await close_sale_window(session, asset_id, expected_version)


async def confirm_go_live(
    session: AsyncSession,
    asset_id: str,
    expected_version: int,
    initial_revenue: Decimal | None = None,
    distribution_type: DistributionType = DistributionType.RENTAL_INCOME,
    source_description: str | None = None,
) -> tuple[TokenizedAsset, DistributionEvent | None]:
    """Confirm a closed sale and make the asset active.

    When the first period's revenue is supplied, its distribution is computed
    in the same transaction, with the asset marked distributing meanwhile.
    Either both happen or neither does.

    Returns:
        The active asset and the computed distribution (if any)
    """
    if initial_revenue is not None:
        distribution.validate_revenue(initial_revenue)

    dist_event = None
    async with transaction(session):
        if initial_revenue is None:
            asset = await _apply(session, asset_id, AssetEvent.GO_LIVE, expected_version)
        else:
            asset = await _apply(
                session, asset_id, AssetEvent.BEGIN_DISTRIBUTION, expected_version
            )
            dist_event = await distribution.compute_distribution(
                session,
                asset_id,
                initial_revenue,
                distribution_type=distribution_type,
                source_description=source_description,
            )
            current = await ledger.require_asset(session, asset_id)
            asset = await _apply(session, asset_id, AssetEvent.GO_LIVE, current.version)
    return asset, dist_event


# ============================================================================
# Operations controls
# ============================================================================


async def pause(
    session: AsyncSession,
    asset_id: str,
    expected_version: int,
    reason: str | None = None,
) -> TokenizedAsset:
    """Suspend primary purchases and marketplace trading. Distributions continue."""
    async with transaction(session):
        asset = await _apply(
            session,
            asset_id,
            AssetEvent.PAUSE,
            expected_version,
            changes=lambda a: {"paused_from": a.status, "status_reason": reason},
            reason=reason,
        )
    return asset


async def resume(
    session: AsyncSession, asset_id: str, expected_version: int
) -> TokenizedAsset:
    """Return a paused asset to the status it was paused from."""
    asset = await ledger.require_asset(session, asset_id)
    if asset.paused_from == AssetStatus.SALE_ACTIVE:
        event = AssetEvent.RESUME_SALE
    else:
        event = AssetEvent.RESUME
    async with transaction(session):
        asset = await _apply(
            session,
            asset_id,
            event,
            expected_version,
            changes=lambda a: {"paused_from": None, "status_reason": None},
        )
    return asset


async def archive_asset(
    session: AsyncSession, asset_id: str, expected_version: int
) -> TokenizedAsset:
    """Soft-archive an asset that never sold a unit.

    Raises:
        IllegalTransitionError: If units were sold or the asset is already archived
    """
    async with transaction(session):
        asset = await ledger.require_asset(session, asset_id)
        if asset.archived_at is not None:
            raise IllegalTransitionError(f"Asset '{asset_id}' is already archived")
        _check_not_frozen(asset, "archive")
        _check_version(asset, expected_version)
        if asset.status not in ARCHIVABLE_STATUSES or asset.units_sold > 0:
            raise IllegalTransitionError(
                f"Cannot archive an asset that is {asset.status.value}",
                detail={"status": asset.status.value, "units_sold": asset.units_sold},
            )
        asset = await _cas(session, asset, expected_version, {"archived_at": utcnow()})
        events.emit(session, "asset.archived", asset_id, status=asset.status.value)

    logger.info("Asset archived", extra={"asset_id": asset_id})
    return asset


async def freeze(
    session: AsyncSession, asset_id: str, expected_version: int, reason: str
) -> TokenizedAsset:
    """Freeze an asset by hand, blocking every change until it is unfrozen."""
    async with transaction(session):
        asset = await ledger.require_asset(session, asset_id)
        if asset.is_frozen:
            raise IllegalTransitionError(f"Asset '{asset_id}' is already frozen")
        _check_version(asset, expected_version)
        asset = await _cas(
            session, asset, expected_version, {"is_frozen": True, "frozen_reason": reason}
        )
        events.emit(session, "asset.frozen", asset_id, reason=reason, manual=True)

    logger.warning("Asset frozen by operator", extra={"asset_id": asset_id, "reason": reason})
    return asset


async def unfreeze_asset(
    session: AsyncSession, asset_id: str, expected_version: int
) -> TokenizedAsset:
    """Lift a freeze once the ledger has been reconciled.

    Raises:
        InvariantViolation: If the ledger is still inconsistent
    """
    async with transaction(session):
        asset = await ledger.require_asset(session, asset_id)
        if not asset.is_frozen:
            raise IllegalTransitionError(f"Asset '{asset_id}' is not frozen")
        _check_version(asset, expected_version)
        await ledger.check_supply_invariant(session, asset_id)
        asset = await _cas(
            session, asset, expected_version, {"is_frozen": False, "frozen_reason": None}
        )
        events.emit(session, "asset.unfrozen", asset_id)

    logger.warning("Asset unfrozen", extra={"asset_id": asset_id})
    return asset
