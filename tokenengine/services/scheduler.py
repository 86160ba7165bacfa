"""Sale window scheduler.

One sweep opens the sales whose window has started, closes the sales
whose window has ended and expires stale marketplace listings. Each
asset is handled in its own session and transaction, so a sweep that
stops halfway leaves every asset either fully moved or untouched, and
running it twice changes nothing the second time.

Losing a race against an operator or a concurrent sweep is normal and is
counted as skipped.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenengine import telemetry
from tokenengine.database import to_naive_utc, utcnow
from tokenengine.errors import (
    AssetFrozenError,
    ConcurrentModificationError,
    IllegalTransitionError,
)
from tokenengine.models import AssetStatus, TokenizedAsset
from tokenengine.services import lifecycle, trading

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Counts of what one sweep did."""

    activated: int = 0
    closed: int = 0
    cancelled: int = 0
    expired_listings: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


async def _due(
    session: AsyncSession, status: AssetStatus, column, now: datetime
) -> list[tuple[str, int]]:
    result = await session.execute(
        select(TokenizedAsset.id, TokenizedAsset.version)
        .where(
            TokenizedAsset.status == status,
            TokenizedAsset.archived_at.is_(None),
            column.is_not(None),
            column <= now,
        )
        .order_by(column, TokenizedAsset.id)
    )
    return [(asset_id, version) for asset_id, version in result.all()]


async def run_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
) -> SweepResult:
    """Run one scheduler pass.

    Args:
        session_factory: Creates one session per unit of work
        now: Sweep time (defaults to utcnow)

    Returns:
        SweepResult with per-outcome counts
    """
    now = to_naive_utc(now) or utcnow()
    result = SweepResult()

    async with session_factory() as session:
        to_open = await _due(session, AssetStatus.ISSUED, TokenizedAsset.sale_start, now)
        to_close = await _due(
            session, AssetStatus.SALE_ACTIVE, TokenizedAsset.sale_end, now
        )

    for asset_id, version in to_open:
        async with session_factory() as session:
            try:
                await lifecycle.open_sale(session, asset_id, version)
            except (
                AssetFrozenError,
                ConcurrentModificationError,
                IllegalTransitionError,
            ) as e:
                result.skipped += 1
                logger.info(
                    "Sweep skipped asset", extra={"asset_id": asset_id, "reason": e.code}
                )
                continue
        result.activated += 1

    for asset_id, version in to_close:
        async with session_factory() as session:
            try:
                asset = await lifecycle.close_sale_window(session, asset_id, version)
            except (
                AssetFrozenError,
                ConcurrentModificationError,
                IllegalTransitionError,
            ) as e:
                result.skipped += 1
                logger.info(
                    "Sweep skipped asset", extra={"asset_id": asset_id, "reason": e.code}
                )
                continue
        if asset.status == AssetStatus.CANCELLED:
            result.cancelled += 1
        else:
            result.closed += 1

    async with session_factory() as session:
        expired, skipped = await trading.expire_listings(session, now)
    result.expired_listings = expired
    result.skipped += skipped

    for outcome, count in result.to_dict().items():
        telemetry.record_sweep(outcome, count)
    logger.info("Sweep finished", extra={"now": now.isoformat(), **result.to_dict()})
    return result


async def run_periodically(
    session_factory: async_sessionmaker[AsyncSession], interval: float
) -> None:
    """Run sweeps forever, `interval` seconds apart, until cancelled."""
    logger.info("Scheduler started", extra={"interval_seconds": interval})
    while True:
        try:
            await run_sweep(session_factory)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Sweep failed")
        await asyncio.sleep(interval)
