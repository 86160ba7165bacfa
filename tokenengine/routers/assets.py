"""Public asset endpoints: catalogue, primary purchases, holdings and trades."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tokenengine.database import get_session
from tokenengine.models import AssetStatus
from tokenengine.schemas.asset import AssetListResponse, AssetResponse
from tokenengine.schemas.trading import (
    HoldingListResponse,
    HoldingResponse,
    PrimaryPurchaseCreate,
    TradeListResponse,
    TradeResponse,
)
from tokenengine.services import ledger, lifecycle, trading

router = APIRouter()


@router.get(
    "/assets",
    response_model=AssetListResponse,
    summary="List tokenized assets",
)
async def list_assets(
    status: AssetStatus | None = Query(default=None, description="Filter by status"),
    include_archived: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
) -> AssetListResponse:
    assets = await lifecycle.list_assets(session, status, include_archived)
    return AssetListResponse(assets=[AssetResponse.model_validate(a) for a in assets])


@router.get(
    "/assets/{asset_id}",
    response_model=AssetResponse,
    summary="Get one asset",
)
async def get_asset(
    asset_id: str,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await ledger.require_asset(session, asset_id)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/purchases",
    response_model=HoldingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Buy units in the primary sale",
)
async def purchase_units(
    asset_id: str,
    data: PrimaryPurchaseCreate,
    session: AsyncSession = Depends(get_session),
) -> HoldingResponse:
    """Buy units from the unsold supply while the sale window is open.

    Returns the buyer's updated holding.
    """
    holding = await trading.purchase_primary(
        session, asset_id, data.buyer_id, data.units, data.price_per_unit
    )
    return HoldingResponse.model_validate(holding)


@router.get(
    "/assets/{asset_id}/holdings",
    response_model=HoldingListResponse,
    summary="List the holders of an asset",
)
async def list_asset_holdings(
    asset_id: str,
    session: AsyncSession = Depends(get_session),
) -> HoldingListResponse:
    await ledger.require_asset(session, asset_id)
    holdings = await ledger.get_asset_holdings(session, asset_id)
    return HoldingListResponse(
        holdings=[HoldingResponse.model_validate(h) for h in holdings]
    )


@router.get(
    "/holders/{holder_id}/holdings",
    response_model=HoldingListResponse,
    summary="List a holder's positions",
)
async def list_holder_holdings(
    holder_id: str,
    session: AsyncSession = Depends(get_session),
) -> HoldingListResponse:
    holdings = await ledger.get_holder_holdings(session, holder_id)
    return HoldingListResponse(
        holdings=[HoldingResponse.model_validate(h) for h in holdings]
    )


@router.get(
    "/assets/{asset_id}/trades",
    response_model=TradeListResponse,
    summary="Recent trades of an asset",
)
async def list_trades(
    asset_id: str,
    holder_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> TradeListResponse:
    await ledger.require_asset(session, asset_id)
    trades = await trading.list_trades(session, asset_id, holder_id, limit)
    return TradeListResponse(trades=[TradeResponse.model_validate(t) for t in trades])
