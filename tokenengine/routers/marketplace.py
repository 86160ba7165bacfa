"""Marketplace endpoints: resale listings between holders."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tokenengine.database import get_session
from tokenengine.models import ListingStatus
from tokenengine.schemas.trading import (
    HoldingResponse,
    ListingCancel,
    ListingCreate,
    ListingListResponse,
    ListingPurchase,
    ListingResponse,
)
from tokenengine.services import trading

router = APIRouter()


@router.post(
    "/assets/{asset_id}/listings",
    response_model=ListingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="List owned units for resale",
)
async def create_listing(
    asset_id: str,
    data: ListingCreate,
    session: AsyncSession = Depends(get_session),
) -> ListingResponse:
    """Offer units for resale. The units are reserved until the listing closes.

    - **units**: Must not exceed the seller's unreserved units
    - **expires_at**: Optional; defaults to the configured lifetime
    """
    listing = await trading.create_listing(
        session,
        asset_id,
        data.seller_id,
        data.units,
        data.price_per_unit,
        expires_at=data.expires_at,
    )
    return ListingResponse.model_validate(listing)


@router.get(
    "/listings",
    response_model=ListingListResponse,
    summary="Browse listings",
)
async def list_listings(
    asset_id: str | None = Query(default=None),
    status: ListingStatus | None = Query(default=ListingStatus.ACTIVE),
    seller_id: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> ListingListResponse:
    listings = await trading.list_listings(session, asset_id, status, seller_id)
    return ListingListResponse(
        listings=[ListingResponse.model_validate(li) for li in listings]
    )


@router.get(
    "/listings/{listing_id}",
    response_model=ListingResponse,
    summary="Get one listing",
)
async def get_listing(
    listing_id: str,
    session: AsyncSession = Depends(get_session),
) -> ListingResponse:
    listing = await trading.get_listing(session, listing_id)
    return ListingResponse.model_validate(listing)


@router.post(
    "/listings/{listing_id}/purchase",
    response_model=HoldingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Buy units from a listing",
)
async def purchase_listing(
    listing_id: str,
    data: ListingPurchase,
    session: AsyncSession = Depends(get_session),
) -> HoldingResponse:
    """Buy some or all of a listing's units at its price. Partial fills are allowed.

    Returns the buyer's updated holding. The trade is listed under the asset's trades.
    """
    holding = await trading.purchase_listing(
        session, listing_id, data.buyer_id, data.units
    )
    return HoldingResponse.model_validate(holding)


@router.post(
    "/listings/{listing_id}/cancel",
    response_model=ListingResponse,
    summary="Withdraw a listing",
)
async def cancel_listing(
    listing_id: str,
    data: ListingCancel,
    session: AsyncSession = Depends(get_session),
) -> ListingResponse:
    listing = await trading.cancel_listing(session, listing_id, data.seller_id)
    return ListingResponse.model_validate(listing)
