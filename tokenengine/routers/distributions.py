"""Revenue distribution endpoints."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tokenengine.database import get_session
from tokenengine.models import DistributionStatus, PayoutStatus
from tokenengine.schemas.distribution import (
    DistributionCreate,
    DistributionDetailResponse,
    DistributionListResponse,
    DistributionResponse,
    PayoutLineResponse,
    PayoutListResponse,
)
from tokenengine.services import distribution as distribution_service
from tokenengine.services import ledger
from tokenengine.settlement import SettlementGateway, get_settlement_gateway

router = APIRouter()


@router.post(
    "/assets/{asset_id}/distributions",
    response_model=DistributionDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Distribute revenue to holders",
)
async def create_distribution(
    asset_id: str,
    data: DistributionCreate,
    session: AsyncSession = Depends(get_session),
    gateway: SettlementGateway = Depends(get_settlement_gateway),
) -> DistributionDetailResponse:
    """Snapshot the holders and split the revenue between them.

    Unless **disburse** is false, the payouts are submitted to settlement
    straight away.
    """
    dist_event = await distribution_service.create_distribution_event(
        session,
        asset_id,
        data.revenue_total,
        distribution_type=data.distribution_type,
        source_description=data.source_description,
    )
    if data.disburse and dist_event.status == DistributionStatus.COMPUTED:
        dist_event = await distribution_service.disburse_distribution(
            session, dist_event.id, gateway
        )
    return DistributionDetailResponse.model_validate(dist_event)


@router.get(
    "/assets/{asset_id}/distributions",
    response_model=DistributionListResponse,
    summary="List an asset's distributions",
)
async def list_distributions(
    asset_id: str,
    status: DistributionStatus | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> DistributionListResponse:
    await ledger.require_asset(session, asset_id)
    events = await distribution_service.list_distributions(session, asset_id, status)
    return DistributionListResponse(
        distributions=[DistributionResponse.model_validate(e) for e in events]
    )


@router.get(
    "/distributions/{event_id}",
    response_model=DistributionDetailResponse,
    summary="Get a distribution with its payout lines",
)
async def get_distribution(
    event_id: str,
    session: AsyncSession = Depends(get_session),
) -> DistributionDetailResponse:
    dist_event = await distribution_service.get_distribution(session, event_id)
    return DistributionDetailResponse.model_validate(dist_event)


@router.get(
    "/holders/{holder_id}/payouts",
    response_model=PayoutListResponse,
    summary="List a holder's payouts",
)
async def list_holder_payouts(
    holder_id: str,
    status: PayoutStatus | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> PayoutListResponse:
    lines = await distribution_service.list_holder_payouts(session, holder_id, status)
    return PayoutListResponse(payouts=[PayoutLineResponse.model_validate(li) for li in lines])
