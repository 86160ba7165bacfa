"""Callbacks from the ledger settlement collaborator."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tokenengine.database import get_session
from tokenengine.schemas.asset import AssetResponse
from tokenengine.schemas.distribution import PayoutLineResponse
from tokenengine.schemas.settlement import SettlementCallback
from tokenengine.services import distribution as distribution_service
from tokenengine.services import lifecycle

router = APIRouter()


@router.post(
    "/settlement/issuance-callbacks",
    response_model=AssetResponse,
    summary="Report the outcome of a mint intent",
)
async def issuance_callback(
    data: SettlementCallback,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    """Safe to deliver more than once: repeats and stale keys change nothing."""
    asset = await lifecycle.record_issuance_result(
        session, data.idempotency_key, data.succeeded, data.reason
    )
    return AssetResponse.model_validate(asset)


@router.post(
    "/settlement/payout-callbacks",
    response_model=PayoutLineResponse,
    summary="Report the outcome of a payout",
)
async def payout_callback(
    data: SettlementCallback,
    session: AsyncSession = Depends(get_session),
) -> PayoutLineResponse:
    """Safe to deliver more than once: repeats change nothing."""
    line = await distribution_service.record_payout_result(
        session, data.idempotency_key, data.succeeded, data.reason
    )
    return PayoutLineResponse.model_validate(line)
