"""Operator API endpoints (asset lifecycle, scheduler, payout recovery)."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenengine.database import get_session, get_session_factory
from tokenengine.models import DistributionStatus
from tokenengine.schemas.asset import (
    AssetCreate,
    AssetResponse,
    AssetUpdate,
    FreezeAction,
    GoLiveAction,
    PauseAction,
    ReconcileResponse,
    RejectAction,
    ReviewAction,
    SweepResponse,
    VersionedAction,
)
from tokenengine.schemas.distribution import (
    AbandonAction,
    DistributionDetailResponse,
    PayoutLineResponse,
)
from tokenengine.services import distribution as distribution_service
from tokenengine.services import ledger
from tokenengine.services import lifecycle
from tokenengine.services.scheduler import run_sweep
from tokenengine.settlement import SettlementGateway, get_settlement_gateway

router = APIRouter()


# ============================================================================
# Draft and review
# ============================================================================


@router.post(
    "/assets",
    response_model=AssetResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a tokenized asset",
)
async def create_asset(
    data: AssetCreate,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    """Register a property as a tokenized asset in draft.

    - **total_supply**: Number of units (fixed once issuance is requested)
    - **unit_price**: Primary sale price per unit
    - **sale_start** / **sale_end**: Primary sale window (required to submit)
    """
    asset = await lifecycle.create_tokenized_asset(session, data)
    return AssetResponse.model_validate(asset)


@router.patch(
    "/assets/{asset_id}",
    response_model=AssetResponse,
    summary="Edit a draft asset",
)
async def update_asset(
    asset_id: str,
    data: AssetUpdate,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.update_draft(session, asset_id, data)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/submit",
    response_model=AssetResponse,
    summary="Submit a draft for approval",
)
async def submit_asset(
    asset_id: str,
    data: VersionedAction,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.submit_for_approval(session, asset_id, data.expected_version)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/approve",
    response_model=AssetResponse,
    summary="Approve an asset",
)
async def approve_asset(
    asset_id: str,
    data: ReviewAction,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.approve(
        session, asset_id, data.expected_version, data.reviewer_id
    )
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/reject",
    response_model=AssetResponse,
    summary="Reject an asset back to draft",
)
async def reject_asset(
    asset_id: str,
    data: RejectAction,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.reject(
        session, asset_id, data.expected_version, data.reviewer_id, data.reason
    )
    return AssetResponse.model_validate(asset)


# ============================================================================
# Issuance
# ============================================================================


@router.post(
    "/assets/{asset_id}/request-issuance",
    response_model=AssetResponse,
    summary="Request minting of the asset's units",
)
async def request_issuance(
    asset_id: str,
    data: VersionedAction,
    session: AsyncSession = Depends(get_session),
    gateway: SettlementGateway = Depends(get_settlement_gateway),
) -> AssetResponse:
    """Move an approved asset to issuing and send the mint intent.

    If the intent cannot be delivered the asset stays in issuing and a
    502 is returned; use resend-issuance to try again.
    """
    asset = await lifecycle.request_issuance(
        session, asset_id, data.expected_version, gateway
    )
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/resubmit-issuance",
    response_model=AssetResponse,
    summary="Retry a failed issuance",
)
async def resubmit_issuance(
    asset_id: str,
    data: VersionedAction,
    session: AsyncSession = Depends(get_session),
    gateway: SettlementGateway = Depends(get_settlement_gateway),
) -> AssetResponse:
    asset = await lifecycle.resubmit_issuance(
        session, asset_id, data.expected_version, gateway
    )
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/resend-issuance",
    response_model=AssetResponse,
    summary="Resend the current mint intent",
)
async def resend_issuance(
    asset_id: str,
    session: AsyncSession = Depends(get_session),
    gateway: SettlementGateway = Depends(get_settlement_gateway),
) -> AssetResponse:
    asset = await lifecycle.resend_issuance(session, asset_id, gateway)
    return AssetResponse.model_validate(asset)


# ============================================================================
# Sale and operations
# ============================================================================


@router.post(
    "/assets/{asset_id}/close-sale",
    response_model=AssetResponse,
    summary="Close a fully subscribed sale early",
)
async def close_sale(
    asset_id: str,
    data: VersionedAction,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.close_sale_early(session, asset_id, data.expected_version)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/go-live",
    response_model=AssetResponse,
    summary="Confirm a closed sale and activate the asset",
)
async def go_live(
    asset_id: str,
    data: GoLiveAction,
    session: AsyncSession = Depends(get_session),
    gateway: SettlementGateway = Depends(get_settlement_gateway),
) -> AssetResponse:
    """Activate the asset, optionally distributing the first period's revenue.

    A distribution computed here is submitted for payment right away.
    """
    asset, dist_event = await lifecycle.confirm_go_live(
        session,
        asset_id,
        data.expected_version,
        initial_revenue=data.initial_revenue,
        distribution_type=data.distribution_type,
        source_description=data.source_description,
    )
    if dist_event is not None and dist_event.status == DistributionStatus.COMPUTED:
        await distribution_service.disburse_distribution(session, dist_event.id, gateway)
        asset = await ledger.require_asset(session, asset_id)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/pause",
    response_model=AssetResponse,
    summary="Pause trading on an asset",
)
async def pause_asset(
    asset_id: str,
    data: PauseAction,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.pause(session, asset_id, data.expected_version, data.reason)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/resume",
    response_model=AssetResponse,
    summary="Resume a paused asset",
)
async def resume_asset(
    asset_id: str,
    data: VersionedAction,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.resume(session, asset_id, data.expected_version)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/archive",
    response_model=AssetResponse,
    summary="Archive an asset that never sold units",
)
async def archive_asset(
    asset_id: str,
    data: VersionedAction,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.archive_asset(session, asset_id, data.expected_version)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/freeze",
    response_model=AssetResponse,
    summary="Freeze trading pending reconciliation",
)
async def freeze_asset(
    asset_id: str,
    data: FreezeAction,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.freeze(session, asset_id, data.expected_version, data.reason)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/unfreeze",
    response_model=AssetResponse,
    summary="Lift a freeze after reconciliation",
)
async def unfreeze_asset(
    asset_id: str,
    data: VersionedAction,
    session: AsyncSession = Depends(get_session),
) -> AssetResponse:
    asset = await lifecycle.unfreeze_asset(session, asset_id, data.expected_version)
    return AssetResponse.model_validate(asset)


@router.post(
    "/assets/{asset_id}/reconcile",
    response_model=ReconcileResponse,
    summary="Check an asset's ledger",
)
async def reconcile_asset(
    asset_id: str,
    session: AsyncSession = Depends(get_session),
) -> ReconcileResponse:
    """Verify supply invariants. An inconsistent asset is frozen."""
    violation = await ledger.reconcile(session, asset_id)
    return ReconcileResponse(
        asset_id=asset_id, consistent=violation is None, violation=violation
    )


# ============================================================================
# Scheduler and payouts
# ============================================================================


@router.post(
    "/scheduler/sweep",
    response_model=SweepResponse,
    summary="Run one sale window sweep",
)
async def sweep(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SweepResponse:
    result = await run_sweep(session_factory)
    return SweepResponse(**result.to_dict())


@router.post(
    "/distributions/{event_id}/disburse",
    response_model=DistributionDetailResponse,
    summary="Submit a computed distribution for payment",
)
async def disburse_distribution(
    event_id: str,
    session: AsyncSession = Depends(get_session),
    gateway: SettlementGateway = Depends(get_settlement_gateway),
) -> DistributionDetailResponse:
    dist_event = await distribution_service.disburse_distribution(
        session, event_id, gateway
    )
    return DistributionDetailResponse.model_validate(dist_event)


@router.post(
    "/payouts/{line_id}/retry",
    response_model=PayoutLineResponse,
    summary="Retry a failed payout",
)
async def retry_payout(
    line_id: str,
    session: AsyncSession = Depends(get_session),
    gateway: SettlementGateway = Depends(get_settlement_gateway),
) -> PayoutLineResponse:
    line = await distribution_service.retry_payout_line(session, line_id, gateway)
    return PayoutLineResponse.model_validate(line)


@router.post(
    "/payouts/{line_id}/abandon",
    response_model=PayoutLineResponse,
    summary="Abandon a failed payout",
)
async def abandon_payout(
    line_id: str,
    data: AbandonAction,
    session: AsyncSession = Depends(get_session),
) -> PayoutLineResponse:
    line = await distribution_service.abandon_payout_line(session, line_id, data.reason)
    return PayoutLineResponse.model_validate(line)
