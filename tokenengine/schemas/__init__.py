"""Pydantic schemas for request/response validation."""

from tokenengine.schemas.asset import (
    AssetCreate,
    AssetListResponse,
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
    DistributionCreate,
    DistributionDetailResponse,
    DistributionListResponse,
    DistributionResponse,
    PayoutLineResponse,
    PayoutListResponse,
)
from tokenengine.schemas.events import (
    EventAck,
    EventAckResponse,
    EventListResponse,
    EventResponse,
)
from tokenengine.schemas.settlement import SettlementCallback
from tokenengine.schemas.trading import (
    HoldingListResponse,
    HoldingResponse,
    ListingCancel,
    ListingCreate,
    ListingListResponse,
    ListingPurchase,
    ListingResponse,
    PrimaryPurchaseCreate,
    TradeListResponse,
    TradeResponse,
)

__all__ = [
    # Assets
    "AssetCreate",
    "AssetListResponse",
    "AssetResponse",
    "AssetUpdate",
    "FreezeAction",
    "GoLiveAction",
    "PauseAction",
    "ReconcileResponse",
    "RejectAction",
    "ReviewAction",
    "SweepResponse",
    "VersionedAction",
    # Distributions
    "AbandonAction",
    "DistributionCreate",
    "DistributionDetailResponse",
    "DistributionListResponse",
    "DistributionResponse",
    "PayoutLineResponse",
    "PayoutListResponse",
    # Events
    "EventAck",
    "EventAckResponse",
    "EventListResponse",
    "EventResponse",
    # Settlement
    "SettlementCallback",
    # Trading
    "HoldingListResponse",
    "HoldingResponse",
    "ListingCancel",
    "ListingCreate",
    "ListingListResponse",
    "ListingPurchase",
    "ListingResponse",
    "PrimaryPurchaseCreate",
    "TradeListResponse",
    "TradeResponse",
]
