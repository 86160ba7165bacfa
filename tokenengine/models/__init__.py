"""
SQLAlchemy models for the tokenization engine.

This module exports all models and the Base class for easy imports:
    from tokenengine.models import Base, TokenizedAsset, HoldingRecord, ...
"""

from tokenengine.database import Base
from tokenengine.models.asset import AssetStatus, TokenizedAsset
from tokenengine.models.holding import HoldingRecord
from tokenengine.models.listing import ListingStatus, MarketplaceListing
from tokenengine.models.trade import Trade, TradeKind
from tokenengine.models.distribution import (
    DistributionEvent,
    DistributionStatus,
    DistributionType,
    PayoutLine,
    PayoutStatus,
)
from tokenengine.models.event import EngineEvent

__all__ = [
    "Base",
    "AssetStatus",
    "TokenizedAsset",
    "HoldingRecord",
    "ListingStatus",
    "MarketplaceListing",
    "Trade",
    "TradeKind",
    "DistributionEvent",
    "DistributionStatus",
    "DistributionType",
    "PayoutLine",
    "PayoutStatus",
    "EngineEvent",
]
