"""API routers."""

from tokenengine.routers.admin import router as admin_router
from tokenengine.routers.assets import router as assets_router
from tokenengine.routers.distributions import router as distributions_router
from tokenengine.routers.events import router as events_router
from tokenengine.routers.marketplace import router as marketplace_router
from tokenengine.routers.settlement import router as settlement_router

__all__ = [
    "admin_router",
    "assets_router",
    "distributions_router",
    "events_router",
    "marketplace_router",
    "settlement_router",
]
