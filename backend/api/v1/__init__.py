"""
API v1 Routers

Public data routes of the ElPortal Data API.
"""

from api.v1.electricity_prices import router as electricity_prices_router
from api.v1.health import router as health_router
from api.v1.pricelists import router as pricelists_router
from api.v1.tariffs import router as tariffs_router

__all__ = [
    "electricity_prices_router",
    "health_router",
    "pricelists_router",
    "tariffs_router",
]
