"""Commerce service routers package."""

from services.commerce_service.routers.admin import router as admin_router
from services.commerce_service.routers.checkout import router as checkout_router
from services.commerce_service.routers.loyalty import router as loyalty_router
from services.commerce_service.routers.refunds import router as refunds_router

__all__ = [
    "admin_router",
    "checkout_router",
    "loyalty_router",
    "refunds_router",
]
