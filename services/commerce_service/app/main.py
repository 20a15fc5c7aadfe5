"""FastAPI application for the Commerce Service."""

from fastapi import FastAPI
from libs.common.middleware import add_observability_middleware
from services.commerce_service.routers import (
    admin_router,
    checkout_router,
    loyalty_router,
    refunds_router,
)


def create_app() -> FastAPI:
    """Create and configure the Commerce Service FastAPI app."""
    app = FastAPI(
        title="Commerce Ledger Service",
        version="0.1.0",
        description="Orders, discounts, refunds, inventory and loyalty points.",
    )

    # Request tracing + CommerceError responses
    add_observability_middleware(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "commerce"}

    app.include_router(checkout_router, prefix="/store")
    app.include_router(refunds_router, prefix="/store")
    app.include_router(loyalty_router, prefix="/store")

    app.include_router(admin_router, prefix="/admin/store")

    return app


app = create_app()
