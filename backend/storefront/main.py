"""FastAPI application entrypoint.

Configures CORS, includes the tracking routers, and exposes a healthcheck
endpoint. On startup the conversion outbox is connected and swept once so
deliveries parked by a previous process get retried.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from storefront import state
from storefront.deps import get_settings, load_env_file
from storefront.routers import attribution as attribution_router  # UTMify client-conversion proxy
from storefront.routers import payment_webhooks as payment_webhooks_router  # Stripe webhooks
from storefront.routers import tracking_events as tracking_events_router  # First-party CAPI endpoint
from storefront.services.pipeline import build_sweeper
from storefront.telemetry import init_sentry


def create_app() -> FastAPI:
    load_env_file()
    init_sentry()

    app = FastAPI(
        title="Storefront Tracking API",
        description="""
        Conversion tracking for the storefront checkout.

        - First-party Conversions API relay (Meta CAPI)
        - Payment-processor webhooks that record orders and dispatch purchases
        - Attribution (UTMify) relay for browser-built conversions
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS can be a comma-separated list: "https://shop.example,http://localhost:3000"
    allowed_origins = [
        origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()
    ]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tracking_events_router.router)
    app.include_router(payment_webhooks_router.router)
    app.include_router(attribution_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    @app.on_event("startup")
    async def startup_event():
        """Connect the outbox and retry anything parked by a previous run."""
        state.init_state()
        if state.redis_client is None:
            logging.warning("[STARTUP] Redis unavailable - outbox is in-memory for this process")
            logging.warning("[STARTUP] Check REDIS_URL environment variable - currently: " + str(settings.REDIS_URL))

        sweeper = build_sweeper(settings, state.get_server_dispatcher())
        report = await sweeper.sweep()
        logging.info(
            f"[STARTUP] Outbox sweep: delivered={report.delivered} retried={report.retried} "
            f"evicted={report.evicted} dropped={report.dropped} errors={report.errors}"
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Let in-flight dispatches finish before the process exits."""
        if state.server_dispatcher is not None:
            await state.server_dispatcher.drain()

    return app


app = create_app()
