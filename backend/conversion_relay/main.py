"""FastAPI application entrypoint.

Hosts the read-only monitoring router and a healthcheck endpoint.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from .models import IntegrationTypeEnum
from .routers import monitoring as monitoring_router
from .telemetry import init_sentry
from .utils.env import load_env_file
from .workers.dispatch_queue import GOOGLE_ADS_QUEUE, META_CAPI_QUEUE, DispatchQueue, get_arq_pool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open one ARQ pool and both dispatch queues for the app's lifetime."""
    pool = await get_arq_pool()
    app.state.queues = {
        IntegrationTypeEnum.meta_capi: DispatchQueue(pool, META_CAPI_QUEUE),
        IntegrationTypeEnum.google_ads: DispatchQueue(pool, GOOGLE_ADS_QUEUE),
    }
    logger.info("[STARTUP] Dispatch queues ready")
    try:
        yield
    finally:
        await pool.close()
        logger.info("[SHUTDOWN] Redis pool closed")


def create_app() -> FastAPI:
    load_env_file()
    init_sentry(component="monitoring-api")

    app = FastAPI(
        title="Conversion Relay",
        description="Conversion event delivery to Meta CAPI and Google Ads.",
        lifespan=lifespan,
    )

    app.include_router(monitoring_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    return app
