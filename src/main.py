"""FastAPI application for checks-gateway."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.clients.dedup_store import SqlDedupStore
from src.config import settings
from src.database import close_db, init_db
from src.dependencies import Gateway, build_gateway
from src.routes.github_webhook import router as github_webhook_router

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("checks-gateway starting up")
    gateway: Gateway = app.state.gateway
    if isinstance(gateway.dedup_store, SqlDedupStore):
        await init_db()
    yield
    logger.info("checks-gateway shutting down")
    await gateway.close()
    await close_db()


def create_app(gateway: Gateway | None = None) -> FastAPI:
    """Build the application around one gateway (built from settings if omitted)."""
    gateway = gateway or build_gateway(settings)

    app = FastAPI(
        title="Checks Gateway",
        description="Creates and updates GitHub check runs for CI pipelines",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.include_router(github_webhook_router, prefix=gateway.settings.api_prefix)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "checks-gateway"}

    return app


app = create_app()
