"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.config import settings
from marketplace.middleware import (
    AccessLogMiddleware,
    BodySizeLimitMiddleware,
    SecurityHeadersMiddleware,
)
from marketplace.routers import disputes, escrow, milestones, projects, reconciliation, users, webhooks

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    reconciliation_task = None
    if settings.reconciliation_enabled:
        from marketplace.services.reconciliation import run_reconciliation_worker
        reconciliation_task = asyncio.create_task(run_reconciliation_worker())
        logger.info(
            "Reconciliation worker started (every %ss)", settings.reconciliation_interval_seconds
        )

    yield

    if reconciliation_task is not None:
        reconciliation_task.cancel()
        try:
            await reconciliation_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Freelance Escrow Marketplace",
    description="Projects, milestones and escrowed milestone payments between employers and freelancers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (the last one added runs outermost)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=1_048_576)
app.add_middleware(AccessLogMiddleware)

# Routers
app.include_router(projects.router)
app.include_router(milestones.router)
app.include_router(escrow.router)
app.include_router(disputes.router)
app.include_router(users.router)
app.include_router(reconciliation.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    from marketplace import redis as redis_client

    redis_ok = await redis_client.ping()
    return {"status": "ok", "redis": "ok" if redis_ok else "unavailable"}
