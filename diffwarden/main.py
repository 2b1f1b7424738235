"""FastAPI application entry point.

Start with:
    uvicorn diffwarden.main:app --reload

The app skeleton wires:
- Lifespan events building the dispatcher and its collaborators
- A periodic sweeper purging expired dedup cache entries
- CORS middleware configured
- Router includes for webhooks, health, and admin
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from diffwarden.config import APP_VERSION, get_settings
from diffwarden.core.dedup_cache import DedupCache
from diffwarden.services import build_services

# match statements and PEP 604 unions throughout.
assert sys.version_info >= (3, 11), "DiffWarden requires Python 3.11+"

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Background maintenance
# ---------------------------------------------------------------------------

async def sweep_periodically(cache: DedupCache, interval_seconds: float) -> None:
    """Purge expired dedup entries every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        removed = cache.sweep_expired()
        logger.debug("Dedup sweep finished", extra={"removed": removed})


# ---------------------------------------------------------------------------
#  Lifespan: startup / shutdown
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize and tear down shared resources."""
    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("DiffWarden starting up")

    services = build_services(settings)
    app.state.services = services
    sweeper = asyncio.create_task(
        sweep_periodically(services.cache, settings.dedup_sweep_interval_seconds)
    )

    yield

    # Shutdown
    logger.info("DiffWarden shutting down")
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await services.aclose()


# ---------------------------------------------------------------------------
#  FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DiffWarden",
    description="AI code review for Bitbucket Cloud and GitHub webhooks",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["POST", "GET", "DELETE"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
#  Router Registration
# ---------------------------------------------------------------------------

# Import routers lazily to avoid circular-import issues.
from diffwarden.api.webhooks import router as webhook_router  # noqa: E402
from diffwarden.api.health import router as health_router  # noqa: E402
from diffwarden.api.admin import router as admin_router  # noqa: E402

app.include_router(webhook_router)
app.include_router(health_router)
app.include_router(admin_router, prefix="/admin")
