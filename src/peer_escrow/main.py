"""FastAPI application entry point for the peer escrow engine.

Lifecycle:
    1. Startup: Initialize logging, database (tables in dev mode), Redis,
       and the background settlement tick + expiry sweep.
    2. Running: Serve REST API + MCP tools on a single Uvicorn process.
    3. Shutdown: Stop the background task, close database, Redis, storage
       and ledger clients.

The MCP server is mounted at /mcp so automation agents can discover tools
alongside the REST API at /api/v1/*.

Run with:
    uvicorn peer_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

from fastapi import FastAPI

from peer_escrow.config import get_settings
from peer_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info("app.starting", env=settings.app_env, debug=settings.app_debug)

    # 2. Initialize database
    from peer_escrow.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis (idempotency keys are skipped without it)
    from peer_escrow.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Background settlement tick and expiry sweep
    from peer_escrow.api.deps import get_ledger, get_storage
    from peer_escrow.infrastructure.database.engine import get_session_factory
    from peer_escrow.orchestration.escrow_workflow import run_maintenance_loop

    maintenance: asyncio.Task | None = None
    if settings.maintenance_interval_seconds > 0:
        maintenance = asyncio.create_task(
            run_maintenance_loop(
                get_session_factory(), get_ledger(), settings.maintenance_interval_seconds
            )
        )

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    if maintenance is not None:
        maintenance.cancel()
        with suppress(asyncio.CancelledError):
            await maintenance

    await get_storage().aclose()
    await get_ledger().aclose()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Peer Escrow",
        description=(
            "Escrow lifecycle, proof verification and dispute resolution "
            "for peer-to-peer transactions."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from peer_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from peer_escrow.api.routes.escrow import router as escrow_router
    from peer_escrow.api.routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(escrow_router)

    # --- MCP Server (mounted as sub-application) ---
    from peer_escrow.mcp_server.tools import mcp

    app.mount("/mcp", mcp.sse_app())

    return app


# The app instance used by Uvicorn
app = create_app()
