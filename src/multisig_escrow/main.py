"""FastAPI application entry point for the multisig escrow service.

Lifecycle:
    1. Startup: Initialize logging, build the EscrowService, load persisted
       state and seed demo contracts (if configured).
    2. Running: Serve REST API + MCP tools on a single Uvicorn process.
    3. Shutdown: Cancel payment watches, flush state, close the database.

The MCP server is mounted at /mcp so agent clients can discover tools
alongside the REST API at /api/v1/*.

Run with:
    uv run uvicorn multisig_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from multisig_escrow.config import Settings, get_settings
from multisig_escrow.logging_config import get_logger, setup_logging
from multisig_escrow.services.escrow_service import EscrowService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


def _lifespan(settings: Settings):  # noqa: ANN202
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle."""
        # 1. Setup structured logging
        setup_logging(
            log_level=settings.app_log_level,
            json_logs=not settings.is_development,
        )
        logger = get_logger(__name__)
        logger.info("app.starting", env=settings.app_env, debug=settings.app_debug)

        # 2. Build the service and restore state
        from multisig_escrow.mcp_server.tools import bind_service

        service = EscrowService.build(settings)
        await service.startup()
        app.state.escrow_service = service
        bind_service(service)

        logger.info("app.started", host=settings.app_host, port=settings.app_port)

        yield

        # Shutdown
        logger.info("app.shutting_down")
        bind_service(None)
        await service.shutdown()
        logger.info("app.stopped")

    return lifespan


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Multisig Escrow",
        description=(
            "Non-custodial 2-of-3 multisig escrow for marketplace orders. "
            "Funds move only with two of three signatures."
        ),
        version="0.1.0",
        lifespan=_lifespan(settings),
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from multisig_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from multisig_escrow.api.routes.escrow import contracts_router, orders_router
    from multisig_escrow.api.routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(orders_router)
    app.include_router(contracts_router)

    # --- MCP Server (mounted as sub-application) ---
    from multisig_escrow.mcp_server.tools import mcp

    mcp_app = mcp.sse_app()
    app.mount("/mcp", mcp_app)

    return app


# The app instance used by Uvicorn
app = create_app()
