"""Health check endpoint.

Reports the size of the contract store and, when persistence is enabled,
database connectivity. Used by Docker healthchecks and load balancers.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text

from multisig_escrow.api.deps import get_escrow_service
from multisig_escrow.logging_config import get_logger
from multisig_escrow.schemas.escrow import HealthResponse
from multisig_escrow.services.escrow_service import EscrowService

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(svc: EscrowService = Depends(get_escrow_service)) -> HealthResponse:
    """Check the contract store and, if configured, the database."""
    db_status = "disabled"

    if svc.settings.persistence_enabled:
        try:
            from multisig_escrow.infrastructure.database.engine import _get_engine

            engine = _get_engine(svc.settings)
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            db_status = "healthy"
        except Exception as exc:
            db_status = f"unhealthy: {exc}"
            logger.error("health.db_check_failed", error=str(exc))

    overall = "ok" if db_status in ("healthy", "disabled") else "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        contracts=len(svc.store),
        database=db_status,
    )
