"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the escrow
service built during the application lifespan.
"""

from __future__ import annotations

from fastapi import Request

from multisig_escrow.services.escrow_service import EscrowService


def get_escrow_service(request: Request) -> EscrowService:
    """Provide the process-wide EscrowService built during app startup."""
    return request.app.state.escrow_service
