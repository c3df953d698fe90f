"""FastAPI dependencies for the dispatch API.

This module provides reusable FastAPI dependencies for:
- Settings and engine access from app.state
- Bearer token checks for the admin and cron endpoints
"""

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from atelier.core.config import Settings
from atelier.engine import Engine


def get_settings(request: Request) -> Settings:
    """Get application settings from app state.

    Returns:
        Settings instance loaded during app lifespan
    """
    return request.app.state.settings


def get_engine(request: Request) -> Engine:
    """Get the dispatch engine from app state.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        Engine started by the app lifespan

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(engine: Engine = Depends(get_engine)):
        ...     return await engine.status.queue_stats()
    """
    return request.app.state.engine


def _check_bearer(authorization: str | None, secret: str, name: str) -> None:
    """Compare an Authorization header against a configured secret.

    Raises:
        HTTPException: 503 if the secret is not configured, 401 if the token is missing
            or does not match
    """
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} is not configured",
        )
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token"
        )
    # Constant-time comparison
    token = authorization.removeprefix("Bearer ").strip()
    if not hmac.compare_digest(token.encode(), secret.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


async def require_admin(
    authorization: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Require the ADMIN_SECRET bearer token."""
    _check_bearer(authorization, settings.admin_secret, "ADMIN_SECRET")


async def require_cron(
    authorization: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Require the CRON_SECRET bearer token (external scheduler)."""
    _check_bearer(authorization, settings.cron_secret, "CRON_SECRET")
