"""Service-token authentication for the operator endpoints.

Operator tooling (dashboards, the admin API, CI smoke checks) calls the
pulse service with ``Authorization: Bearer <SERVICE_AUTH_TOKEN>``.

Usage::

    from shared.auth import require_service_auth

    @app.post("/jobs/{name}/trigger")
    async def trigger(name: str, _=Depends(require_service_auth)):
        ...
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request

from shared.config import get_settings

logger = structlog.get_logger()


async def require_service_auth(request: Request) -> None:
    """FastAPI dependency that validates the service auth token.

    Raises 401 if the token is missing or incorrect.
    Skips validation when ``service_auth_token`` is empty (dev mode).
    """
    expected = get_settings().service_auth_token
    if not expected:
        logger.warning(
            "service_auth_disabled",
            path=request.url.path,
            hint="Set SERVICE_AUTH_TOKEN in .env for production",
        )
        return

    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing service auth token")

    token = auth_header[7:]
    if not hmac.compare_digest(token, expected):
        logger.warning(
            "service_auth_failed",
            path=request.url.path,
            remote=request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Invalid service auth token")
