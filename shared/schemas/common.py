"""Common schemas used across services."""

from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response for the pulse service."""

    status: str = "ok"
    scheduler_running: bool = False
    worker_running: bool = False
    delivery_backend: str | None = None
