"""Async helper for persisting failures to the error_logs table.

Usage (fire-and-forget from async code)::

    import asyncio
    from shared.error_capture import capture_error

    asyncio.create_task(capture_error(
        session_factory,
        service="pulse-scheduler",
        error_type="job_run",
        error_message=str(e),
        job_name="pulse-invitations",
    ))

The function is wrapped in a broad try/except so it can never propagate
exceptions to the caller. Error capturing must not break normal flow.
"""

from __future__ import annotations

import re

import structlog

from shared.models.error_log import ErrorLog

logger = structlog.get_logger()

# Keys whose values should be redacted before storing in the DB.
_SECRET_KEY_PATTERN = re.compile(
    r"(token|key|secret|password|credential|auth)",
    re.IGNORECASE,
)


def _sanitize_details(details: dict | None) -> dict | None:
    """Strip secret-looking values from a dict before persisting.

    Invitation payloads carry single-use response tokens, so those never
    reach the error log.
    """
    if not details:
        return details
    sanitized = {}
    for k, v in details.items():
        if _SECRET_KEY_PATTERN.search(k):
            sanitized[k] = "[REDACTED]"
        elif isinstance(v, dict):
            sanitized[k] = _sanitize_details(v)
        else:
            sanitized[k] = v
    return sanitized


async def capture_error(
    session_factory,
    *,
    service: str,
    error_type: str,
    error_message: str,
    job_name: str | None = None,
    details: dict | None = None,
    stack_trace: str | None = None,
    tenant_id: str | None = None,
) -> None:
    """Persist an error to the error_logs table.

    Safe to call with asyncio.create_task(); never raises.
    """
    try:
        async with session_factory() as session:
            record = ErrorLog(
                service=service,
                error_type=error_type,
                error_message=error_message,
                job_name=job_name,
                details=_sanitize_details(details),
                stack_trace=stack_trace,
                tenant_id=tenant_id,
            )
            session.add(record)
            await session.commit()

        logger.debug(
            "error_captured",
            service=service,
            error_type=error_type,
            job_name=job_name,
        )
    except Exception:
        # Never let error capturing crash the caller.
        logger.warning("error_capture_failed", exc_info=True)
