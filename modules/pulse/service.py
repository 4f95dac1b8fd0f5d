"""Wires the runner, invitation job and delivery queue together.

Shared by the HTTP service and the CLI so both run the same pipeline.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass
from functools import partial

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.pulse.backends import RedisQueueBackend
from modules.pulse.invitations import PulseInvitationJob
from modules.pulse.notifier import RedisNotifier
from modules.pulse.queue import DeliveryQueue
from modules.pulse.repository import SqlPulseRepository
from modules.pulse.runner import JobRunner
from modules.pulse.templates import PulseEmailRenderer
from shared.config import Settings
from shared.error_capture import capture_error
from shared.schemas.delivery import JobRecord
from shared.schemas.notifications import EmailAddress

logger = structlog.get_logger()

SERVICE_NAME = "pulse-scheduler"
PULSE_JOB_NAME = "pulse-invitations"


@dataclass
class PulseService:
    settings: Settings
    runner: JobRunner
    queue: DeliveryQueue
    job: PulseInvitationJob

    async def start(self, worker: bool = True) -> None:
        if worker and not await self.queue.start_worker():
            if self.queue.backend is not None and self.queue.notifier is not None:
                self.queue.retry_worker_start()
        self.runner.start()
        logger.info(
            "pulse_service_started",
            scheduler_running=self.runner.running,
            worker_running=self.queue.worker_running,
        )

    async def stop(self) -> None:
        self.runner.stop()
        await self.runner.wait_idle()
        await self.queue.stop_worker()
        logger.info("pulse_service_stopped")


async def _capture_job_error(session_factory, name: str, error: BaseException) -> None:
    await capture_error(
        session_factory,
        service=SERVICE_NAME,
        error_type="job_run",
        error_message=str(error),
        job_name=name,
        stack_trace="".join(traceback.format_exception(error)),
    )


async def _capture_delivery_failure(session_factory, record: JobRecord) -> None:
    await capture_error(
        session_factory,
        service=SERVICE_NAME,
        error_type="delivery_failed",
        error_message=record.last_error or "delivery failed",
        job_name=f"delivery:{record.payload.kind}",
        details={
            "job_id": record.id,
            "attempts": record.attempts_made,
            "payload": record.payload.model_dump(mode="json"),
        },
        tenant_id=getattr(record.payload, "tenant_id", None),
    )


def build_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None,
) -> PulseService:
    """Assemble the pipeline. ``redis=None`` runs without a durable queue."""
    if redis is not None:
        backend = RedisQueueBackend(redis, prefix=settings.queue_prefix)
        notifier = RedisNotifier(
            redis,
            channel=settings.notification_channel,
            sender=EmailAddress(email=settings.email_from, name=settings.email_from_name),
        )
    else:
        logger.warning("delivery_backend_not_configured", hint="Set REDIS_URL to enable delivery")
        backend = None
        notifier = None

    queue = DeliveryQueue(
        backend,
        notifier,
        PulseEmailRenderer(settings),
        settings,
        on_failure=partial(_capture_delivery_failure, session_factory),
    )
    job = PulseInvitationJob(SqlPulseRepository(session_factory), queue, settings)

    runner = JobRunner(
        tz_name=settings.pulse_timezone,
        on_error=partial(_capture_job_error, session_factory),
    )
    runner.register(PULSE_JOB_NAME, settings.pulse_cron_expr, job.run)

    return PulseService(settings=settings, runner=runner, queue=queue, job=job)
