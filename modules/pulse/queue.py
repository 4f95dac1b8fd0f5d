"""Delivery queue: producer API, worker pool, retry/backoff and metrics.

Producers call ``enqueue`` and return immediately; nothing is sent inline.
Consumers claim jobs from a ``QueueBackend``, render invitations, hand the
message to a ``Notifier`` and record the outcome. Delivery is at-least-once:
a job whose worker dies mid-send is recovered as stalled and sent again.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import structlog

from modules.pulse.backends import QueueBackend
from modules.pulse.notifier import Notifier
from modules.pulse.templates import Renderer
from shared.config import Settings, get_settings
from shared.schemas.delivery import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_DELAYED,
    JOB_FAILED,
    JOB_WAITING,
    DirectPayload,
    InvitationPayload,
    JobHandle,
    JobRecord,
    QueueMetrics,
    RecentJobs,
)
from shared.schemas.notifications import EmailAddress, OutboundMessage, SendResult

logger = structlog.get_logger()

FailureHook = Callable[[JobRecord], Awaitable[None]]


class DeliveryError(Exception):
    """A delivery attempt failed; the job may still be retried."""


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Delay before the retry that follows failed attempt number ``attempt`` (1-based)."""
    return base_seconds * 2 ** (attempt - 1)


class DeliveryQueue:
    """Durable, retrying delivery of invitation and direct messages."""

    def __init__(
        self,
        backend: QueueBackend | None,
        notifier: Notifier | None,
        renderer: Renderer | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        on_failure: FailureHook | None = None,
    ):
        self.backend = backend
        self.notifier = notifier
        self.renderer = renderer
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._on_failure = on_failure
        # Jobs accepted while no backend was reachable, oldest first
        self._pending: list[JobRecord] = []
        self._consumers: list[asyncio.Task] = []
        self._maintenance: asyncio.Task | None = None
        self._starter: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def enqueue(self, payload: InvitationPayload | DirectPayload) -> JobHandle:
        """Accept a job for asynchronous delivery. Never raises on backend outage."""
        record = JobRecord(
            id=uuid.uuid4().hex,
            payload=payload,
            max_attempts=self.settings.delivery_attempts,
            created_at=self._clock(),
        )

        if self.backend is None:
            return self._buffer(record, reason="no_backend")

        try:
            await self.backend.add(record)
        except Exception as e:
            return self._buffer(record, reason="backend_error", error=str(e))

        logger.info("delivery_job_enqueued", job_id=record.id, kind=payload.kind)
        return JobHandle(id=record.id, kind=payload.kind)

    async def enqueue_invitation(self, **fields) -> JobHandle:
        return await self.enqueue(InvitationPayload(**fields))

    async def enqueue_direct(
        self,
        to: str | EmailAddress | list[EmailAddress],
        subject: str,
        html: str,
        text: str | None = None,
    ) -> JobHandle:
        """Queue an already rendered email."""
        if isinstance(to, str):
            to = [EmailAddress(email=to)]
        elif isinstance(to, EmailAddress):
            to = [to]
        message = OutboundMessage(to=to, subject=subject, html=html, text=text)
        return await self.enqueue(DirectPayload(message=message))

    def _buffer(self, record: JobRecord, reason: str, error: str | None = None) -> JobHandle:
        self._pending.append(record)
        logger.warning(
            "delivery_job_buffered",
            job_id=record.id,
            kind=record.payload.kind,
            reason=reason,
            error=error,
            buffered=len(self._pending),
        )
        return JobHandle(id=record.id, kind=record.payload.kind, buffered=True)

    @property
    def buffered(self) -> int:
        return len(self._pending)

    async def attach_backend(self, backend: QueueBackend) -> int:
        """Use ``backend`` from now on and move buffered jobs into it."""
        self.backend = backend
        logger.info("delivery_backend_attached", backend=backend.name)
        return await self.flush_pending()

    async def flush_pending(self) -> int:
        """Push buffered jobs to the backend. Stops at the first error."""
        if self.backend is None or not self._pending:
            return 0

        flushed = 0
        while self._pending:
            record = self._pending[0]
            try:
                await self.backend.add(record)
            except Exception as e:
                logger.warning(
                    "delivery_buffer_flush_failed",
                    job_id=record.id,
                    remaining=len(self._pending),
                    error=str(e),
                )
                break
            self._pending.pop(0)
            flushed += 1

        if flushed:
            logger.info("delivery_buffer_flushed", flushed=flushed, remaining=len(self._pending))
        return flushed

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    @property
    def worker_running(self) -> bool:
        return any(not task.done() for task in self._consumers)

    async def start_worker(self) -> bool:
        """Launch the consumer tasks. Returns False when delivery is unavailable."""
        if self.worker_running:
            logger.info("delivery_worker_already_running", consumers=len(self._consumers))
            return True
        if self.backend is None:
            logger.warning("delivery_worker_not_started", reason="no_backend")
            return False
        if self.notifier is None:
            logger.warning("delivery_worker_not_started", reason="no_notifier")
            return False
        if not await self.backend.ping():
            logger.warning(
                "delivery_worker_not_started",
                reason="backend_unreachable",
                backend=self.backend.name,
            )
            return False

        await self.flush_pending()

        self._stopping.clear()
        concurrency = max(1, self.settings.delivery_concurrency)
        self._consumers = [
            asyncio.create_task(self._consume(i), name=f"delivery-consumer:{i}")
            for i in range(concurrency)
        ]
        self._maintenance = asyncio.create_task(self._maintain(), name="delivery-maintenance")
        logger.info(
            "delivery_worker_started",
            backend=self.backend.name,
            concurrency=concurrency,
        )
        return True

    def retry_worker_start(self, interval: float | None = None) -> None:
        """Keep calling ``start_worker`` in the background until it succeeds."""
        if self._starter is not None and not self._starter.done():
            return
        self._stopping.clear()
        interval = interval or self.settings.delivery_worker_retry_seconds
        self._starter = asyncio.create_task(
            self._retry_start(interval), name="delivery-worker-starter"
        )
        logger.info("delivery_worker_retry_scheduled", interval=interval)

    async def _retry_start(self, interval: float) -> None:
        attempt = 0
        while True:
            await self._idle(interval)
            if self._stopping.is_set():
                return
            attempt += 1
            try:
                if await self.start_worker():
                    logger.info("delivery_worker_recovered", attempts=attempt)
                    return
            except Exception as e:
                logger.warning("delivery_worker_start_failed", attempt=attempt, error=str(e))

    async def stop_worker(self, timeout: float = 10.0) -> None:
        """Stop consumers after their current job; cancel whatever is still busy."""
        if self._starter is not None:
            starter, self._starter = self._starter, None
            starter.cancel()
            await asyncio.gather(starter, return_exceptions=True)
        if not self._consumers and self._maintenance is None:
            return

        self._stopping.set()
        tasks = list(self._consumers)
        if self._maintenance is not None:
            tasks.append(self._maintenance)

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._consumers = []
        self._maintenance = None
        logger.info("delivery_worker_stopped", cancelled=len(pending))

    async def _idle(self, timeout: float | None = None) -> None:
        try:
            await asyncio.wait_for(
                self._stopping.wait(),
                timeout=timeout or self.settings.delivery_poll_interval_seconds,
            )
        except asyncio.TimeoutError:
            pass

    async def _consume(self, consumer_id: int) -> None:
        logger.debug("delivery_consumer_started", consumer=consumer_id)
        while not self._stopping.is_set():
            try:
                record = await self.run_once(promote=False)
            except Exception as e:
                logger.error("delivery_consumer_error", consumer=consumer_id, error=str(e))
                record = None
            if record is None:
                await self._idle()

    async def _maintain(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.maintenance()
            except Exception as e:
                logger.error("delivery_maintenance_error", error=str(e))
            await self._idle()

    async def maintenance(self) -> None:
        """Flush buffered jobs and promote due retries.

        Also returns jobs abandoned by dead workers to waiting.
        """
        if self._pending:
            await self.flush_pending()
        now = self._clock()
        promoted = await self.backend.promote_delayed(now)
        if promoted:
            logger.debug("delivery_jobs_promoted", count=promoted)
        stalled_before = now - timedelta(seconds=self.settings.delivery_stalled_seconds)
        recovered = await self.backend.recover_stalled(stalled_before, now)
        if recovered:
            logger.warning("delivery_stalled_jobs_recovered", count=recovered)

    async def run_once(self, promote: bool = True) -> JobRecord | None:
        """Claim and process a single job. Returns the processed record, if any."""
        if self.backend is None:
            return None
        if promote:
            await self.backend.promote_delayed(self._clock())
        record = await self.backend.claim(self._clock())
        if record is None:
            return None
        return await self.process(record)

    # ------------------------------------------------------------------
    # Handler
    # ------------------------------------------------------------------

    async def process(self, record: JobRecord) -> JobRecord:
        """Run one delivery attempt for a claimed job and record the outcome."""
        record.attempts_made += 1
        logger.info(
            "delivery_job_processing",
            job_id=record.id,
            kind=record.payload.kind,
            attempt=record.attempts_made,
            max_attempts=record.max_attempts,
        )

        try:
            result = await self._deliver(record)
        except Exception as e:
            return await self._handle_failure(record, e)

        now = self._clock()
        record.state = JOB_COMPLETED
        record.result = result.model_dump()
        record.last_error = None
        record.finished_at = now
        await self.backend.complete(record)
        await self.backend.prune(
            now,
            completed_age=self.settings.completed_retention_seconds,
            completed_count=self.settings.completed_retention_count,
            failed_age=self.settings.failed_retention_seconds,
        )
        logger.info(
            "delivery_job_completed",
            job_id=record.id,
            kind=record.payload.kind,
            attempts=record.attempts_made,
            message_id=result.message_id,
        )
        return record

    def _message_for(self, record: JobRecord) -> OutboundMessage:
        payload = record.payload
        if isinstance(payload, InvitationPayload):
            if self.renderer is None:
                raise DeliveryError("No renderer configured for invitation jobs")
            message = self.renderer.render_invitation(payload)
        elif isinstance(payload, DirectPayload):
            message = payload.message
        else:
            raise DeliveryError(f"Unknown delivery job kind: {getattr(payload, 'kind', None)!r}")

        if message.idempotency_key is None:
            message = message.model_copy(update={"idempotency_key": record.id})
        return message

    async def _deliver(self, record: JobRecord) -> SendResult:
        if self.notifier is None:
            raise DeliveryError("No notifier configured")

        message = self._message_for(record)
        result = await self.notifier.send(message)
        if not result.success:
            raise DeliveryError(f"Failed to send message: {result.error or 'unknown error'}")
        return result

    async def _handle_failure(self, record: JobRecord, error: Exception) -> JobRecord:
        now = self._clock()
        record.last_error = str(error)

        if record.attempts_made < record.max_attempts:
            delay = backoff_delay(record.attempts_made, self.settings.delivery_backoff_seconds)
            record.backoff_delays.append(delay)
            record.state = JOB_DELAYED
            record.claimed_at = None
            record.next_attempt_at = now + timedelta(seconds=delay)
            await self.backend.retry_later(record)
            logger.warning(
                "delivery_job_retry_scheduled",
                job_id=record.id,
                kind=record.payload.kind,
                attempt=record.attempts_made,
                delay_seconds=delay,
                error=record.last_error,
            )
            return record

        record.state = JOB_FAILED
        record.finished_at = now
        await self.backend.fail(record)
        logger.error(
            "delivery_job_failed",
            job_id=record.id,
            kind=record.payload.kind,
            attempts=record.attempts_made,
            error=record.last_error,
        )
        if self._on_failure is not None:
            try:
                await self._on_failure(record)
            except Exception:
                logger.warning("delivery_failure_hook_failed", job_id=record.id, exc_info=True)
        return record

    # ------------------------------------------------------------------
    # Operator API
    # ------------------------------------------------------------------

    async def requeue(self, job_id: str) -> JobRecord | None:
        """Move a failed job back to waiting with a fresh attempt budget."""
        if self.backend is None:
            logger.warning("delivery_requeue_unavailable", job_id=job_id, reason="no_backend")
            return None
        record = await self.backend.requeue(job_id)
        if record is None:
            logger.warning("delivery_requeue_not_failed", job_id=job_id)
            return None
        logger.info("delivery_job_requeued", job_id=job_id, kind=record.payload.kind)
        return record

    async def get_metrics(self) -> QueueMetrics:
        if self.backend is None:
            metrics = QueueMetrics()
        else:
            metrics = await self.backend.counts()
        metrics.waiting += len(self._pending)
        metrics.total += len(self._pending)
        return metrics

    async def get_recent_jobs(self, count: int = 10) -> RecentJobs:
        """Most recent jobs per state, newest first."""
        recent = RecentJobs()
        if self.backend is not None:
            recent.completed = await self.backend.recent(JOB_COMPLETED, count)
            recent.failed = await self.backend.recent(JOB_FAILED, count)
            recent.active = await self.backend.recent(JOB_ACTIVE, count)
            recent.waiting = await self.backend.recent(JOB_WAITING, count)
        if self._pending and count > 0:
            buffered = list(reversed(self._pending))
            recent.waiting = (buffered + recent.waiting)[:count]
        return recent
