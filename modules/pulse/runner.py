"""Named cron job registry: one independent asyncio timer per job."""

from __future__ import annotations

import asyncio
import zoneinfo
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import structlog
from croniter import croniter

from shared.schemas.pulse import JobStatus

logger = structlog.get_logger()

Task = Callable[[], Awaitable[Any]]
ErrorHook = Callable[[str, BaseException], Awaitable[None]]

STATE_REGISTERED = "registered"
STATE_RUNNING = "running"
STATE_STOPPED = "stopped"


class JobNotFoundError(LookupError):
    """Raised by trigger() for a name that was never registered."""


@dataclass
class _Job:
    name: str
    schedule: str
    task: Task
    state: str = STATE_REGISTERED
    timer: asyncio.Task | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    runs: int = 0
    failures: int = 0
    last_error: str | None = None


class JobRunner:
    """Drives registered jobs on their cron schedules.

    Each job gets its own timer task, so a slow or failing job never delays
    another job's timer. A firing runs the job in a separate task; the timer
    goes straight back to waiting for the next fire time.

    ``clock`` and ``sleep`` are injectable so tests can drive the timers
    without waiting on the wall clock.
    """

    def __init__(
        self,
        tz_name: str = "UTC",
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_error: ErrorHook | None = None,
    ):
        self._tz = zoneinfo.ZoneInfo(tz_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._on_error = on_error
        self._jobs: dict[str, _Job] = {}
        self._inflight: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, name: str, cron_expr: str, task: Task) -> bool:
        """Register a job. Re-registering an existing name is a no-op."""
        if name in self._jobs:
            logger.warning("job_already_registered", name=name, schedule=cron_expr)
            return False

        self._jobs[name] = _Job(name=name, schedule=cron_expr, task=task)
        logger.info("job_registered", name=name, schedule=cron_expr)
        return True

    def start(self) -> int:
        """Start a timer for every valid, not-yet-running job.

        Must be called from inside a running event loop. Returns the number
        of jobs running afterwards.
        """
        logger.info("scheduler_starting", jobs=len(self._jobs))

        for job in self._jobs.values():
            if job.timer is not None and not job.timer.done():
                continue
            if not croniter.is_valid(job.schedule):
                job.last_error = f"Invalid cron expression: {job.schedule!r}"
                logger.error("job_invalid_schedule", name=job.name, schedule=job.schedule)
                continue

            job.timer = asyncio.create_task(self._timer_loop(job), name=f"timer:{job.name}")
            job.state = STATE_RUNNING
            logger.info("job_started", name=job.name, schedule=job.schedule)

        running = sum(1 for j in self._jobs.values() if j.state == STATE_RUNNING)
        logger.info("scheduler_started", running=running, registered=len(self._jobs))
        return running

    def stop(self) -> None:
        """Cancel all timers. Executions already in flight run to completion."""
        logger.info("scheduler_stopping")
        for job in self._jobs.values():
            if job.timer is not None:
                job.timer.cancel()
                job.timer = None
                job.state = STATE_STOPPED
                job.next_run_at = None
                logger.info("job_stopped", name=job.name)
        logger.info("scheduler_stopped", inflight=len(self._inflight))

    async def wait_idle(self) -> None:
        """Wait for every in-flight execution to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def trigger(self, name: str) -> Any:
        """Run a job immediately, bypassing its timer.

        Unlike timer firings, errors propagate to the caller.
        """
        job = self._jobs.get(name)
        if job is None:
            raise JobNotFoundError(f"Job '{name}' not found")

        logger.info("job_manual_trigger", name=name)
        result = await self._execute(job)
        logger.info("job_manual_trigger_completed", name=name)
        return result

    def get_status(self) -> list[JobStatus]:
        return [
            JobStatus(
                name=job.name,
                schedule=job.schedule,
                state=job.state,
                running=job.state == STATE_RUNNING,
                next_run_at=job.next_run_at,
                last_run_at=job.last_run_at,
                runs=job.runs,
                failures=job.failures,
                last_error=job.last_error,
            )
            for job in self._jobs.values()
        ]

    @property
    def running(self) -> bool:
        return any(job.state == STATE_RUNNING for job in self._jobs.values())

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def next_fire_time(self, cron_expr: str, after: datetime) -> datetime:
        """Next fire time strictly after ``after``, evaluated in the runner's timezone."""
        local = after.astimezone(self._tz)
        return croniter(cron_expr, local).get_next(datetime).astimezone(timezone.utc)

    async def _timer_loop(self, job: _Job) -> None:
        previous: datetime | None = None
        while True:
            now = self._clock()
            # Never fire the same slot twice if the sleep wakes slightly early
            base = max(now, previous) if previous else now
            next_run = self.next_fire_time(job.schedule, base)
            job.next_run_at = next_run

            await self._sleep(max((next_run - now).total_seconds(), 0.0))
            previous = next_run

            execution = asyncio.create_task(self._run_scheduled(job), name=f"job:{job.name}")
            self._inflight.add(execution)
            execution.add_done_callback(self._inflight.discard)

    async def _run_scheduled(self, job: _Job) -> None:
        logger.info("job_running", name=job.name)
        try:
            await self._execute(job)
        except Exception as e:
            # A bad tick must not stop future ticks
            logger.error("job_error", name=job.name, error=str(e), exc_info=True)
            await self._report_error(job.name, e)
        else:
            logger.info("job_completed", name=job.name)

    async def _execute(self, job: _Job) -> Any:
        job.last_run_at = self._clock()
        job.runs += 1
        try:
            return await job.task()
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            raise

    async def _report_error(self, name: str, error: BaseException) -> None:
        if self._on_error is None:
            return
        try:
            await self._on_error(name, error)
        except Exception:
            logger.warning("job_error_hook_failed", name=name, exc_info=True)
