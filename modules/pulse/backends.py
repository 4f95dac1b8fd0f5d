"""Storage backends for the delivery queue.

A backend owns job state transitions; the queue decides *which*
transition happens. Every method takes and returns ``JobRecord`` values,
never shared references, so a backend can live in another process.

Redis layout (``prefix`` defaults to ``pulse:delivery``)::

    {prefix}:job:{id}     JSON JobRecord
    {prefix}:waiting      LIST   new/retryable ids (LPUSH, claimed from the right)
    {prefix}:active       LIST   ids held by a worker
    {prefix}:delayed      ZSET   ids scored by next attempt time
    {prefix}:completed    ZSET   ids scored by finish time
    {prefix}:failed       ZSET   ids scored by finish time
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
import structlog

from shared.schemas.delivery import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_DELAYED,
    JOB_FAILED,
    JOB_WAITING,
    JobRecord,
    QueueMetrics,
)

logger = structlog.get_logger()

# A job abandoned by crashed workers this many times is failed instead of requeued
MAX_STALLED_COUNT = 1


class QueueBackend(ABC):
    """State store shared by queue producers and workers."""

    name: str = "abstract"

    @abstractmethod
    async def ping(self) -> bool:
        """True when the backend is reachable."""

    @abstractmethod
    async def add(self, record: JobRecord) -> None:
        """Store a new job and make it claimable."""

    @abstractmethod
    async def claim(self, now: datetime) -> JobRecord | None:
        """Atomically move the oldest waiting job to active."""

    @abstractmethod
    async def complete(self, record: JobRecord) -> None:
        """Active → completed."""

    @abstractmethod
    async def fail(self, record: JobRecord) -> None:
        """Active → failed (terminal)."""

    @abstractmethod
    async def retry_later(self, record: JobRecord) -> None:
        """Active → delayed until ``record.next_attempt_at``."""

    @abstractmethod
    async def promote_delayed(self, now: datetime) -> int:
        """Delayed jobs whose time has come → waiting."""

    @abstractmethod
    async def recover_stalled(self, claimed_before: datetime, now: datetime) -> int:
        """Active jobs claimed before ``claimed_before`` → waiting (or failed)."""

    @abstractmethod
    async def requeue(self, job_id: str) -> JobRecord | None:
        """Failed → waiting with a fresh attempt budget."""

    @abstractmethod
    async def get(self, job_id: str) -> JobRecord | None:
        """Fetch a job by id."""

    @abstractmethod
    async def counts(self) -> QueueMetrics:
        """Job counts per state."""

    @abstractmethod
    async def recent(self, state: str, count: int) -> list[JobRecord]:
        """Most recent jobs in a state, newest first."""

    @abstractmethod
    async def prune(
        self,
        now: datetime,
        completed_age: int,
        completed_count: int,
        failed_age: int,
    ) -> int:
        """Drop completed/failed jobs outside the retention windows."""


def _stalled(record: JobRecord, now: datetime) -> JobRecord:
    record.stalled_count += 1
    record.claimed_at = None
    if record.stalled_count > MAX_STALLED_COUNT:
        record.state = JOB_FAILED
        record.finished_at = now
        record.last_error = f"job stalled more than {MAX_STALLED_COUNT} time(s)"
    else:
        record.state = JOB_WAITING
    return record


def _claimed_since(record: JobRecord) -> datetime:
    """When the job was claimed.

    A worker that dies between moving the id to active and stamping the
    document leaves ``claimed_at`` unset; such jobs age from the moment they
    became claimable.
    """
    return record.claimed_at or record.next_attempt_at or record.created_at


def _reset_for_requeue(record: JobRecord) -> JobRecord:
    record.state = JOB_WAITING
    record.attempts_made = 0
    record.backoff_delays = []
    record.stalled_count = 0
    record.last_error = None
    record.result = None
    record.claimed_at = None
    record.next_attempt_at = None
    record.finished_at = None
    return record


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class RedisQueueBackend(QueueBackend):
    """Durable backend on Redis; safe for many producers and workers."""

    name = "redis"

    def __init__(self, redis: aioredis.Redis, prefix: str = "pulse:delivery"):
        self.redis = redis
        self.prefix = prefix
        self.waiting_key = f"{prefix}:waiting"
        self.active_key = f"{prefix}:active"
        self.delayed_key = f"{prefix}:delayed"
        self.completed_key = f"{prefix}:completed"
        self.failed_key = f"{prefix}:failed"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.warning("delivery_backend_ping_failed", backend=self.name, error=str(e))
            return False

    async def add(self, record: JobRecord) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(record.id), record.model_dump_json())
            pipe.lpush(self.waiting_key, record.id)
            await pipe.execute()

    async def claim(self, now: datetime) -> JobRecord | None:
        job_id = await self.redis.lmove(self.waiting_key, self.active_key, "RIGHT", "LEFT")
        if job_id is None:
            return None
        job_id = _decode(job_id)
        record = await self.get(job_id)
        if record is None:
            # Job document pruned or lost; drop the dangling id
            await self.redis.lrem(self.active_key, 1, job_id)
            return None
        record.state = JOB_ACTIVE
        record.claimed_at = now
        await self.redis.set(self._job_key(job_id), record.model_dump_json())
        return record

    async def complete(self, record: JobRecord) -> None:
        await self._finish(record, self.completed_key)

    async def fail(self, record: JobRecord) -> None:
        await self._finish(record, self.failed_key)

    async def _finish(self, record: JobRecord, target_key: str) -> None:
        finished = record.finished_at or datetime.now(timezone.utc)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 1, record.id)
            pipe.zadd(target_key, {record.id: finished.timestamp()})
            pipe.set(self._job_key(record.id), record.model_dump_json())
            await pipe.execute()

    async def retry_later(self, record: JobRecord) -> None:
        ready_at = record.next_attempt_at or datetime.now(timezone.utc)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 1, record.id)
            pipe.zadd(self.delayed_key, {record.id: ready_at.timestamp()})
            pipe.set(self._job_key(record.id), record.model_dump_json())
            await pipe.execute()

    async def promote_delayed(self, now: datetime) -> int:
        due = await self.redis.zrangebyscore(self.delayed_key, "-inf", now.timestamp())
        promoted = 0
        for raw_id in due:
            job_id = _decode(raw_id)
            # ZREM decides which worker wins the promotion
            if not await self.redis.zrem(self.delayed_key, job_id):
                continue
            record = await self.get(job_id)
            if record is None:
                continue
            record.state = JOB_WAITING
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job_id), record.model_dump_json())
                pipe.lpush(self.waiting_key, job_id)
                await pipe.execute()
            promoted += 1
        return promoted

    async def recover_stalled(self, claimed_before: datetime, now: datetime) -> int:
        recovered = 0
        for raw_id in await self.redis.lrange(self.active_key, 0, -1):
            job_id = _decode(raw_id)
            record = await self.get(job_id)
            if record is None:
                await self.redis.lrem(self.active_key, 1, job_id)
                continue
            if _claimed_since(record) >= claimed_before:
                continue
            if not await self.redis.lrem(self.active_key, 1, job_id):
                continue
            record = _stalled(record, now)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job_id), record.model_dump_json())
                if record.state == JOB_FAILED:
                    pipe.zadd(self.failed_key, {job_id: now.timestamp()})
                else:
                    pipe.lpush(self.waiting_key, job_id)
                await pipe.execute()
            recovered += 1
            logger.warning("delivery_job_stalled", job_id=job_id, state=record.state)
        return recovered

    async def requeue(self, job_id: str) -> JobRecord | None:
        if not await self.redis.zrem(self.failed_key, job_id):
            return None
        record = await self.get(job_id)
        if record is None:
            return None
        record = _reset_for_requeue(record)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job_id), record.model_dump_json())
            pipe.lpush(self.waiting_key, job_id)
            await pipe.execute()
        return record

    async def get(self, job_id: str) -> JobRecord | None:
        raw = await self.redis.get(self._job_key(job_id))
        if raw is None:
            return None
        return JobRecord.model_validate_json(raw)

    async def counts(self) -> QueueMetrics:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self.waiting_key)
            pipe.llen(self.active_key)
            pipe.zcard(self.completed_key)
            pipe.zcard(self.failed_key)
            pipe.zcard(self.delayed_key)
            waiting, active, completed, failed, delayed = await pipe.execute()
        return QueueMetrics(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
            total=waiting + active + completed + failed + delayed,
        )

    async def recent(self, state: str, count: int) -> list[JobRecord]:
        if count <= 0:
            return []
        if state == JOB_WAITING:
            ids = await self.redis.lrange(self.waiting_key, 0, count - 1)
        elif state == JOB_ACTIVE:
            ids = await self.redis.lrange(self.active_key, 0, count - 1)
        elif state == JOB_DELAYED:
            ids = await self.redis.zrevrange(self.delayed_key, 0, count - 1)
        elif state == JOB_COMPLETED:
            ids = await self.redis.zrevrange(self.completed_key, 0, count - 1)
        elif state == JOB_FAILED:
            ids = await self.redis.zrevrange(self.failed_key, 0, count - 1)
        else:
            raise ValueError(f"Unknown job state: {state}")
        if not ids:
            return []
        raws = await self.redis.mget([self._job_key(_decode(i)) for i in ids])
        return [JobRecord.model_validate_json(raw) for raw in raws if raw is not None]

    async def prune(
        self,
        now: datetime,
        completed_age: int,
        completed_count: int,
        failed_age: int,
    ) -> int:
        removed = 0
        cutoff = (now - timedelta(seconds=completed_age)).timestamp()
        removed += await self._remove(
            self.completed_key,
            await self.redis.zrangebyscore(self.completed_key, "-inf", cutoff),
        )
        size = await self.redis.zcard(self.completed_key)
        if size > completed_count:
            oldest = await self.redis.zrange(self.completed_key, 0, size - completed_count - 1)
            removed += await self._remove(self.completed_key, oldest)

        cutoff = (now - timedelta(seconds=failed_age)).timestamp()
        removed += await self._remove(
            self.failed_key,
            await self.redis.zrangebyscore(self.failed_key, "-inf", cutoff),
        )
        return removed

    async def _remove(self, zset_key: str, raw_ids) -> int:
        ids = [_decode(i) for i in raw_ids]
        if not ids:
            return 0
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(zset_key, *ids)
            pipe.delete(*[self._job_key(i) for i in ids])
            await pipe.execute()
        return len(ids)


def _decode(value) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


# ---------------------------------------------------------------------------
# In-process
# ---------------------------------------------------------------------------

class MemoryQueueBackend(QueueBackend):
    """Single-process backend for development and tests.

    Jobs are kept as serialized JSON so callers never share a mutable
    record with the store. Nothing survives a restart.
    """

    name = "memory"

    def __init__(self):
        self._jobs: dict[str, str] = {}
        self._waiting: deque[str] = deque()
        self._active: list[str] = []
        self._delayed: dict[str, float] = {}
        self._completed: dict[str, float] = {}
        self._failed: dict[str, float] = {}

    def _store(self, record: JobRecord) -> None:
        self._jobs[record.id] = record.model_dump_json()

    async def ping(self) -> bool:
        return True

    async def add(self, record: JobRecord) -> None:
        self._store(record)
        self._waiting.appendleft(record.id)

    async def claim(self, now: datetime) -> JobRecord | None:
        while self._waiting:
            job_id = self._waiting.pop()
            record = await self.get(job_id)
            if record is None:
                continue
            self._active.insert(0, job_id)
            record.state = JOB_ACTIVE
            record.claimed_at = now
            self._store(record)
            return record
        return None

    def _release(self, job_id: str) -> None:
        if job_id in self._active:
            self._active.remove(job_id)

    async def complete(self, record: JobRecord) -> None:
        self._release(record.id)
        finished = record.finished_at or datetime.now(timezone.utc)
        self._completed[record.id] = finished.timestamp()
        self._store(record)

    async def fail(self, record: JobRecord) -> None:
        self._release(record.id)
        finished = record.finished_at or datetime.now(timezone.utc)
        self._failed[record.id] = finished.timestamp()
        self._store(record)

    async def retry_later(self, record: JobRecord) -> None:
        self._release(record.id)
        ready_at = record.next_attempt_at or datetime.now(timezone.utc)
        self._delayed[record.id] = ready_at.timestamp()
        self._store(record)

    async def promote_delayed(self, now: datetime) -> int:
        due = sorted(
            (score, job_id) for job_id, score in self._delayed.items()
            if score <= now.timestamp()
        )
        promoted = 0
        for _, job_id in due:
            del self._delayed[job_id]
            record = await self.get(job_id)
            if record is None:
                continue
            record.state = JOB_WAITING
            self._store(record)
            self._waiting.appendleft(job_id)
            promoted += 1
        return promoted

    async def recover_stalled(self, claimed_before: datetime, now: datetime) -> int:
        recovered = 0
        for job_id in list(self._active):
            record = await self.get(job_id)
            if record is None:
                self._release(job_id)
                continue
            if _claimed_since(record) >= claimed_before:
                continue
            self._release(job_id)
            record = _stalled(record, now)
            self._store(record)
            if record.state == JOB_FAILED:
                self._failed[job_id] = now.timestamp()
            else:
                self._waiting.appendleft(job_id)
            recovered += 1
            logger.warning("delivery_job_stalled", job_id=job_id, state=record.state)
        return recovered

    async def requeue(self, job_id: str) -> JobRecord | None:
        if self._failed.pop(job_id, None) is None:
            return None
        record = await self.get(job_id)
        if record is None:
            return None
        record = _reset_for_requeue(record)
        self._store(record)
        self._waiting.appendleft(job_id)
        return record

    async def get(self, job_id: str) -> JobRecord | None:
        raw = self._jobs.get(job_id)
        return JobRecord.model_validate_json(raw) if raw is not None else None

    async def counts(self) -> QueueMetrics:
        waiting = len(self._waiting)
        active = len(self._active)
        completed = len(self._completed)
        failed = len(self._failed)
        delayed = len(self._delayed)
        return QueueMetrics(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
            total=waiting + active + completed + failed + delayed,
        )

    async def recent(self, state: str, count: int) -> list[JobRecord]:
        if count <= 0:
            return []
        if state == JOB_WAITING:
            ids = list(self._waiting)[:count]
        elif state == JOB_ACTIVE:
            ids = self._active[:count]
        elif state in (JOB_DELAYED, JOB_COMPLETED, JOB_FAILED):
            scores = {
                JOB_DELAYED: self._delayed,
                JOB_COMPLETED: self._completed,
                JOB_FAILED: self._failed,
            }[state]
            ids = [i for i, _ in sorted(scores.items(), key=lambda kv: kv[1], reverse=True)][:count]
        else:
            raise ValueError(f"Unknown job state: {state}")
        records = [await self.get(i) for i in ids]
        return [r for r in records if r is not None]

    async def prune(
        self,
        now: datetime,
        completed_age: int,
        completed_count: int,
        failed_age: int,
    ) -> int:
        removed = 0
        cutoff = (now - timedelta(seconds=completed_age)).timestamp()
        for job_id, score in list(self._completed.items()):
            if score <= cutoff:
                removed += self._drop(self._completed, job_id)
        overflow = len(self._completed) - completed_count
        if overflow > 0:
            oldest = sorted(self._completed.items(), key=lambda kv: kv[1])[:overflow]
            for job_id, _ in oldest:
                removed += self._drop(self._completed, job_id)

        cutoff = (now - timedelta(seconds=failed_age)).timestamp()
        for job_id, score in list(self._failed.items()):
            if score <= cutoff:
                removed += self._drop(self._failed, job_id)
        return removed

    def _drop(self, scores: dict[str, float], job_id: str) -> int:
        scores.pop(job_id, None)
        self._jobs.pop(job_id, None)
        return 1
