"""Delivery queue job schemas."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from shared.schemas.notifications import EmailAddress, OutboundMessage

JOB_WAITING = "waiting"
JOB_ACTIVE = "active"
JOB_DELAYED = "delayed"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


class InvitationPayload(BaseModel):
    """Structured pulse invitation; rendered by the worker, not the producer."""

    kind: Literal["invitation"] = "invitation"
    invite_id: str
    tenant_id: str
    tenant_name: str
    user_id: str
    to: EmailAddress
    question_id: str
    question_text: str
    scale: str = "LIKERT_1_5"
    token: str
    expires_at: datetime


class DirectPayload(BaseModel):
    """A message that is already fully formed."""

    kind: Literal["direct"] = "direct"
    message: OutboundMessage


DeliveryPayload = Annotated[
    Union[InvitationPayload, DirectPayload], Field(discriminator="kind")
]


class JobRecord(BaseModel):
    """Queue-side state of one delivery job."""

    id: str
    payload: DeliveryPayload
    state: str = JOB_WAITING  # waiting | active | delayed | completed | failed
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_delays: list[float] = Field(default_factory=list)
    last_error: str | None = None
    result: dict | None = None
    stalled_count: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    claimed_at: datetime | None = None
    next_attempt_at: datetime | None = None
    finished_at: datetime | None = None


class JobHandle(BaseModel):
    """Returned by enqueue; transport has not happened yet."""

    id: str
    kind: str
    # True when no backend accepted the job and it is held in process
    buffered: bool = False


class QueueMetrics(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    total: int = 0


class RecentJobs(BaseModel):
    completed: list[JobRecord] = Field(default_factory=list)
    failed: list[JobRecord] = Field(default_factory=list)
    active: list[JobRecord] = Field(default_factory=list)
    waiting: list[JobRecord] = Field(default_factory=list)
