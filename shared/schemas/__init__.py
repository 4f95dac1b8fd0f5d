"""Pydantic schemas for the pulse services."""

from shared.schemas.common import HealthResponse
from shared.schemas.delivery import (
    DirectPayload,
    InvitationPayload,
    JobHandle,
    JobRecord,
    QueueMetrics,
    RecentJobs,
)
from shared.schemas.notifications import EmailAddress, OutboundMessage, SendResult
from shared.schemas.pulse import JobStatus, ScheduleOutcome, TickSummary

__all__ = [
    "DirectPayload",
    "EmailAddress",
    "HealthResponse",
    "InvitationPayload",
    "JobHandle",
    "JobRecord",
    "JobStatus",
    "OutboundMessage",
    "QueueMetrics",
    "RecentJobs",
    "ScheduleOutcome",
    "SendResult",
    "TickSummary",
]
