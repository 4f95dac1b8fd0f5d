"""Outcome and status schemas for the pulse scheduler."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

OUTCOME_SENT = "sent"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


class ScheduleOutcome(BaseModel):
    """Result of evaluating one schedule during one tick."""

    schedule_id: str
    tenant_id: str
    status: str  # sent | skipped | failed
    reason: str | None = None
    cohort: str | None = None
    question_id: str | None = None
    eligible: int = 0
    sent: int = 0
    failed: int = 0
    duplicates: int = 0


class TickSummary(BaseModel):
    """Aggregate of every schedule outcome in one tick."""

    started_at: datetime
    outcomes: list[ScheduleOutcome] = Field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(o.sent for o in self.outcomes)

    @property
    def failed(self) -> int:
        return sum(o.failed for o in self.outcomes)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OUTCOME_SKIPPED)

    def as_log_fields(self) -> dict:
        return {
            "schedules": len(self.outcomes),
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "schedule_errors": sum(1 for o in self.outcomes if o.status == OUTCOME_FAILED),
        }


class JobStatus(BaseModel):
    """Status of one job registered with the runner."""

    name: str
    schedule: str
    state: str  # registered | running | stopped
    running: bool
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    runs: int = 0
    failures: int = 0
    last_error: str | None = None
