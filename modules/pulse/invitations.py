"""Pulse invitation job: decides who gets which question on each tick.

Runs on a coarse tick (every 15 minutes by default). For each enabled
schedule that is due now it resolves the cohort, drops users already
invited this calendar week, picks the question for the day, persists one
invite per remaining user and hands each invite to the delivery queue.
"""

from __future__ import annotations

import asyncio
import secrets
import zoneinfo
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog

from modules.pulse.queue import DeliveryQueue
from modules.pulse.repository import DuplicateInviteError, PulseRepository
from shared.config import Settings, get_settings
from shared.models.pulse_invite import CHANNEL_EMAIL, INVITE_PENDING
from shared.models.pulse_question import PulseQuestion
from shared.models.pulse_schedule import PulseSchedule
from shared.models.user import User
from shared.schemas.delivery import InvitationPayload
from shared.schemas.notifications import EmailAddress
from shared.schemas.pulse import (
    OUTCOME_FAILED,
    OUTCOME_SENT,
    OUTCOME_SKIPPED,
    ScheduleOutcome,
    TickSummary,
)

logger = structlog.get_logger()

DEFAULT_COHORT = "all"

_SENT = "sent"
_FAILED = "failed"
_DUPLICATE = "duplicate"


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------

def day_of_week(moment: datetime) -> int:
    """0 = Sunday .. 6 = Saturday."""
    return moment.isoweekday() % 7


def time_of_day(moment: datetime) -> str:
    return moment.strftime("%H:%M")


def minutes_difference(time1: str, time2: str) -> int:
    """Absolute difference in minutes between two ``HH:mm`` strings."""
    h1, m1 = (int(part) for part in time1.split(":"))
    h2, m2 = (int(part) for part in time2.split(":"))
    return abs((h1 * 60 + m1) - (h2 * 60 + m2))


def week_start(moment: datetime) -> datetime:
    """Most recent Sunday at 00:00, in the timezone of ``moment``."""
    sunday = moment - timedelta(days=day_of_week(moment))
    return sunday.replace(hour=0, minute=0, second=0, microsecond=0)


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------

def cohort_for_day(day: int, rotating: bool) -> str:
    """Cohort name for a day of week.

    With rotation, Monday..Friday map to ``weekday-0``..``weekday-4`` and
    Sunday folds onto ``weekday-4``. Saturday maps to ``weekday-5``, which
    tenants normally do not define, so Saturday schedules skip.
    """
    if not rotating:
        return DEFAULT_COHORT
    index = 4 if day == 0 else day - 1
    return f"weekday-{index}"


def select_question(questions: list[PulseQuestion], day: int) -> PulseQuestion:
    """Same weekday, same relative question for a given active set."""
    return questions[day % len(questions)]


def schedule_is_due(
    schedule: PulseSchedule, local_now: datetime, tolerance_minutes: int
) -> tuple[bool, str | None]:
    """Return (due, skip_reason)."""
    today = day_of_week(local_now)
    if schedule.day_of_week != today:
        return False, "wrong_day"
    if minutes_difference(time_of_day(local_now), schedule.time_of_day) > tolerance_minutes:
        return False, "outside_window"
    return True, None


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

class PulseInvitationJob:
    """One tick of the pulse invitation pipeline. Call ``run()`` per tick."""

    def __init__(
        self,
        repository: PulseRepository,
        queue: DeliveryQueue,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.queue = queue
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tenant_locks: dict[str, asyncio.Lock] = {}

    async def run(self) -> TickSummary:
        started = self._clock()
        summary = TickSummary(started_at=started)

        try:
            schedules = await self.repository.list_enabled_schedules()
        except Exception as e:
            logger.error("pulse_schedule_load_failed", error=str(e), exc_info=True)
            raise

        if not schedules:
            logger.info("pulse_no_enabled_schedules")
            return summary

        logger.info("pulse_schedules_found", count=len(schedules))

        # Tenants whose effective schedule this tick has already been chosen
        claimed: set[str] = set()
        for schedule in schedules:
            outcome = await self._evaluate_schedule(schedule, started, claimed)
            summary.outcomes.append(outcome)

        logger.info("pulse_tick_completed", **summary.as_log_fields())
        return summary

    def _local_now(self, schedule: PulseSchedule, now: datetime) -> datetime:
        tz_name = schedule.timezone or self.settings.pulse_timezone
        return now.astimezone(zoneinfo.ZoneInfo(tz_name))

    def _tenant_lock(self, tenant_key: str) -> asyncio.Lock:
        lock = self._tenant_locks.get(tenant_key)
        if lock is None:
            lock = self._tenant_locks[tenant_key] = asyncio.Lock()
        return lock

    async def _evaluate_schedule(
        self, schedule: PulseSchedule, now: datetime, claimed: set[str]
    ) -> ScheduleOutcome:
        tenant_key = str(schedule.tenant_id)
        tenant = _tenant_label(schedule)
        outcome = ScheduleOutcome(
            schedule_id=str(schedule.id), tenant_id=tenant_key, status=OUTCOME_SKIPPED
        )

        try:
            local_now = self._local_now(schedule, now)
            due, reason = schedule_is_due(
                schedule, local_now, self.settings.schedule_tolerance_minutes
            )
            if not due:
                logger.debug(
                    "pulse_schedule_not_due",
                    tenant=tenant,
                    reason=reason,
                    scheduled_day=schedule.day_of_week,
                    scheduled_time=schedule.time_of_day,
                    current_day=day_of_week(local_now),
                    current_time=time_of_day(local_now),
                )
                outcome.reason = reason
                return outcome

            if tenant_key in claimed:
                logger.warning(
                    "pulse_schedule_superseded",
                    tenant=tenant,
                    schedule_id=str(schedule.id),
                )
                outcome.reason = "superseded"
                return outcome
            claimed.add(tenant_key)

            async with self._tenant_lock(tenant_key):
                return await self._invite_cohort(schedule, local_now, outcome)
        except Exception as e:
            logger.error(
                "pulse_schedule_error",
                tenant=tenant,
                schedule_id=str(schedule.id),
                error=str(e),
                exc_info=True,
            )
            outcome.status = OUTCOME_FAILED
            outcome.reason = str(e)
            return outcome

    async def _invite_cohort(
        self, schedule: PulseSchedule, local_now: datetime, outcome: ScheduleOutcome
    ) -> ScheduleOutcome:
        tenant = _tenant_label(schedule)
        day = day_of_week(local_now)
        cohort_name = cohort_for_day(day, schedule.rotating_cohorts)
        outcome.cohort = cohort_name
        logger.info("pulse_processing_tenant", tenant=tenant, cohort=cohort_name, day=day)

        questions = await self.repository.find_active_questions(schedule.tenant_id)
        if not questions:
            logger.warning("pulse_no_active_questions", tenant=tenant)
            outcome.reason = "no_active_questions"
            return outcome

        cohort = await self.repository.find_cohort(schedule.tenant_id, cohort_name)
        if cohort is None:
            logger.warning("pulse_cohort_not_found", tenant=tenant, cohort=cohort_name)
            outcome.reason = "cohort_not_found"
            return outcome

        since = week_start(local_now)
        eligible = []
        for user_id in cohort.user_ids or []:
            existing = await self.repository.find_invite_since(schedule.tenant_id, user_id, since)
            if existing is None:
                eligible.append(user_id)

        if not eligible:
            logger.info("pulse_cohort_already_invited", tenant=tenant, cohort=cohort_name)
            outcome.reason = "already_invited"
            return outcome

        question = select_question(questions, day)
        outcome.question_id = str(question.id)
        outcome.eligible = len(eligible)
        logger.info(
            "pulse_sending_invitations",
            tenant=tenant,
            cohort=cohort_name,
            eligible=len(eligible),
            question=question.text[:50],
        )

        contacts = await self.repository.find_users(schedule.tenant_id, eligible)
        sent_at = local_now.astimezone(timezone.utc)

        for user_id in eligible:
            result = await self._invite_user(
                schedule, user_id, question, contacts.get(str(user_id)), since, sent_at
            )
            if result == _SENT:
                outcome.sent += 1
            elif result == _DUPLICATE:
                outcome.duplicates += 1
            else:
                outcome.failed += 1

        if outcome.sent:
            outcome.status = OUTCOME_SENT
        elif outcome.failed:
            outcome.status = OUTCOME_FAILED
            outcome.reason = "all_invitations_failed"
        else:
            outcome.reason = "already_invited"

        logger.info(
            "pulse_tenant_completed",
            tenant=tenant,
            sent=outcome.sent,
            failed=outcome.failed,
            duplicates=outcome.duplicates,
        )
        return outcome

    async def _invite_user(
        self,
        schedule: PulseSchedule,
        user_id,
        question: PulseQuestion,
        contact: User | None,
        since: datetime,
        sent_at: datetime,
    ) -> str:
        tenant = _tenant_label(schedule)
        if contact is None:
            logger.warning("pulse_user_contact_missing", tenant=tenant, user_id=str(user_id))
            return _FAILED

        expires_at = sent_at + timedelta(days=self.settings.invite_ttl_days)
        try:
            invite = await self.repository.create_invite({
                "tenant_id": schedule.tenant_id,
                "user_id": user_id,
                "question_id": question.id,
                "status": INVITE_PENDING,
                "channel": CHANNEL_EMAIL,
                "token": secrets.token_urlsafe(32),
                "week_start": since,
                "sent_at": sent_at,
                "expires_at": expires_at,
            })
        except DuplicateInviteError:
            logger.info("pulse_invite_duplicate", tenant=tenant, user_id=str(user_id))
            return _DUPLICATE
        except Exception as e:
            logger.error(
                "pulse_invite_create_failed",
                tenant=tenant,
                user_id=str(user_id),
                error=str(e),
            )
            return _FAILED

        payload = InvitationPayload(
            invite_id=str(invite.id),
            tenant_id=str(schedule.tenant_id),
            tenant_name=_tenant_name(schedule),
            user_id=str(user_id),
            to=EmailAddress(email=contact.email, name=contact.name),
            question_id=str(question.id),
            question_text=question.text,
            scale=question.scale or "LIKERT_1_5",
            token=invite.token,
            expires_at=expires_at,
        )
        try:
            await self.queue.enqueue(payload)
        except Exception as e:
            # The invite stays PENDING; resend tooling can pick it up
            logger.error(
                "pulse_invite_enqueue_failed",
                tenant=tenant,
                invite_id=str(invite.id),
                error=str(e),
            )
            return _FAILED
        return _SENT


def _tenant_label(schedule: PulseSchedule) -> str:
    tenant = getattr(schedule, "tenant", None)
    if tenant is not None and getattr(tenant, "slug", None):
        return tenant.slug
    return str(schedule.tenant_id)


def _tenant_name(schedule: PulseSchedule) -> str:
    tenant = getattr(schedule, "tenant", None)
    if tenant is not None and getattr(tenant, "name", None):
        return tenant.name
    return _tenant_label(schedule)
