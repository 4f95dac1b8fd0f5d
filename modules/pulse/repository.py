"""Persistence interface for the pulse invitation job.

The invitation job only talks to ``PulseRepository``; the SQLAlchemy
implementation below is what the service wires in.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from shared.models.pulse_cohort import PulseCohort
from shared.models.pulse_invite import PulseInvite
from shared.models.pulse_question import PulseQuestion
from shared.models.pulse_schedule import PulseSchedule
from shared.models.user import User

logger = structlog.get_logger()


class DuplicateInviteError(Exception):
    """An invite already exists for this (tenant, user, week)."""


class PulseRepository(ABC):
    """Read schedules/cohorts/questions and write invites."""

    @abstractmethod
    async def list_enabled_schedules(self) -> list[PulseSchedule]:
        """Enabled schedules, oldest first (created_at, then id)."""

    @abstractmethod
    async def find_active_questions(self, tenant_id: Any) -> list[PulseQuestion]:
        """Active questions for a tenant in creation order."""

    @abstractmethod
    async def find_cohort(self, tenant_id: Any, name: str) -> PulseCohort | None:
        """Look up a cohort by its per-tenant unique name."""

    @abstractmethod
    async def find_invite_since(
        self, tenant_id: Any, user_id: Any, since: datetime
    ) -> PulseInvite | None:
        """Any invite for the user with ``sent_at >= since``."""

    @abstractmethod
    async def create_invite(self, fields: dict) -> PulseInvite:
        """Persist a new invite.

        Raises ``DuplicateInviteError`` when the weekly uniqueness constraint
        rejects the row.
        """

    @abstractmethod
    async def find_users(self, tenant_id: Any, user_ids: Iterable[Any]) -> dict[str, User]:
        """Contact records keyed by ``str(user_id)``. Unknown ids are omitted."""


def _as_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError):
        return None


class SqlPulseRepository(PulseRepository):
    """PulseRepository backed by async SQLAlchemy sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_enabled_schedules(self) -> list[PulseSchedule]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PulseSchedule)
                .options(selectinload(PulseSchedule.tenant))
                .where(PulseSchedule.enabled.is_(True))
                .order_by(PulseSchedule.created_at.asc(), PulseSchedule.id.asc())
            )
            return list(result.scalars().all())

    async def find_active_questions(self, tenant_id: Any) -> list[PulseQuestion]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PulseQuestion)
                .where(
                    PulseQuestion.tenant_id == tenant_id,
                    PulseQuestion.active.is_(True),
                )
                .order_by(PulseQuestion.created_at.asc(), PulseQuestion.id.asc())
            )
            return list(result.scalars().all())

    async def find_cohort(self, tenant_id: Any, name: str) -> PulseCohort | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PulseCohort).where(
                    PulseCohort.tenant_id == tenant_id,
                    PulseCohort.name == name,
                )
            )
            return result.scalar_one_or_none()

    async def find_invite_since(
        self, tenant_id: Any, user_id: Any, since: datetime
    ) -> PulseInvite | None:
        uid = _as_uuid(user_id)
        if uid is None:
            return None
        async with self.session_factory() as session:
            result = await session.execute(
                select(PulseInvite)
                .where(
                    PulseInvite.tenant_id == tenant_id,
                    PulseInvite.user_id == uid,
                    PulseInvite.sent_at >= since,
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def create_invite(self, fields: dict) -> PulseInvite:
        values = dict(fields)
        values["user_id"] = _as_uuid(values["user_id"])
        invite = PulseInvite(**values)
        async with self.session_factory() as session:
            session.add(invite)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateInviteError(
                    f"Invite already exists for user {fields['user_id']} "
                    f"in week {fields.get('week_start')}"
                ) from e
        return invite

    async def find_users(self, tenant_id: Any, user_ids: Iterable[Any]) -> dict[str, User]:
        ids = [uid for uid in (_as_uuid(u) for u in user_ids) if uid is not None]
        if not ids:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(
                select(User).where(User.tenant_id == tenant_id, User.id.in_(ids))
            )
            return {str(user.id): user for user in result.scalars().all()}
