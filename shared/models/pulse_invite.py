"""Pulse invitation: one user, one question, one calendar week."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base

INVITE_PENDING = "PENDING"
INVITE_COMPLETED = "COMPLETED"
INVITE_EXPIRED = "EXPIRED"

CHANNEL_EMAIL = "EMAIL"


class PulseInvite(Base):
    __tablename__ = "pulse_invites"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tenants.id"))
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"))
    question_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("pulse_questions.id"))

    status: Mapped[str] = mapped_column(String, default=INVITE_PENDING)  # PENDING | COMPLETED | EXPIRED
    channel: Mapped[str] = mapped_column(String, default=CHANNEL_EMAIL)
    token: Mapped[str] = mapped_column(String, unique=True)

    # Sunday 00:00 (schedule-local) of the week the invite belongs to
    week_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "user_id", "week_start", name="uq_pulse_invite_user_week"
        ),
        Index("ix_pulse_invites_tenant_user_sent", "tenant_id", "user_id", "sent_at"),
    )
