"""Per-tenant pulse schedule (configured by tenant admins, read-only here)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shared.models.base import Base
from shared.models.tenant import Tenant


class PulseSchedule(Base):
    __tablename__ = "pulse_schedules"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tenants.id"), index=True)

    day_of_week: Mapped[int] = mapped_column(Integer)  # 0 = Sunday .. 6 = Saturday
    time_of_day: Mapped[str] = mapped_column(String(5))  # "HH:mm"
    # IANA zone name; None means the process-wide PULSE_TIMEZONE
    timezone: Mapped[str | None] = mapped_column(String, default=None)
    rotating_cohorts: Mapped[bool] = mapped_column(Boolean, default=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    tenant: Mapped[Tenant] = relationship()
