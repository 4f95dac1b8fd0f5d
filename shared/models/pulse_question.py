"""Pulse survey question."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class PulseQuestion(Base):
    __tablename__ = "pulse_questions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tenants.id"), index=True)
    text: Mapped[str] = mapped_column(Text)
    scale: Mapped[str] = mapped_column(String, default="LIKERT_1_5")  # LIKERT_1_5 | NPS_0_10
    category: Mapped[str | None] = mapped_column(String, default=None)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Rotation order is creation order
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
