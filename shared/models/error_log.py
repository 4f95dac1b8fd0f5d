"""Error log model for scheduled-job and delivery failures."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    # Source classification
    service: Mapped[str] = mapped_column(String)        # "pulse-scheduler"
    error_type: Mapped[str] = mapped_column(String)     # "job_run", "delivery_failed"

    # What failed
    job_name: Mapped[str | None] = mapped_column(String, default=None)
    details: Mapped[dict | None] = mapped_column(JSON, default=None)
    error_message: Mapped[str] = mapped_column(Text)
    stack_trace: Mapped[str | None] = mapped_column(Text, default=None)
    tenant_id: Mapped[str | None] = mapped_column(String, default=None)

    # Lifecycle
    status: Mapped[str] = mapped_column(String, default="open")  # "open" | "dismissed" | "resolved"

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
