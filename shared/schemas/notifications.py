"""Outbound message schemas handed to a Notifier."""

from __future__ import annotations

from pydantic import BaseModel


class EmailAddress(BaseModel):
    email: str
    name: str | None = None


class OutboundMessage(BaseModel):
    """A fully rendered message ready for transport."""

    to: list[EmailAddress]
    subject: str
    html: str
    text: str | None = None
    from_address: EmailAddress | None = None
    reply_to: EmailAddress | None = None
    # Stable per delivery job so transports can de-duplicate retries
    idempotency_key: str | None = None


class SendResult(BaseModel):
    """Outcome reported by a Notifier."""

    success: bool
    message_id: str | None = None
    error: str | None = None
