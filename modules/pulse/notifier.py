"""Outbound message transport used by the delivery worker."""

from __future__ import annotations

from abc import ABC, abstractmethod

import redis.asyncio as aioredis
import structlog

from shared.schemas.notifications import EmailAddress, OutboundMessage, SendResult

logger = structlog.get_logger()


class Notifier(ABC):
    """Sends one rendered message.

    Implementations report transport problems as ``SendResult(success=False)``
    or by raising; the delivery queue retries both.
    """

    @abstractmethod
    async def send(self, message: OutboundMessage) -> SendResult:
        ...


class RedisNotifier(Notifier):
    """Publishes rendered messages on a Redis channel for the mail relay.

    A publish that reaches no subscriber counts as a failed send, so the
    job is retried instead of silently dropped while the relay is down.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str = "notifications:email",
        sender: EmailAddress | None = None,
    ):
        self.redis = redis
        self.channel = channel
        self.sender = sender

    async def send(self, message: OutboundMessage) -> SendResult:
        if message.from_address is None and self.sender is not None:
            message = message.model_copy(update={"from_address": self.sender})

        receivers = await self.redis.publish(self.channel, message.model_dump_json())
        if not receivers:
            logger.warning(
                "notification_not_received",
                channel=self.channel,
                message_id=message.idempotency_key,
            )
            return SendResult(success=False, error=f"no subscribers on {self.channel}")

        logger.info(
            "notification_published",
            channel=self.channel,
            message_id=message.idempotency_key,
            receivers=receivers,
        )
        return SendResult(success=True, message_id=message.idempotency_key)
