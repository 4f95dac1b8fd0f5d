"""Tests for the invitation email renderer and the Redis notifier."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from modules.pulse.notifier import RedisNotifier
from modules.pulse.templates import PulseEmailRenderer, response_url
from shared.schemas.delivery import InvitationPayload
from shared.schemas.notifications import EmailAddress, OutboundMessage


def _payload(**overrides) -> InvitationPayload:
    fields = dict(
        invite_id="inv-1",
        tenant_id="tenant-1",
        tenant_name="Acme Corp",
        user_id="user-1",
        to=EmailAddress(email="ada@acme.test", name="Ada"),
        question_id="q-1",
        question_text="How recognized do you feel for your contributions this week?",
        scale="LIKERT_1_5",
        token="tok-123",
        expires_at=datetime(2026, 10, 26, 9, 5, tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return InvitationPayload(**fields)


class TestResponseUrl:
    def test_format(self):
        assert (
            response_url("https://pulsestage.dev/", "abc", 3)
            == "https://pulsestage.dev/pulse/respond?token=abc&score=3"
        )

    def test_token_is_url_encoded(self):
        assert "token=a%2Bb%2F" in response_url("https://x.test", "a+b/", 1)


class TestPulseEmailRenderer:
    def test_likert_has_five_options(self, settings):
        renderer = PulseEmailRenderer(settings)

        options = renderer.options(_payload())

        assert [o["score"] for o in options] == [1, 2, 3, 4, 5]

    def test_nps_has_eleven_options(self, settings):
        renderer = PulseEmailRenderer(settings)

        options = renderer.options(_payload(scale="NPS_0_10"))

        assert [o["score"] for o in options] == list(range(11))

    def test_unknown_scale_falls_back_to_likert(self, settings):
        renderer = PulseEmailRenderer(settings)

        options = renderer.options(_payload(scale="STARS_1_3"))

        assert len(options) == 5

    def test_render_invitation(self, settings):
        message = PulseEmailRenderer(settings).render_invitation(_payload())

        assert message.to == [EmailAddress(email="ada@acme.test", name="Ada")]
        assert message.subject == "Your weekly pulse for Acme Corp"
        assert message.from_address.email == settings.email_from
        assert message.from_address.name == settings.email_from_name
        assert "Hi Ada," in message.html
        assert "How recognized do you feel" in message.html
        for score in range(1, 6):
            assert f"token=tok-123&amp;score={score}" in message.html
            assert f"token=tok-123&score={score}" in message.text
        assert f"expires in {settings.invite_ttl_days} days" in message.text

    def test_question_text_is_escaped(self, settings):
        message = PulseEmailRenderer(settings).render_invitation(
            _payload(question_text="<script>alert(1)</script>")
        )

        assert "<script>" not in message.html
        assert "&lt;script&gt;" in message.html

    def test_missing_name_uses_greeting(self, settings):
        message = PulseEmailRenderer(settings).render_invitation(
            _payload(to=EmailAddress(email="anon@acme.test"))
        )

        assert "Hi there," in message.html


class TestRedisNotifier:
    @pytest.mark.asyncio
    async def test_publishes_message(self, mock_redis):
        notifier = RedisNotifier(mock_redis, channel="notifications:email")
        message = OutboundMessage(
            to=[EmailAddress(email="ada@acme.test")],
            subject="Hello",
            html="<p>Hi</p>",
            idempotency_key="job-1",
        )

        result = await notifier.send(message)

        assert result.success is True
        assert result.message_id == "job-1"
        channel, raw = mock_redis.publish.await_args.args
        assert channel == "notifications:email"
        assert json.loads(raw)["subject"] == "Hello"

    @pytest.mark.asyncio
    async def test_applies_default_sender(self, mock_redis):
        sender = EmailAddress(email="noreply@pulsestage.dev", name="PulseStage")
        notifier = RedisNotifier(mock_redis, sender=sender)

        await notifier.send(
            OutboundMessage(to=[EmailAddress(email="a@acme.test")], subject="s", html="h")
        )

        published = json.loads(mock_redis.publish.await_args.args[1])
        assert published["from_address"]["email"] == "noreply@pulsestage.dev"

    @pytest.mark.asyncio
    async def test_no_subscribers_is_a_failed_send(self, mock_redis):
        mock_redis.publish = AsyncMock(return_value=0)
        notifier = RedisNotifier(mock_redis)

        result = await notifier.send(
            OutboundMessage(to=[EmailAddress(email="a@acme.test")], subject="s", html="h")
        )

        assert result.success is False
        assert "no subscribers" in result.error
