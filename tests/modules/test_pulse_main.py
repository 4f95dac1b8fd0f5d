"""Tests for service wiring, the operator endpoints, error capture and auth."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException

from modules.pulse import main
from modules.pulse.backends import MemoryQueueBackend, RedisQueueBackend
from modules.pulse.service import (
    PULSE_JOB_NAME,
    _capture_delivery_failure,
    _capture_job_error,
    build_service,
)
from shared.auth import require_service_auth
from shared.config import Settings
from shared.error_capture import _sanitize_details, capture_error
from shared.models.error_log import ErrorLog
from shared.schemas.delivery import JOB_FAILED, InvitationPayload, JobRecord
from shared.schemas.notifications import EmailAddress


def _failed_invitation() -> JobRecord:
    payload = InvitationPayload(
        invite_id="inv-1",
        tenant_id="tenant-1",
        tenant_name="Acme Corp",
        user_id="user-1",
        to=EmailAddress(email="ada@acme.test"),
        question_id="q-1",
        question_text="How was your week?",
        token="secret-response-token",
        expires_at=datetime(2026, 10, 26, tzinfo=timezone.utc),
    )
    return JobRecord(
        id="job-1", payload=payload, state=JOB_FAILED, attempts_made=3,
        last_error="Failed to send message: smtp timeout",
    )


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

class TestBuildService:
    def test_without_redis_runs_degraded(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)

        assert service.queue.backend is None
        assert service.queue.notifier is None
        assert [s.name for s in service.runner.get_status()] == [PULSE_JOB_NAME]
        assert service.runner.get_status()[0].schedule == settings.pulse_cron_expr

    def test_with_redis(self, settings, mock_session_factory, mock_redis):
        service = build_service(settings, mock_session_factory, mock_redis)

        assert isinstance(service.queue.backend, RedisQueueBackend)
        assert service.queue.backend.prefix == settings.queue_prefix
        assert service.queue.notifier.channel == settings.notification_channel

    @pytest.mark.asyncio
    async def test_start_and_stop(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)
        await service.queue.attach_backend(MemoryQueueBackend())
        service.queue.notifier = MagicMock()

        await service.start()
        assert service.runner.running is True
        assert service.queue.worker_running is True

        await service.stop()
        assert service.runner.running is False
        assert service.queue.worker_running is False

    @pytest.mark.asyncio
    async def test_worker_starts_once_backend_comes_up(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)
        backend = MemoryQueueBackend()
        backend.ping = AsyncMock(side_effect=[False, True])
        service.queue.backend = backend
        service.queue.notifier = MagicMock()

        await service.start()
        try:
            assert service.queue.worker_running is False
            for _ in range(200):
                if service.queue.worker_running:
                    break
                await asyncio.sleep(0.01)
            assert service.queue.worker_running is True
        finally:
            await service.stop()

        assert service.queue.worker_running is False


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

class TestEndpoints:
    @pytest.mark.asyncio
    async def test_health_before_startup(self):
        with patch.object(main, "service", None):
            response = await main.health()
        assert response.status == "starting"

    @pytest.mark.asyncio
    async def test_health(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)
        with patch.object(main, "service", service):
            response = await main.health()

        assert response.status == "ok"
        assert response.scheduler_running is False
        assert response.delivery_backend is None

    @pytest.mark.asyncio
    async def test_endpoints_require_service(self):
        with patch.object(main, "service", None):
            with pytest.raises(HTTPException) as exc:
                await main.list_jobs()
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_list_jobs(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)
        with patch.object(main, "service", service):
            jobs = await main.list_jobs()

        assert jobs[0].name == PULSE_JOB_NAME

    @pytest.mark.asyncio
    async def test_trigger_runs_tick(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)
        with patch.object(main, "service", service):
            response = await main.trigger_job(PULSE_JOB_NAME)

        assert response["status"] == "completed"
        assert response["summary"]["outcomes"] == []

    @pytest.mark.asyncio
    async def test_trigger_unknown_job(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)
        with patch.object(main, "service", service):
            with pytest.raises(HTTPException) as exc:
                await main.trigger_job("nope")
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_trigger_failure_is_500(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)
        service.runner.register("broken", "*/5 * * * *", AsyncMock(side_effect=RuntimeError("boom")))
        with patch.object(main, "service", service):
            with pytest.raises(HTTPException) as exc:
                await main.trigger_job("broken")
        assert exc.value.status_code == 500
        assert exc.value.detail == "boom"

    @pytest.mark.asyncio
    async def test_queue_metrics_and_recent(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)
        await service.queue.enqueue_direct("ops@acme.test", "Hello", "<p>Hi</p>")
        with patch.object(main, "service", service):
            metrics = await main.queue_metrics()
            recent = await main.recent_jobs(count=5)

        assert metrics.waiting == 1
        assert len(recent.waiting) == 1

    @pytest.mark.asyncio
    async def test_requeue_missing_job_is_404(self, settings, mock_session_factory):
        service = build_service(settings, mock_session_factory, None)
        await service.queue.attach_backend(MemoryQueueBackend())
        with patch.object(main, "service", service):
            with pytest.raises(HTTPException) as exc:
                await main.requeue_job("job-1")
        assert exc.value.status_code == 404


# ---------------------------------------------------------------------------
# Error capture
# ---------------------------------------------------------------------------

class TestErrorCapture:
    def test_sanitize_nested_secrets(self):
        details = {"job_id": "job-1", "payload": {"token": "abc", "to": {"email": "a@b"}}}

        sanitized = _sanitize_details(details)

        assert sanitized["payload"]["token"] == "[REDACTED]"
        assert sanitized["payload"]["to"] == {"email": "a@b"}
        assert sanitized["job_id"] == "job-1"

    @pytest.mark.asyncio
    async def test_capture_never_raises(self):
        factory = MagicMock(side_effect=RuntimeError("no database"))

        await capture_error(factory, service="pulse-scheduler", error_type="job_run",
                            error_message="boom")

    @pytest.mark.asyncio
    async def test_delivery_failure_is_recorded_without_token(
        self, mock_session_factory, mock_db_session
    ):
        await _capture_delivery_failure(mock_session_factory, _failed_invitation())

        record = mock_db_session.add.call_args.args[0]
        assert isinstance(record, ErrorLog)
        assert record.error_type == "delivery_failed"
        assert record.job_name == "delivery:invitation"
        assert record.tenant_id == "tenant-1"
        assert record.details["payload"]["token"] == "[REDACTED]"
        assert record.details["attempts"] == 3
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_job_error_includes_stack_trace(self, mock_session_factory, mock_db_session):
        try:
            raise ValueError("bad schedule row")
        except ValueError as e:
            error = e

        await _capture_job_error(mock_session_factory, PULSE_JOB_NAME, error)

        record = mock_db_session.add.call_args.args[0]
        assert record.job_name == PULSE_JOB_NAME
        assert record.error_message == "bad schedule row"
        assert "ValueError" in record.stack_trace


# ---------------------------------------------------------------------------
# Service auth
# ---------------------------------------------------------------------------

def _request(authorization: str | None = None):
    request = MagicMock()
    request.headers = {"authorization": authorization} if authorization else {}
    request.url.path = "/jobs"
    request.client.host = "10.0.0.5"
    return request


class TestServiceAuth:
    @pytest.mark.asyncio
    async def test_dev_mode_allows_all(self):
        with patch("shared.auth.get_settings", return_value=Settings(_env_file=None, service_auth_token="")):
            assert await require_service_auth(_request()) is None

    @pytest.mark.asyncio
    async def test_valid_token(self):
        with patch("shared.auth.get_settings", return_value=Settings(_env_file=None, service_auth_token="s3cret")):
            assert await require_service_auth(_request("Bearer s3cret")) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "Token s3cret", "Bearer wrong"])
    async def test_rejected(self, header):
        with patch("shared.auth.get_settings", return_value=Settings(_env_file=None, service_auth_token="s3cret")):
            with pytest.raises(HTTPException) as exc:
                await require_service_auth(_request(header))
        assert exc.value.status_code == 401
