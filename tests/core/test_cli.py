"""Tests for the operator CLI commands."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from cli import cli
from modules.pulse.runner import JobNotFoundError
from shared.schemas.pulse import ScheduleOutcome, TickSummary


def _service(trigger_result=None, trigger_error=None):
    service = MagicMock()
    service.runner.trigger = AsyncMock(return_value=trigger_result, side_effect=trigger_error)
    return service


class TestTriggerCommand:
    def test_prints_tick_summary(self):
        summary = TickSummary(
            started_at=datetime(2026, 10, 19, 9, 5, tzinfo=timezone.utc),
            outcomes=[
                ScheduleOutcome(schedule_id="s1", tenant_id="acme", status="sent", eligible=2, sent=2),
                ScheduleOutcome(schedule_id="s2", tenant_id="globex", status="skipped",
                                reason="outside_window"),
            ],
        )
        with patch("modules.pulse.service.build_service", return_value=_service(summary)), \
             patch("shared.database.get_session_factory"), \
             patch("shared.redis.get_redis", AsyncMock(return_value=None)):
            result = CliRunner().invoke(cli, ["trigger"])

        assert result.exit_code == 0, result.output
        assert "acme | sent" in result.output
        assert "outside_window" in result.output
        assert "Tick complete: 2 sent, 0 failed, 1 skipped." in result.output

    def test_unknown_job(self):
        service = _service(trigger_error=JobNotFoundError("Job 'nope' not found"))
        with patch("modules.pulse.service.build_service", return_value=service), \
             patch("shared.database.get_session_factory"), \
             patch("shared.redis.get_redis", AsyncMock(return_value=None)):
            result = CliRunner().invoke(cli, ["trigger", "nope"])

        assert result.exit_code == 1
        assert "Job 'nope' not found" in result.output


class TestStatusCommand:
    def test_lists_jobs(self):
        resp = MagicMock(status_code=200)
        resp.json.return_value = [{
            "name": "pulse-invitations", "schedule": "*/15 * * * *", "state": "running",
            "next_run_at": "2026-10-19T09:15:00Z", "last_run_at": None,
            "runs": 4, "failures": 1, "last_error": "db down",
        }]
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=resp)):
            result = CliRunner().invoke(cli, ["status"])

        assert result.exit_code == 0, result.output
        assert "pulse-invitations | */15 * * * * | running" in result.output
        assert "last error: db down" in result.output

    def test_error_response(self):
        resp = MagicMock(status_code=401, text="Invalid service auth token")
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=resp)):
            result = CliRunner().invoke(cli, ["status"])

        assert result.exit_code == 1
        assert "401" in result.output


class TestQueueCommands:
    def test_requires_redis(self):
        with patch("shared.redis.get_redis", AsyncMock(return_value=None)):
            result = CliRunner().invoke(cli, ["queue", "metrics"])

        assert result.exit_code == 1
        assert "REDIS_URL is not set" in result.output

    def test_requeue_missing_job(self, mock_redis):
        mock_redis.zrem = AsyncMock(return_value=0)
        with patch("shared.redis.get_redis", AsyncMock(return_value=mock_redis)):
            result = CliRunner().invoke(cli, ["queue", "requeue", "job-1"])

        assert result.exit_code == 1
        assert "No failed job 'job-1'" in result.output

    def test_send_test_enqueues(self, mock_redis):
        with patch("shared.redis.get_redis", AsyncMock(return_value=mock_redis)):
            result = CliRunner().invoke(cli, ["queue", "send-test", "--to", "ops@acme.test"])

        assert result.exit_code == 0, result.output
        assert "Queued job" in result.output
        mock_redis.pipe.lpush.assert_called_once()
