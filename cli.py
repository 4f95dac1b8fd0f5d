"""Operator CLI for the pulse scheduler."""

from __future__ import annotations

import asyncio
import json
import os

import click


def run_async(coro):
    """Run an async function in a new event loop."""
    return asyncio.run(coro)


def _configure_logging():
    import structlog

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
    )


@click.group()
def cli():
    """Pulse scheduler administration CLI."""
    pass


# --- Service ---


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
def run(host: str, port: int):
    """Run the scheduler service (cron runner, delivery worker, operator API)."""
    import uvicorn

    uvicorn.run("modules.pulse.main:app", host=host, port=port)


@cli.command()
@click.argument("name", default="pulse-invitations")
def trigger(name: str):
    """Run a job once in this process and print its summary."""
    _configure_logging()
    run_async(_trigger(name))


async def _trigger(name: str):
    from modules.pulse.runner import JobNotFoundError
    from modules.pulse.service import build_service
    from shared.config import get_settings
    from shared.database import dispose_engine, get_session_factory
    from shared.redis import close_redis, get_redis
    from shared.schemas.pulse import TickSummary

    settings = get_settings()
    service = build_service(settings, get_session_factory(), await get_redis())
    try:
        result = await service.runner.trigger(name)
    except JobNotFoundError as e:
        raise click.ClickException(str(e))
    finally:
        await close_redis()
        await dispose_engine()

    if isinstance(result, TickSummary):
        for outcome in result.outcomes:
            click.echo(
                f"{outcome.tenant_id} | {outcome.status:<7} | "
                f"sent={outcome.sent} failed={outcome.failed} "
                f"duplicates={outcome.duplicates} | {outcome.reason or ''}"
            )
        click.echo(
            f"Tick complete: {result.sent} sent, {result.failed} failed, "
            f"{result.skipped} skipped."
        )
    else:
        click.echo(f"Job '{name}' completed.")


@cli.command()
def status():
    """Show registered jobs on the running service."""
    run_async(_status())


async def _status():
    import httpx

    from shared.config import get_settings

    settings = get_settings()
    headers = {}
    if settings.service_auth_token:
        headers["Authorization"] = f"Bearer {settings.service_auth_token}"
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.get(f"{settings.pulse_service_url}/jobs", headers=headers)
    except httpx.HTTPError as e:
        raise click.ClickException(f"Error connecting to pulse service: {e}")

    if resp.status_code != 200:
        raise click.ClickException(f"Error: {resp.status_code} - {resp.text}")

    jobs = resp.json()
    if not jobs:
        click.echo("No jobs registered.")
        return
    for job in jobs:
        click.echo(
            f"{job['name']} | {job['schedule']} | {job['state']} | "
            f"next: {job.get('next_run_at') or '-'} | last: {job.get('last_run_at') or '-'} | "
            f"runs: {job['runs']} failures: {job['failures']}"
        )
        if job.get("last_error"):
            click.echo(f"  last error: {job['last_error']}")


# --- Delivery queue ---


async def _open_queue():
    from modules.pulse.backends import RedisQueueBackend
    from modules.pulse.queue import DeliveryQueue
    from shared.config import get_settings
    from shared.redis import get_redis

    settings = get_settings()
    redis = await get_redis()
    if redis is None:
        raise click.ClickException("REDIS_URL is not set; the delivery queue is unavailable.")
    return DeliveryQueue(RedisQueueBackend(redis, prefix=settings.queue_prefix), None, settings=settings)


@cli.group()
def queue():
    """Delivery queue commands."""
    pass


@queue.command("metrics")
def queue_metrics():
    """Show job counts per state."""
    run_async(_queue_metrics())


async def _queue_metrics():
    from shared.redis import close_redis

    try:
        metrics = await (await _open_queue()).get_metrics()
    finally:
        await close_redis()
    click.echo(json.dumps(metrics.model_dump(), indent=2))


@queue.command("recent")
@click.option("--count", default=10, type=int, help="Jobs per state")
def queue_recent(count: int):
    """Show the most recent jobs per state."""
    run_async(_queue_recent(count))


async def _queue_recent(count: int):
    from shared.redis import close_redis

    try:
        recent = await (await _open_queue()).get_recent_jobs(count)
    finally:
        await close_redis()

    for state in ("active", "waiting", "completed", "failed"):
        records = getattr(recent, state)
        click.echo(f"{state} ({len(records)}):")
        for record in records:
            click.echo(
                f"  {record.id} | {record.payload.kind} | attempts {record.attempts_made}"
                f"/{record.max_attempts} | {record.last_error or ''}"
            )


@queue.command("requeue")
@click.argument("job_id")
def queue_requeue(job_id: str):
    """Move a failed job back to waiting."""
    run_async(_queue_requeue(job_id))


async def _queue_requeue(job_id: str):
    from shared.redis import close_redis

    try:
        record = await (await _open_queue()).requeue(job_id)
    finally:
        await close_redis()
    if record is None:
        raise click.ClickException(f"No failed job '{job_id}'.")
    click.echo(f"Job {job_id} requeued.")


@queue.command("send-test")
@click.option("--to", "to_email", required=True, help="Recipient email address")
@click.option("--subject", default="Pulse delivery test", help="Subject line")
def queue_send_test(to_email: str, subject: str):
    """Queue a direct test email through the delivery pipeline."""
    run_async(_queue_send_test(to_email, subject))


async def _queue_send_test(to_email: str, subject: str):
    from shared.redis import close_redis

    try:
        handle = await (await _open_queue()).enqueue_direct(
            to_email,
            subject,
            "<p>This is a test message from the pulse scheduler.</p>",
            text="This is a test message from the pulse scheduler.",
        )
    finally:
        await close_redis()
    click.echo(f"Queued job {handle.id}.")


# --- Database ---


@cli.command()
def migrate():
    """Run Alembic migrations to head."""
    click.echo("Running database migrations...")
    _run_migrations()
    click.echo("Migrations complete.")


def _run_migrations():
    """Run Alembic migrations using the Python API."""
    from alembic import command
    from alembic.config import Config

    # Look for alembic.ini in /app (Docker) or alongside this script (local)
    for candidate in ["/app/alembic.ini", os.path.join(os.path.dirname(__file__), "alembic.ini")]:
        if os.path.exists(candidate):
            alembic_cfg = Config(candidate)
            script_dir = os.path.join(os.path.dirname(candidate), "alembic")
            if os.path.isdir(script_dir):
                alembic_cfg.set_main_option("script_location", script_dir)
            db_url = os.environ.get("DATABASE_URL")
            if db_url:
                alembic_cfg.set_main_option("sqlalchemy.url", db_url)
            command.upgrade(alembic_cfg, "head")
            return

    raise click.ClickException("alembic.ini not found.")


if __name__ == "__main__":
    cli()
