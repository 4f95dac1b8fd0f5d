"""Pulse scheduler - FastAPI service with cron runner and delivery worker."""

from __future__ import annotations

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query

from modules.pulse.runner import JobNotFoundError
from modules.pulse.service import PulseService, build_service
from shared.auth import require_service_auth
from shared.config import get_settings
from shared.database import dispose_engine, get_session_factory
from shared.redis import close_redis, get_redis
from shared.schemas.common import HealthResponse
from shared.schemas.delivery import JobRecord, QueueMetrics, RecentJobs
from shared.schemas.pulse import JobStatus, TickSummary

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()
app = FastAPI(title="Pulse Scheduler", version="1.0.0")

service: PulseService | None = None


@app.on_event("startup")
async def startup():
    global service
    settings = get_settings()
    service = build_service(settings, get_session_factory(), await get_redis())
    await service.start()
    logger.info("pulse_scheduler_ready")


@app.on_event("shutdown")
async def shutdown():
    global service
    if service is not None:
        await service.stop()
        service = None
    await close_redis()
    await dispose_engine()
    logger.info("pulse_scheduler_shutdown")


def _require_service() -> PulseService:
    if service is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return service


@app.get("/health", response_model=HealthResponse)
async def health():
    if service is None:
        return HealthResponse(status="starting")
    backend = service.queue.backend
    return HealthResponse(
        status="ok",
        scheduler_running=service.runner.running,
        worker_running=service.queue.worker_running,
        delivery_backend=backend.name if backend is not None else None,
    )


@app.get("/jobs", response_model=list[JobStatus])
async def list_jobs(_=Depends(require_service_auth)):
    return _require_service().runner.get_status()


@app.post("/jobs/{name}/trigger")
async def trigger_job(name: str, _=Depends(require_service_auth)):
    """Run a job now. Errors from the job are returned as 500s."""
    svc = _require_service()
    try:
        result = await svc.runner.trigger(name)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error("job_trigger_error", name=name, error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    if isinstance(result, TickSummary):
        return {"name": name, "status": "completed", "summary": result.model_dump(mode="json")}
    return {"name": name, "status": "completed"}


@app.get("/queue/metrics", response_model=QueueMetrics)
async def queue_metrics(_=Depends(require_service_auth)):
    return await _require_service().queue.get_metrics()


@app.get("/queue/jobs", response_model=RecentJobs)
async def recent_jobs(
    count: int = Query(10, ge=1, le=100),
    _=Depends(require_service_auth),
):
    return await _require_service().queue.get_recent_jobs(count)


@app.post("/queue/jobs/{job_id}/requeue", response_model=JobRecord)
async def requeue_job(job_id: str, _=Depends(require_service_auth)):
    record = await _require_service().queue.requeue(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No failed job '{job_id}'")
    return record
