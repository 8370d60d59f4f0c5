"""
Admin Dashboard API Routes

Provides endpoints for the admin dashboard to view:
- Job and queue counters
- Dead-lettered jobs
- Recent logs
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from printcraft.pipeline import Pipeline
from printcraft.routes.auth import get_pipeline
from printcraft.utils.logging import LogLevel, get_log_buffer, get_logger

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = get_logger("admin")


# ===== Queue =====

@router.get("/queue")
async def get_queue_stats(pipeline: Pipeline = Depends(get_pipeline)):
    """
    Job counts by status plus scheduler counters.

    `active_workers` is the number of jobs this process is working on.
    """
    overview = await pipeline.service.admin_overview()
    overview["active_workers"] = pipeline.pool.active_jobs if pipeline.pool else 0
    overview["timestamp"] = datetime.now(timezone.utc).isoformat()
    return overview


@router.get("/dead-letters")
async def get_dead_letters(
    limit: int = Query(50, ge=1, le=200),
    pipeline: Pipeline = Depends(get_pipeline)
):
    """Jobs removed from scheduling after exhausting their attempts."""
    entries = await pipeline.scheduler.dead_letters(limit=limit)
    dead_letters = []
    for entry in entries:
        job = await pipeline.store.get(entry.job_id)
        dead_letters.append({
            "job_id": entry.job_id,
            "owner_id": job.owner_id,
            "reason": entry.dead_letter_reason,
            "attempts": job.attempts,
            "error": job.error,
            "error_kind": job.error_kind.value if job.error_kind else None,
            "dead_lettered_at": job.completed_at,
        })

    return {"dead_letters": dead_letters, "count": len(dead_letters)}


# ===== Logs =====

@router.get("/logs")
async def get_logs(
    limit: int = Query(100, ge=1, le=500),
    level: Optional[str] = Query(None, description="Filter by level (debug, info, warning, error, critical)"),
    source: Optional[str] = Query(None, description="Filter by source"),
    job_id: Optional[str] = Query(None, description="Filter by job id")
):
    """Get recent log entries from the in-memory buffer."""
    log_buffer = get_log_buffer()

    level_filter = None
    if level:
        try:
            level_filter = LogLevel(level.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid log level: {level}")

    logs = log_buffer.get_recent(limit=limit, level=level_filter, source=source, job_id=job_id)
    return {"logs": logs, "count": len(logs)}


@router.get("/logs/stats")
async def get_log_stats():
    return get_log_buffer().get_stats()


@router.get("/logs/errors")
async def get_error_logs(limit: int = Query(50, ge=1, le=200)):
    """Get recent error and critical log entries."""
    return {"errors": get_log_buffer().get_errors(limit=limit)}


@router.get("/jobs/{job_id}/logs")
async def get_job_logs(job_id: str):
    """Everything still buffered for one job, oldest first."""
    trace = get_log_buffer().job_trace(job_id)
    return {"job_id": job_id, "logs": trace, "count": len(trace)}


@router.post("/logs/clear")
async def clear_logs():
    """Clear the in-memory log buffer."""
    get_log_buffer().clear()
    logger.info("Log buffer cleared by admin")
    return {"status": "cleared"}
