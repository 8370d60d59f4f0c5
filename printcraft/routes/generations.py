"""
Generation Routes

Create and regenerate generation jobs, read their status, cancel them,
and stream their events to the browser with Server-Sent Events.
"""

from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from printcraft.jobs.database import JobNotFoundError
from printcraft.jobs.models import Job
from printcraft.jobs.service import GenerationService, InvalidRequestError, CreationRateLimitedError
from printcraft.notify.base import JobEvent, Subscription
from printcraft.routes.auth import get_current_user_id, get_service
from printcraft.utils.logging import api_logger as logger

router = APIRouter(prefix="/api/generations", tags=["generations"])

# Comment line sent while a stream is idle so proxies keep it open
KEEPALIVE_SECONDS = 15.0


# =============================================================================
# Request/Response Models
# =============================================================================

class CreateGenerationRequest(BaseModel):
    """Opaque provider parameters (prompt, style, options)."""
    request: Dict[str, Any]


class CreateGenerationResponse(BaseModel):
    job_id: str
    status: str


class GenerationResponse(BaseModel):
    """Public projection of a job."""
    job_id: str
    owner_id: str
    status: str
    progress: int
    attempts: int
    result: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    cancel_requested: bool = False
    created_at: Optional[str] = None
    leased_at: Optional[str] = None
    completed_at: Optional[str] = None


class GenerationListResponse(BaseModel):
    generations: List[GenerationResponse]
    total: int
    limit: int
    offset: int


class CancelResponse(BaseModel):
    accepted: bool
    job_id: str
    status: str


def _to_response(job: Job) -> GenerationResponse:
    return GenerationResponse(**job.to_public())


def _sse(event: JobEvent) -> str:
    return f"data: {event.model_dump_json()}\n\n"


async def _stream(
    request: Request,
    subscription: Subscription,
    snapshot: Optional[Job] = None,
    stop_on_terminal: bool = False
):
    """Relay a subscription as SSE frames until the client goes away."""
    try:
        if snapshot is not None:
            yield _sse(JobEvent.from_job(snapshot))
            if stop_on_terminal and snapshot.is_terminal:
                return

        while not await request.is_disconnected():
            event = await subscription.get(timeout=KEEPALIVE_SECONDS)
            if event is None:
                yield ": keepalive\n\n"
                continue
            yield _sse(event)
            if stop_on_terminal and event.status.is_terminal:
                return
    finally:
        await subscription.close()


def _event_stream_response(generator) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


# =============================================================================
# Routes
# =============================================================================

@router.post("", response_model=CreateGenerationResponse, status_code=202)
async def create_generation(
    body: CreateGenerationRequest,
    user_id: str = Depends(get_current_user_id),
    service: GenerationService = Depends(get_service)
):
    """
    Submit a generation job.

    Returns immediately with the job id; poll GET /api/generations/{id}
    or subscribe to its event stream for the outcome.
    """
    try:
        job = await service.create_job(user_id, body.request)
    except InvalidRequestError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except CreationRateLimitedError:
        raise HTTPException(status_code=429, detail="Too many generation requests, please slow down")

    logger.info("Generation submitted", job_id=job.id, owner_id=user_id)
    return CreateGenerationResponse(job_id=job.id, status=job.status.value)


@router.get("", response_model=GenerationListResponse)
async def list_generations(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: GenerationService = Depends(get_service)
):
    """Get the caller's generation history, newest first."""
    jobs, total = await service.list_jobs(user_id, limit=limit, offset=offset)
    return GenerationListResponse(
        generations=[_to_response(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset
    )


@router.get("/events")
async def stream_my_generations(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: GenerationService = Depends(get_service)
):
    """Server-Sent Events for every job owned by the caller."""
    subscription = await service.subscribe_owner(user_id)
    return _event_stream_response(_stream(request, subscription))


@router.get("/{job_id}", response_model=GenerationResponse)
async def get_generation(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: GenerationService = Depends(get_service)
):
    try:
        job = await service.get_job(user_id, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Generation not found")
    return _to_response(job)


@router.post("/{job_id}/cancel", response_model=CancelResponse, status_code=202)
async def cancel_generation(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: GenerationService = Depends(get_service)
):
    """
    Request cancellation. Completes asynchronously; the returned status is
    the job's state at the time of the request.
    """
    try:
        job = await service.cancel_job(user_id, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Generation not found")
    return CancelResponse(accepted=True, job_id=job.id, status=job.status.value)


@router.post("/{job_id}/regenerate", response_model=CreateGenerationResponse, status_code=202)
async def regenerate_generation(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: GenerationService = Depends(get_service)
):
    """Submit a new job with the same request as an earlier one."""
    try:
        job = await service.regenerate_job(user_id, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Generation not found")
    except CreationRateLimitedError:
        raise HTTPException(status_code=429, detail="Too many generation requests, please slow down")

    return CreateGenerationResponse(job_id=job.id, status=job.status.value)


@router.get("/{job_id}/events")
async def stream_generation(
    job_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: GenerationService = Depends(get_service)
):
    """
    Server-Sent Events for one job.

    The first frame is the current snapshot; the stream ends after the
    terminal event.
    """
    try:
        job, subscription = await service.subscribe_job(user_id, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Generation not found")

    return _event_stream_response(
        _stream(request, subscription, snapshot=job, stop_on_terminal=True)
    )
