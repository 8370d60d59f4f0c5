"""
Caller identity and shared route dependencies.

Authentication happens upstream; requests reach this service with the
already-authenticated caller id in the X-User-Id header.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from printcraft.jobs.service import GenerationService
from printcraft.pipeline import Pipeline

DEV_USER_ID = "dev-user-id"


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Generation pipeline not initialized")
    return pipeline


def get_service(pipeline: Pipeline = Depends(get_pipeline)) -> GenerationService:
    return pipeline.service


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id")
) -> str:
    """
    Resolve the caller id for this request.

    In dev mode with DEV_MODE=true, a missing header falls back to a test user.
    """
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()

    # Dev mode bypass
    if getattr(request.app.state, "dev_mode", False):
        return DEV_USER_ID

    raise HTTPException(
        status_code=401,
        detail="Missing X-User-Id header"
    )
