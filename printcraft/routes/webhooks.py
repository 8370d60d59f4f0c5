"""
Provider Webhook Routes

Receives completion callbacks from the generation provider. Deliveries are
verified with the Replicate SDK's webhook validator (signed id, timestamp
and body, with a replay window) before they reach the finalize path.
"""

import json
from typing import Mapping

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from replicate.webhook import Webhooks, WebhookSigningSecret, WebhookValidationError

from printcraft.jobs.finalizer import CallbackResult
from printcraft.jobs.service import GenerationService
from printcraft.providers.base import ProviderError
from printcraft.routes.auth import get_service
from printcraft.utils.logging import api_logger as logger

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

# Reject replayed deliveries older than this
TIMESTAMP_TOLERANCE_SECONDS = 300


def verify_webhook(
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    tolerance: int = TIMESTAMP_TOLERANCE_SECONDS
):
    """
    Raise unless the delivery is authentic and fresh.

    WebhookValidationError covers missing headers, stale timestamps and bad
    signatures; ValueError covers bodies or headers that cannot be parsed.
    """
    valid = Webhooks.validate(
        headers=dict(headers),
        body=body.decode("utf-8"),
        secret=WebhookSigningSecret(key=secret),
        tolerance=tolerance
    )
    if not valid:
        raise WebhookValidationError("Webhook signature is invalid")


# =============================================================================
# Webhook Handler
# =============================================================================

@router.post("/provider")
async def handle_provider_webhook(
    request: Request,
    service: GenerationService = Depends(get_service)
):
    """
    Handle a provider completion callback.

    Feeds the same finalize path used by polling, so a callback that
    arrives after the job was already finalized is a harmless no-op.
    """
    secret = getattr(request.app.state, "webhook_secret", None)
    if not secret:
        raise HTTPException(
            status_code=503,
            detail="Provider webhooks not configured"
        )

    # Get raw body for signature verification
    body = await request.body()

    try:
        verify_webhook(secret, request.headers, body)
    except (WebhookValidationError, ValueError) as e:
        logger.warning(
            "Rejected provider webhook",
            reason=str(e),
            webhook_id=request.headers.get("webhook-id")
        )
        raise HTTPException(status_code=401, detail=f"Invalid signature: {e}")

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e}")

    try:
        result = await service.handle_provider_callback(payload)
    except ProviderError as e:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e}")

    if result == CallbackResult.UNKNOWN:
        # Not ours (or already forgotten); acknowledge so the provider stops retrying
        return JSONResponse(status_code=202, content={"received": True, "result": result})

    return {"received": True, "result": result}
