# app/webhooks/calendar_handler.py
"""Provider push notifications - verify, normalize, apply"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from app.api.dependencies import get_services
from app.schemas.sync import WebhookStatus
from app.services.service_factory import CalendarServices

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{provider}")
async def handle_calendar_webhook(
        provider: str,
        request: Request,
        validation_token: Optional[str] = Query(None, alias="validationToken"),
        services: CalendarServices = Depends(get_services),
):
    """Answer 200 unless the signature is bad, the payload is malformed or the provider unknown"""
    # Microsoft Graph subscription handshake
    if validation_token is not None:
        logger.info(f"Answering {provider} subscription validation")
        return PlainTextResponse(validation_token)

    raw_body = await request.body()
    result = await run_in_threadpool(
        services.webhook_ingestor.handle_webhook,
        provider,
        raw_body,
        dict(request.headers),
    )

    correlation_id = getattr(request.state, "correlation_id", "unknown")
    logger.info(f"{provider} webhook {result.status.value} (correlation_id={correlation_id})")

    if result.status == WebhookStatus.REJECTED:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": result.reason or "Invalid webhook signature", "error_code": "signature_invalid"},
        )
    return result.model_dump(mode="json")
