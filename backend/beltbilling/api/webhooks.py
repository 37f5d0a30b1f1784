"""Inbound gateway webhook routes"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from beltbilling.core.config import SUPPORTED_GATEWAYS, settings
from beltbilling.core.errors import PayloadError, SignatureError
from beltbilling.core.metrics import webhook_rejected_counter
from beltbilling.db.session import get_db
from beltbilling.services.event_processor import process_event_in_new_session
from beltbilling.services.webhook_ingestor import ingest_webhook

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


async def read_body_limited(request: Request, limit: int) -> bytes:
    """Read the raw request body, refusing anything larger than ``limit`` bytes.

    Raw bytes are required for signature verification, so the body must not be
    parsed before this point.
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise HTTPException(413, "Payload too large")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise HTTPException(413, "Payload too large")
    return bytes(body)


@router.post("/{gateway}")
async def receive_webhook(
    gateway: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Accept a gateway notification.

    Answers 200 once the delivery is authenticated and stored, whatever the
    outcome of applying it later; processing failures are retried internally
    rather than through provider redelivery.
    """
    if gateway not in SUPPORTED_GATEWAYS:
        raise HTTPException(404, "Unknown gateway")

    body = await read_body_limited(request, settings.WEBHOOK_MAX_BODY_BYTES)
    if not body:
        webhook_rejected_counter.labels(gateway=gateway, reason="empty").inc()
        raise HTTPException(400, "Empty body")

    try:
        result = await run_in_threadpool(ingest_webhook, gateway, body, request.headers, db)
    except SignatureError:
        raise HTTPException(401, "Invalid signature")
    except PayloadError as e:
        logger.warning(f"Invalid {gateway} webhook payload: {e}")
        raise HTTPException(400, "Invalid payload")

    for event_id in result.new_event_ids:
        background_tasks.add_task(process_event_in_new_session, event_id)

    return {"status": "ok"}
