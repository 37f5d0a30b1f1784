"""Webhook ingestion: authenticate, normalize and persist gateway notifications.

Nothing is applied to subscriptions here. Each normalized event is stored as a
``pending`` WebhookEvent keyed by ``(gateway, event_id)``; the EventProcessor
picks it up from there. A redelivery of an event we already hold is counted
and dropped.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from beltbilling.core.config import SUPPORTED_GATEWAYS
from beltbilling.core.errors import PayloadError, SignatureError, UnknownGatewayError
from beltbilling.core.metrics import (
    webhook_duplicate_counter, webhook_received_counter, webhook_rejected_counter
)
from beltbilling.models.enums import WebhookStatus
from beltbilling.models.webhook_event import WebhookEvent
from beltbilling.schemas.payments import NormalizedEvent
from beltbilling.services.gateways import GatewayAdapter, get_adapter

webhook_logger = logging.getLogger("webhook")

# Never persisted alongside the payload
_SENSITIVE_HEADERS = {"authorization", "cookie", "proxy-authorization"}


@dataclass
class IngestResult:
    gateway: str
    new_event_ids: List[int] = field(default_factory=list)
    duplicates: int = 0

    @property
    def received(self) -> int:
        return len(self.new_event_ids) + self.duplicates


def _headers_for_audit(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items() if k.lower() not in _SENSITIVE_HEADERS}


def _raw_body(body: bytes) -> Optional[Any]:
    try:
        return json.loads(body)
    except ValueError:
        return None


def find_event(gateway: str, event_id: str, db: Session) -> Optional[WebhookEvent]:
    return (
        db.query(WebhookEvent)
        .filter(WebhookEvent.gateway == gateway, WebhookEvent.event_id == event_id)
        .first()
    )


def store_event(
    event: NormalizedEvent,
    db: Session,
    raw_payload: Optional[Any] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Optional[WebhookEvent]:
    """Insert a pending WebhookEvent unless one with the same key exists.

    Returns the new row, or None for a duplicate. Relies on the
    ``(gateway, event_id)`` unique constraint when two deliveries race.
    """
    if find_event(event.gateway, event.event_id, db) is not None:
        return None

    row = WebhookEvent(
        gateway=event.gateway,
        event_id=event.event_id,
        event_type=event.event_type.value,
        payload=event.model_dump(mode="json"),
        raw_payload=raw_payload,
        headers=headers,
        status=WebhookStatus.PENDING,
        retry_count=0,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    db.refresh(row)
    return row


def ingest_webhook(
    gateway: str,
    body: bytes,
    headers: Mapping[str, str],
    db: Session,
    adapter: Optional[GatewayAdapter] = None,
) -> IngestResult:
    """Verify, parse and persist one webhook delivery.

    Raises:
        UnknownGatewayError: gateway is not integrated
        SignatureError: signature required but missing or invalid (nothing stored)
        PayloadError: body could not be parsed (nothing stored)
    """
    if gateway not in SUPPORTED_GATEWAYS:
        raise UnknownGatewayError(gateway)
    adapter = adapter or get_adapter(gateway)

    if adapter.signature_required:
        signature = headers.get(adapter.signature_header)
        if not adapter.verify_webhook_signature(body, signature):
            webhook_rejected_counter.labels(gateway=gateway, reason="signature").inc()
            webhook_logger.warning(
                f"Rejected {gateway} webhook: {'missing' if not signature else 'invalid'} signature"
            )
            raise SignatureError(f"Invalid {gateway} webhook signature")

    try:
        events = adapter.parse_webhook_payload(body)
    except PayloadError:
        webhook_rejected_counter.labels(gateway=gateway, reason="payload").inc()
        raise

    result = IngestResult(gateway=gateway)
    if not events:
        webhook_logger.info(f"{gateway} webhook carried no events")
        return result

    raw = _raw_body(body)
    audit_headers = _headers_for_audit(headers)
    for event in events:
        row = store_event(event, db, raw_payload=raw, headers=audit_headers)
        if row is None:
            result.duplicates += 1
            webhook_duplicate_counter.labels(gateway=gateway).inc()
            webhook_logger.info(f"Duplicate {gateway} event {event.event_id} ignored")
            continue
        result.new_event_ids.append(row.id)
        webhook_received_counter.labels(gateway=gateway).inc()
        webhook_logger.info(f"Stored {gateway} event {event.event_id} ({event.event_type.value}) as #{row.id}")
    return result
