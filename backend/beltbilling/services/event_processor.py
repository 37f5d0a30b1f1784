"""Event processor: applies stored webhook events to subscriptions and the ledger.

Lifecycle of a WebhookEvent row:

    pending -> processing -> processed | skipped
                          -> failed (next_retry_at set)  -> processing ...
                          -> failed (next_retry_at NULL)  permanent; operator requeue only

A row is claimed with a conditional UPDATE so only one worker ever applies a
given event. The subscription row is locked for the rest of the transaction,
which serializes concurrent events for the same subscription.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from beltbilling.core.config import settings
from beltbilling.core.errors import (
    GatewayError, PermanentProcessingError, ProcessingError, TransientProcessingError
)
from beltbilling.core.metrics import webhook_processed_counter
from beltbilling.db.session import SessionLocal
from beltbilling.models.base import utcnow
from beltbilling.models.enums import EventType, Gateway, SubscriptionStatus, WebhookStatus
from beltbilling.models.subscription import Subscription
from beltbilling.models.webhook_event import WebhookEvent
from beltbilling.schemas.payments import NormalizedEvent
from beltbilling.services import payment_ledger, subscription_state
from beltbilling.services.billing_service import cancel_gateway_recurrence
from beltbilling.services.gateways import get_adapter

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")

Handler = Callable[[WebhookEvent, NormalizedEvent, Session, datetime], WebhookStatus]


def backoff_delay(retry_count: int) -> timedelta:
    """1, 2, 4, 8, 16... minutes for retry 1, 2, 3, 4, 5..."""
    return timedelta(minutes=2 ** (retry_count - 1))


def schedule_retry(
    event: WebhookEvent,
    error: str,
    now: datetime,
    *,
    transient: bool = True,
    max_retries: Optional[int] = None,
) -> None:
    """Record a failed attempt and decide whether another one is due.

    Transient failures get ``next_retry_at`` while ``retry_count`` stays within
    ``max_retries``; after that, and for any permanent failure, the event is
    left ``failed`` with no retry slot.
    """
    max_retries = settings.WEBHOOK_MAX_RETRIES if max_retries is None else max_retries
    event.retry_count = (event.retry_count or 0) + 1
    event.status = WebhookStatus.FAILED
    event.error_message = error[:2000]
    if transient and event.retry_count <= max_retries:
        event.next_retry_at = now + backoff_delay(event.retry_count)
    else:
        event.next_retry_at = None


# ============================================================================
# SUBSCRIPTION LOOKUP
# ============================================================================

def _find_subscription(ev: NormalizedEvent, db: Session) -> Subscription:
    """Locate and lock the subscription an event refers to.

    Tries the gateway recurrence id, then our own subscription id echoed back
    by the provider, then the gateway customer id.
    """
    query = db.query(Subscription)
    sub = None
    if ev.recurrence_id:
        sub = query.filter(Subscription.gateway_recurrence_id == ev.recurrence_id).with_for_update().first()
    if sub is None and ev.subscription_ref:
        try:
            ref = int(ev.subscription_ref)
        except ValueError:
            raise PermanentProcessingError(f"Malformed subscription reference {ev.subscription_ref!r}")
        sub = query.filter(Subscription.id == ref).with_for_update().first()
    if sub is None and ev.customer_id:
        sub = (
            query.filter(
                Subscription.gateway_customer_id == ev.customer_id,
                Subscription.gateway == Gateway(ev.gateway),
                Subscription.status.notin_([SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED]),
            )
            .order_by(Subscription.id.desc())
            .with_for_update()
            .first()
        )
    if sub is None:
        # May simply not be committed yet on our side; retry later
        raise TransientProcessingError(
            f"No subscription for recurrence={ev.recurrence_id} ref={ev.subscription_ref} customer={ev.customer_id}"
        )
    return sub


# ============================================================================
# HANDLERS
# ============================================================================

def _handle_payment_confirmed(event: WebhookEvent, ev: NormalizedEvent, db: Session, now: datetime) -> WebhookStatus:
    if not ev.gateway_payment_id:
        raise PermanentProcessingError("Confirmed payment without a gateway payment id")
    sub = _find_subscription(ev, db)
    event.subscription_id = sub.id

    # Checked under the subscription lock so two deliveries of one payment cannot both renew
    if payment_ledger.is_settled(ev.gateway_payment_id, db):
        webhook_logger.info(f"Payment {ev.gateway_payment_id} already applied to subscription {sub.id}")
        return WebhookStatus.PROCESSED

    gateway = Gateway(ev.gateway)
    paid_at = ev.paid_at or now
    subscription_state.confirm_payment(
        sub,
        gateway=gateway,
        paid_at=paid_at,
        interval=sub.plan.interval_delta(),
        recurrence_id=ev.recurrence_id,
        period_start=ev.period_start,
        period_end=ev.period_end,
    )
    payment_ledger.record_succeeded(
        sub,
        gateway=gateway,
        gateway_payment_id=ev.gateway_payment_id,
        amount_cents=ev.amount_cents if ev.amount_cents is not None else sub.plan.price_cents,
        paid_at=paid_at,
        period_start=sub.current_period_start,
        period_end=sub.current_period_end,
        db=db,
    )
    return WebhookStatus.PROCESSED


def _handle_payment_failed(event: WebhookEvent, ev: NormalizedEvent, db: Session, now: datetime) -> WebhookStatus:
    sub = _find_subscription(ev, db)
    event.subscription_id = sub.id
    if ev.gateway_payment_id and payment_ledger.get_by_gateway_payment_id(ev.gateway_payment_id, db):
        webhook_logger.info(f"Payment failure {ev.gateway_payment_id} already recorded")
        return WebhookStatus.PROCESSED

    payment_ledger.record_failed(
        sub,
        gateway=Gateway(ev.gateway),
        gateway_payment_id=ev.gateway_payment_id,
        amount_cents=ev.amount_cents,
        reason=ev.reason,
        db=db,
    )
    subscription_state.payment_failed(sub, now=now, reason=ev.reason)
    return WebhookStatus.PROCESSED


def _handle_payment_refunded(event: WebhookEvent, ev: NormalizedEvent, db: Session, now: datetime) -> WebhookStatus:
    payment_id = ev.gateway_payment_id or get_adapter(ev.gateway).resolve_payment_id(ev)
    if not payment_id:
        raise PermanentProcessingError("Refund without a gateway payment id")
    record = payment_ledger.mark_refunded(payment_id, db)
    if record is None:
        # The payment notification may still be on its way
        raise TransientProcessingError(f"Refund for unknown payment {payment_id}")
    event.subscription_id = record.subscription_id
    return WebhookStatus.PROCESSED


def _handle_recurrence_authorized(event: WebhookEvent, ev: NormalizedEvent, db: Session, now: datetime) -> WebhookStatus:
    sub = _find_subscription(ev, db)
    event.subscription_id = sub.id
    transition = subscription_state.recurrence_authorized(
        sub, gateway=Gateway(ev.gateway), recurrence_id=ev.recurrence_id, customer_id=ev.customer_id,
    )
    cancel_gateway_recurrence(transition.gateway, transition.cancel_gateway_recurrence)
    return WebhookStatus.PROCESSED


def _handle_recurrence_ended(event: WebhookEvent, ev: NormalizedEvent, db: Session, now: datetime) -> WebhookStatus:
    sub = _find_subscription(ev, db)
    event.subscription_id = sub.id
    subscription_state.recurrence_ended(
        sub, outcome=ev.event_type, recurrence_id=ev.recurrence_id, now=now, reason=ev.reason,
    )
    return WebhookStatus.PROCESSED


def _handle_ignored(event: WebhookEvent, ev: NormalizedEvent, db: Session, now: datetime) -> WebhookStatus:
    webhook_logger.debug(f"Skipping {ev.gateway} event {ev.event_id} ({ev.provider_event_type})")
    return WebhookStatus.SKIPPED


HANDLERS: Dict[EventType, Handler] = {
    EventType.PAYMENT_CONFIRMED: _handle_payment_confirmed,
    EventType.PAYMENT_FAILED: _handle_payment_failed,
    EventType.PAYMENT_REFUNDED: _handle_payment_refunded,
    EventType.RECURRENCE_AUTHORIZED: _handle_recurrence_authorized,
    EventType.RECURRENCE_REJECTED: _handle_recurrence_ended,
    EventType.RECURRENCE_CANCELED: _handle_recurrence_ended,
    EventType.RECURRENCE_EXPIRED: _handle_recurrence_ended,
    EventType.IGNORED: _handle_ignored,
}

_unhandled = set(EventType) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"Event types without a handler: {sorted(t.value for t in _unhandled)}")


# ============================================================================
# PROCESSING
# ============================================================================

def _claimable(now: datetime):
    stale_before = now - timedelta(seconds=settings.WEBHOOK_STALE_PROCESSING_SECONDS)
    return or_(
        WebhookEvent.status == WebhookStatus.PENDING,
        and_(
            WebhookEvent.status == WebhookStatus.FAILED,
            WebhookEvent.next_retry_at.isnot(None),
            WebhookEvent.next_retry_at <= now,
        ),
        and_(
            WebhookEvent.status == WebhookStatus.PROCESSING,
            WebhookEvent.updated_at < stale_before,
        ),
    )


def claim_event(event_id: int, db: Session, now: datetime) -> bool:
    """Atomically move a claimable event to ``processing``; False if someone else has it"""
    claimed = (
        db.query(WebhookEvent)
        .filter(WebhookEvent.id == event_id, WebhookEvent.archived_at.is_(None), _claimable(now))
        .update(
            {WebhookEvent.status: WebhookStatus.PROCESSING, WebhookEvent.updated_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    return claimed == 1


def _record_failure(event_id: int, db: Session, now: datetime, error: Exception, transient: bool) -> WebhookStatus:
    event = db.get(WebhookEvent, event_id)
    schedule_retry(event, f"{type(error).__name__}: {error}", now, transient=transient)
    db.commit()

    outcome = "retry_scheduled" if event.next_retry_at else "failed"
    webhook_processed_counter.labels(gateway=event.gateway, outcome=outcome).inc()
    if event.next_retry_at:
        webhook_logger.warning(
            f"Event #{event.id} ({event.gateway}/{event.event_id}) failed attempt {event.retry_count}, "
            f"retrying at {event.next_retry_at.isoformat()}: {error}"
        )
    else:
        webhook_logger.error(
            f"Event #{event.id} ({event.gateway}/{event.event_id}) permanently failed after "
            f"{event.retry_count} attempt(s): {error}"
        )
    return WebhookStatus.FAILED


def process_event(event_id: int, db: Session, now: Optional[datetime] = None) -> Optional[WebhookStatus]:
    """Claim and apply one stored event.

    Returns the event's resulting status, or None when the event was not
    claimable (already processed, being processed elsewhere, or not yet due).
    """
    now = now or utcnow()
    if not claim_event(event_id, db, now):
        logger.debug(f"Event #{event_id} not claimable, skipping")
        return None

    event = db.get(WebhookEvent, event_id)
    try:
        normalized = NormalizedEvent.model_validate(event.payload)
    except SchemaValidationError as e:
        return _record_failure(event_id, db, now, PermanentProcessingError(f"Malformed stored event: {e}"), False)

    handler = HANDLERS[normalized.event_type]
    try:
        status = handler(event, normalized, db, now)
        event.status = status
        event.processed_at = now
        event.next_retry_at = None
        event.error_message = None
        db.commit()
    except ProcessingError as e:
        db.rollback()
        return _record_failure(event_id, db, now, e, e.transient)
    except GatewayError as e:
        db.rollback()
        return _record_failure(event_id, db, now, e, e.retryable)
    except Exception as e:
        db.rollback()
        logger.error(f"Unexpected error processing event #{event_id}: {e}", exc_info=True)
        return _record_failure(event_id, db, now, e, True)

    webhook_processed_counter.labels(gateway=event.gateway, outcome=status.value).inc()
    webhook_logger.info(f"Event #{event.id} ({event.gateway}/{event.event_id}) {status.value}")
    return status


def process_event_in_new_session(event_id: int) -> Optional[WebhookStatus]:
    """Background-task entry point: process an event with its own session"""
    db = SessionLocal()
    try:
        return process_event(event_id, db)
    except Exception as e:
        logger.error(f"Error processing event #{event_id} in background: {e}", exc_info=True)
        return None
    finally:
        db.close()


def due_event_ids(db: Session, now: datetime, limit: int = 100) -> List[int]:
    """Events the retry sweep should attempt now.

    Includes failed events whose retry time has come, pending events older
    than the grace window (their background dispatch never ran), and
    processing events that look abandoned.
    """
    pending_before = now - timedelta(seconds=settings.WEBHOOK_PENDING_GRACE_SECONDS)
    stale_before = now - timedelta(seconds=settings.WEBHOOK_STALE_PROCESSING_SECONDS)
    rows = (
        db.query(WebhookEvent.id)
        .filter(
            WebhookEvent.archived_at.is_(None),
            or_(
                and_(
                    WebhookEvent.status == WebhookStatus.FAILED,
                    WebhookEvent.next_retry_at.isnot(None),
                    WebhookEvent.next_retry_at <= now,
                ),
                and_(WebhookEvent.status == WebhookStatus.PENDING, WebhookEvent.received_at <= pending_before),
                and_(WebhookEvent.status == WebhookStatus.PROCESSING, WebhookEvent.updated_at < stale_before),
            ),
        )
        .order_by(WebhookEvent.received_at, WebhookEvent.id)
        .limit(limit)
        .all()
    )
    return [row.id for row in rows]


def retry_due_events(db: Session, now: Optional[datetime] = None, limit: int = 100) -> Dict[str, int]:
    """One pass of the retry sweep. Safe to run concurrently with webhook dispatch."""
    now = now or utcnow()
    results = {"attempted": 0, "processed": 0, "failed": 0}
    for event_id in due_event_ids(db, now, limit):
        status = process_event(event_id, db, now)
        if status is None:
            continue
        results["attempted"] += 1
        if status == WebhookStatus.FAILED:
            results["failed"] += 1
        else:
            results["processed"] += 1
    return results


def requeue_event(event_id: int, db: Session) -> WebhookEvent:
    """Operator action: give a permanently failed event a fresh retry budget.

    Raises:
        LookupError: no such event
        ValueError: event is not in a requeueable state
    """
    event = db.get(WebhookEvent, event_id)
    if event is None:
        raise LookupError(f"Webhook event {event_id} not found")
    if event.status != WebhookStatus.FAILED:
        raise ValueError(f"Event {event_id} is {event.status.value}; only failed events can be requeued")
    event.status = WebhookStatus.PENDING
    event.retry_count = 0
    event.next_retry_at = None
    event.archived_at = None
    db.commit()
    webhook_logger.info(f"Requeued event #{event_id} ({event.gateway}/{event.event_id})")
    return event
