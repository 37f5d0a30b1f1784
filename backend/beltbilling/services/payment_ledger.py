"""Payment ledger - one row per payment attempt, keyed by the gateway payment id.

Functions here add and flush but never commit; the caller owns the
transaction so a ledger entry and the matching subscription change land
together.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from beltbilling.core.errors import PermanentProcessingError
from beltbilling.models.enums import Gateway, PaymentStatus
from beltbilling.models.payment_record import PaymentRecord
from beltbilling.models.subscription import Subscription

logger = logging.getLogger(__name__)

# Status only moves forward
_FORWARD = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.SUCCEEDED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}


class PaymentStatusError(PermanentProcessingError):
    """Attempt to move a payment record backward"""


def advance_status(record: PaymentRecord, new_status: PaymentStatus) -> None:
    if new_status not in _FORWARD[record.status]:
        raise PaymentStatusError(
            f"Payment {record.gateway_payment_id or record.id} cannot move "
            f"{record.status.value} -> {new_status.value}"
        )
    record.status = new_status


def get_by_gateway_payment_id(gateway_payment_id: Optional[str], db: Session) -> Optional[PaymentRecord]:
    if not gateway_payment_id:
        return None
    return db.query(PaymentRecord).filter(PaymentRecord.gateway_payment_id == gateway_payment_id).first()


def is_settled(gateway_payment_id: Optional[str], db: Session) -> bool:
    """True when this payment was already applied (succeeded, or later refunded)"""
    record = get_by_gateway_payment_id(gateway_payment_id, db)
    return record is not None and record.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED)


def record_succeeded(
    subscription: Subscription,
    *,
    gateway: Gateway,
    gateway_payment_id: Optional[str],
    amount_cents: int,
    paid_at: datetime,
    period_start: Optional[datetime],
    period_end: Optional[datetime],
    db: Session,
) -> PaymentRecord:
    record = get_by_gateway_payment_id(gateway_payment_id, db)
    if record is None:
        record = PaymentRecord(
            subscription_id=subscription.id,
            gateway=gateway,
            gateway_payment_id=gateway_payment_id,
            amount_cents=amount_cents,
            status=PaymentStatus.PENDING,
        )
        db.add(record)
    advance_status(record, PaymentStatus.SUCCEEDED)
    record.paid_at = paid_at
    record.period_start = period_start
    record.period_end = period_end
    db.flush()
    logger.info(
        f"Recorded payment {gateway_payment_id} for subscription {subscription.id}: "
        f"{amount_cents} cents, period ends {period_end.isoformat() if period_end else '-'}"
    )
    return record


def record_failed(
    subscription: Subscription,
    *,
    gateway: Gateway,
    gateway_payment_id: Optional[str],
    amount_cents: Optional[int],
    reason: Optional[str],
    db: Session,
) -> PaymentRecord:
    record = get_by_gateway_payment_id(gateway_payment_id, db)
    if record is None:
        record = PaymentRecord(
            subscription_id=subscription.id,
            gateway=gateway,
            gateway_payment_id=gateway_payment_id,
            amount_cents=amount_cents or 0,
            status=PaymentStatus.PENDING,
        )
        db.add(record)
    advance_status(record, PaymentStatus.FAILED)
    record.failure_reason = reason
    db.flush()
    logger.info(f"Recorded failed payment {gateway_payment_id or '-'} for subscription {subscription.id}")
    return record


def mark_refunded(gateway_payment_id: str, db: Session) -> Optional[PaymentRecord]:
    """Flag a succeeded payment as refunded; returns None if the payment is unknown"""
    record = get_by_gateway_payment_id(gateway_payment_id, db)
    if record is None:
        return None
    if record.status == PaymentStatus.REFUNDED:
        return record
    advance_status(record, PaymentStatus.REFUNDED)
    db.flush()
    logger.info(f"Payment {gateway_payment_id} refunded")
    return record


def list_for_subscription(subscription_id: int, db: Session) -> List[PaymentRecord]:
    return (
        db.query(PaymentRecord)
        .filter(PaymentRecord.subscription_id == subscription_id)
        .order_by(PaymentRecord.created_at, PaymentRecord.id)
        .all()
    )
