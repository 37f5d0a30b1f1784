"""Reconciliation sweep: lifecycle transitions no webhook will ever trigger.

Each pass, in order:
1. trials past their end date with no payment -> expired
2. cancel-at-period-end subscriptions whose period ended -> canceled
3. active subscriptions past their period end -> past_due
4. past_due subscriptions beyond the grace period -> canceled

Each subscription is handled in its own transaction under a row lock. A gateway
cancellation, when needed, happens before the commit; if it fails with a
retryable error the subscription is left untouched for the next pass.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from beltbilling.core.config import settings
from beltbilling.core.errors import GatewayError
from beltbilling.models.base import utcnow
from beltbilling.models.enums import SubscriptionStatus
from beltbilling.models.subscription import Subscription
from beltbilling.services import subscription_state
from beltbilling.services.billing_service import cancel_gateway_recurrence
from beltbilling.services.subscription_state import Transition

billing_logger = logging.getLogger("billing")

Step = Callable[[Subscription, datetime], Optional[Transition]]


def _candidates(db: Session, *criteria) -> List[int]:
    return [row.id for row in db.query(Subscription.id).filter(*criteria).order_by(Subscription.id).all()]


def _apply(subscription_id: int, step: Step, db: Session, now: datetime) -> Optional[Transition]:
    """Lock one subscription, apply ``step`` and commit (or roll back on gateway failure)"""
    sub = (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id)
        .with_for_update()
        .first()
    )
    if sub is None:
        db.rollback()
        return None

    transition = step(sub, now)
    if transition is None:
        # Changed since it was selected
        db.rollback()
        return None

    try:
        cancel_gateway_recurrence(transition.gateway, transition.cancel_gateway_recurrence)
    except GatewayError:
        db.rollback()
        raise
    db.commit()
    return transition


def run_reconciliation(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """One reconciliation pass. Returns counts per step plus errors."""
    now = now or utcnow()
    grace = timedelta(days=settings.SUBSCRIPTION_GRACE_PERIOD_DAYS)

    steps = [
        (
            "trials_expired",
            lambda sub, at: subscription_state.expire_trial(sub, now=at),
            (Subscription.status == SubscriptionStatus.TRIALING, Subscription.trial_end_date < now),
        ),
        (
            "scheduled_cancels",
            lambda sub, at: subscription_state.apply_scheduled_cancel(sub, now=at),
            (
                Subscription.cancel_at_period_end.is_(True),
                Subscription.status.in_([
                    SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE,
                ]),
                Subscription.current_period_end <= now,
            ),
        ),
        (
            "marked_past_due",
            lambda sub, at: subscription_state.mark_overdue(sub, now=at),
            (Subscription.status == SubscriptionStatus.ACTIVE, Subscription.current_period_end < now),
        ),
        (
            "canceled_overdue",
            lambda sub, at: subscription_state.cancel_overdue(sub, now=at, grace=grace),
            (Subscription.status == SubscriptionStatus.PAST_DUE, Subscription.past_due_since < now - grace),
        ),
    ]

    results = {name: 0 for name, _, _ in steps}
    results["errors"] = 0
    for name, step, criteria in steps:
        for subscription_id in _candidates(db, *criteria):
            try:
                if _apply(subscription_id, step, db, now):
                    results[name] += 1
            except GatewayError as e:
                results["errors"] += 1
                billing_logger.warning(f"Reconciliation of subscription {subscription_id} deferred ({name}): {e}")
            except Exception as e:
                db.rollback()
                results["errors"] += 1
                billing_logger.error(f"Reconciliation of subscription {subscription_id} failed ({name}): {e}", exc_info=True)

    if any(results.values()):
        billing_logger.info(f"Reconciliation pass: {results}")
    return results
