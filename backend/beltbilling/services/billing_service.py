"""Outbound billing flows: trials, gateway enrolment and cancellation"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from beltbilling.core.errors import ConflictError, GatewayError, IllegalTransitionError, NotFoundError
from beltbilling.models.base import utcnow
from beltbilling.models.enums import Gateway, PlanInterval, SubscriptionStatus
from beltbilling.models.plan import Plan
from beltbilling.models.subscription import Subscription
from beltbilling.schemas.payments import Charge, ChargeRequest, Payer, Periodicity, RecurrenceRequest
from beltbilling.services import subscription_state
from beltbilling.services.gateways import GatewayAdapter, get_adapter
from beltbilling.services.subscription_state import Transition

billing_logger = logging.getLogger("billing")


class SubscriptionNotFoundError(LookupError):
    pass


def get_subscription_for_update(subscription_id: int, db: Session) -> Subscription:
    """Load a subscription holding its row lock until the transaction ends"""
    sub = (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id)
        .with_for_update()
        .first()
    )
    if sub is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return sub


def cancel_gateway_recurrence(gateway: Gateway, recurrence_id: Optional[str]) -> bool:
    """Cancel a recurrence at its gateway.

    A recurrence the gateway no longer knows, or that it reports as already
    ended, counts as canceled. Retryable gateway errors propagate so the caller
    can roll back and try again later.

    Returns:
        True if a gateway call was made
    """
    if not recurrence_id or gateway in (None, Gateway.NONE):
        return False
    try:
        get_adapter(gateway.value).cancel_recurrence(recurrence_id)
    except (NotFoundError, ConflictError) as e:
        billing_logger.info(f"Recurrence {recurrence_id} already ended at {gateway.value}: {e}")
    return True


def create_trial(owner_id: str, plan: Plan, db: Session, now: Optional[datetime] = None) -> Subscription:
    now = now or utcnow()
    sub = Subscription(
        owner_id=owner_id,
        plan_id=plan.id,
        status=SubscriptionStatus.TRIALING,
        gateway=Gateway.NONE,
        trial_end_date=now + timedelta(days=plan.trial_days or 0),
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)
    billing_logger.info(f"Created trial subscription {sub.id} for {owner_id} on plan {plan.slug}")
    return sub


def start_recurring_billing(
    subscription_id: int,
    gateway: Gateway,
    payer: Payer,
    db: Session,
    *,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    adapter: Optional[GatewayAdapter] = None,
) -> Charge:
    """Enrol a subscription in recurring billing on ``gateway``.

    PIX returns a recurrence the payer must authorize in their bank app; its id
    is stored right away. Card returns a checkout URL; the Stripe subscription
    is attached when ``checkout.session.completed`` arrives.

    Raises:
        IllegalTransitionError: subscription already ended
        ConflictError: subscription already has a live recurrence
        GatewayError: gateway call failed
    """
    sub = get_subscription_for_update(subscription_id, db)
    if sub.status.is_terminal:
        raise IllegalTransitionError(sub.status.value, SubscriptionStatus.ACTIVE.value, sub.id)
    if sub.gateway_recurrence_id:
        raise ConflictError(
            f"Subscription {sub.id} already has recurrence {sub.gateway_recurrence_id}",
            gateway=sub.gateway.value,
        )

    plan = sub.plan
    adapter = adapter or get_adapter(gateway.value)
    if gateway == Gateway.PIX:
        start = sub.trial_end_date if sub.trial_end_date and sub.trial_end_date > utcnow() else utcnow()
        req = RecurrenceRequest(
            subscription_id=sub.id,
            amount_cents=plan.price_cents,
            description=plan.name,
            payer=payer,
            periodicity=Periodicity.YEARLY if plan.interval == PlanInterval.YEARLY else Periodicity.MONTHLY,
            start_date=start.date(),
        )
    else:
        req = ChargeRequest(
            subscription_id=sub.id,
            amount_cents=plan.price_cents,
            description=plan.name,
            payer=payer,
            price_id=plan.stripe_price_id,
            customer_id=sub.gateway_customer_id,
            success_url=success_url,
            cancel_url=cancel_url,
        )

    try:
        charge = adapter.create_recurring_charge(req)
    except GatewayError:
        db.rollback()
        raise

    if gateway == Gateway.PIX:
        sub.gateway = gateway
        sub.gateway_recurrence_id = charge.charge_id
    db.commit()
    billing_logger.info(f"Started {gateway.value} billing for subscription {sub.id} (charge {charge.charge_id})")
    return charge


def cancel_subscription(
    subscription_id: int,
    db: Session,
    *,
    at_period_end: bool = False,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transition:
    """Cancel a subscription now or at the end of its paid period.

    An immediate cancel calls the gateway before committing; if the gateway
    call fails with a retryable error nothing is changed locally.
    """
    now = now or utcnow()
    sub = get_subscription_for_update(subscription_id, db)
    transition = subscription_state.request_cancel(sub, now=now, at_period_end=at_period_end, reason=reason)
    try:
        cancel_gateway_recurrence(transition.gateway, transition.cancel_gateway_recurrence)
    except GatewayError:
        db.rollback()
        raise
    db.commit()
    return transition
