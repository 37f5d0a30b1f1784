"""Subscription lifecycle state machine.

Every status change of a Subscription goes through this module. The functions
mutate the entity in memory and return a ``Transition`` describing what
happened; they never touch the database or a gateway. When a transition ends a
live gateway recurrence, ``Transition.cancel_gateway_recurrence`` names the
recurrence the caller must cancel before committing.

    trialing -> active | expired | canceled
    active   -> active (renew) | past_due | canceled
    past_due -> active | canceled
    canceled, expired: terminal
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from beltbilling.core.errors import IllegalTransitionError
from beltbilling.core.metrics import subscription_transition_counter
from beltbilling.models.enums import EventType, Gateway, SubscriptionStatus
from beltbilling.models.subscription import Subscription

billing_logger = logging.getLogger("billing")

TRIALING = SubscriptionStatus.TRIALING
ACTIVE = SubscriptionStatus.ACTIVE
PAST_DUE = SubscriptionStatus.PAST_DUE
CANCELED = SubscriptionStatus.CANCELED
EXPIRED = SubscriptionStatus.EXPIRED

ALLOWED_TRANSITIONS = {
    TRIALING: frozenset({ACTIVE, EXPIRED, CANCELED}),
    ACTIVE: frozenset({ACTIVE, PAST_DUE, CANCELED}),
    PAST_DUE: frozenset({ACTIVE, CANCELED}),
    CANCELED: frozenset(),
    EXPIRED: frozenset(),
}

# Reasons recorded in Subscription.cancel_reason
REASON_GRACE_EXPIRED = "grace_period_expired"
REASON_TRIAL_EXPIRED = "trial_expired"
REASON_REQUESTED = "requested"
REASON_GATEWAY_CANCELED = "gateway_recurrence_ended"


@dataclass(frozen=True)
class Transition:
    subscription_id: int
    from_status: SubscriptionStatus
    to_status: SubscriptionStatus
    reason: str
    cancel_gateway_recurrence: Optional[str] = None
    gateway: Gateway = Gateway.NONE
    deferred: bool = False

    @property
    def changed(self) -> bool:
        return self.from_status != self.to_status


def can_transition(from_status: SubscriptionStatus, to_status: SubscriptionStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


def _move(sub: Subscription, to_status: SubscriptionStatus, reason: str, **extra) -> Transition:
    from_status = sub.status
    if not can_transition(from_status, to_status):
        raise IllegalTransitionError(from_status.value, to_status.value, sub.id)
    sub.status = to_status
    transition = Transition(sub.id, from_status, to_status, reason, **extra)
    if transition.changed:
        subscription_transition_counter.labels(from_status=from_status.value, to_status=to_status.value).inc()
        billing_logger.info(f"Subscription {sub.id}: {from_status.value} -> {to_status.value} ({reason})")
    return transition


def _noop(sub: Subscription, reason: str) -> Transition:
    return Transition(sub.id, sub.status, sub.status, reason)


def _terminate(sub: Subscription, to_status: SubscriptionStatus, reason: str, now: datetime) -> Transition:
    """Move to a terminal status and release the recurrence reference"""
    recurrence_id = sub.gateway_recurrence_id
    gateway = sub.gateway
    transition = _move(
        sub, to_status, reason,
        cancel_gateway_recurrence=recurrence_id, gateway=gateway,
    )
    sub.gateway_recurrence_id = None
    sub.cancel_at_period_end = False
    if to_status == CANCELED:
        sub.canceled_at = now
        sub.cancel_reason = sub.cancel_reason or reason
    return transition


# ============================================================================
# PAYMENT-DRIVEN TRANSITIONS
# ============================================================================

def confirm_payment(
    sub: Subscription,
    *,
    gateway: Gateway,
    paid_at: datetime,
    interval: timedelta,
    recurrence_id: Optional[str] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
) -> Transition:
    """Apply a confirmed payment: activate, renew or recover from past_due.

    The new period end is the payment's covered period end when the provider
    reports one; otherwise one plan interval is added to the later of the
    current period end and the payment time. ``current_period_end`` never
    moves backward.

    Callers must check the payment ledger first: applying the same payment
    twice would renew twice.
    """
    previous_end = sub.current_period_end
    transition = _move(sub, ACTIVE, "payment_confirmed", gateway=gateway)

    if period_end is None:
        anchor = max(previous_end, paid_at) if previous_end else paid_at
        period_end = anchor + interval
        period_start = period_start or anchor

    if previous_end is None or period_end > previous_end:
        sub.current_period_start = period_start or previous_end or paid_at
        sub.current_period_end = period_end

    sub.gateway = gateway
    if recurrence_id:
        sub.gateway_recurrence_id = recurrence_id
    sub.past_due_since = None
    return transition


def payment_failed(sub: Subscription, *, now: datetime, reason: Optional[str] = None) -> Transition:
    """A charge attempt failed. Active subscriptions go past_due.

    Trialing subscriptions keep their trial and already past_due ones stay as
    they are; the sweep decides what happens when the period or grace runs out.
    """
    if sub.status in (TRIALING, PAST_DUE):
        billing_logger.info(f"Subscription {sub.id}: payment failure recorded while {sub.status.value}")
        return _noop(sub, "payment_failed")
    transition = _move(sub, PAST_DUE, reason or "payment_failed")
    sub.past_due_since = now
    return transition


# ============================================================================
# SWEEP-DRIVEN TRANSITIONS
# ============================================================================
# Each returns None when the subscription is not (or no longer) due.

def expire_trial(sub: Subscription, *, now: datetime) -> Optional[Transition]:
    if sub.status != TRIALING or sub.trial_end_date is None or now <= sub.trial_end_date:
        return None
    return _terminate(sub, EXPIRED, REASON_TRIAL_EXPIRED, now)


def mark_overdue(sub: Subscription, *, now: datetime) -> Optional[Transition]:
    """Active subscription whose paid period ended without a renewal"""
    if sub.status != ACTIVE or sub.current_period_end is None or now <= sub.current_period_end:
        return None
    transition = _move(sub, PAST_DUE, "period_ended_without_renewal")
    sub.past_due_since = now
    return transition


def cancel_overdue(sub: Subscription, *, now: datetime, grace: timedelta) -> Optional[Transition]:
    """Past-due subscription whose grace period has run out"""
    if sub.status != PAST_DUE or sub.past_due_since is None or now - sub.past_due_since <= grace:
        return None
    return _terminate(sub, CANCELED, REASON_GRACE_EXPIRED, now)


def apply_scheduled_cancel(sub: Subscription, *, now: datetime) -> Optional[Transition]:
    """Carry out a cancel-at-period-end once the period has ended"""
    if not sub.cancel_at_period_end or sub.status.is_terminal:
        return None
    if sub.current_period_end is not None and now < sub.current_period_end:
        return None
    return _terminate(sub, CANCELED, sub.cancel_reason or REASON_REQUESTED, now)


# ============================================================================
# EXPLICIT / GATEWAY-DRIVEN CANCELLATION
# ============================================================================

def request_cancel(
    sub: Subscription,
    *,
    now: datetime,
    at_period_end: bool = False,
    reason: Optional[str] = None,
) -> Transition:
    """Cancel now, or flag the subscription to cancel when its period ends.

    Raises:
        IllegalTransitionError: the subscription is already canceled or expired
    """
    if sub.status.is_terminal:
        raise IllegalTransitionError(sub.status.value, CANCELED.value, sub.id)

    reason = reason or REASON_REQUESTED
    if at_period_end and sub.current_period_end is not None and now < sub.current_period_end:
        sub.cancel_at_period_end = True
        sub.cancel_reason = reason
        billing_logger.info(f"Subscription {sub.id}: cancellation scheduled for {sub.current_period_end.isoformat()}")
        return Transition(sub.id, sub.status, sub.status, reason, deferred=True)

    sub.cancel_reason = reason
    return _terminate(sub, CANCELED, reason, now)


def recurrence_authorized(
    sub: Subscription,
    *,
    gateway: Gateway,
    recurrence_id: Optional[str],
    customer_id: Optional[str] = None,
) -> Transition:
    """Payer authorized recurring billing; attach the recurrence reference.

    A late authorization for a subscription that already ended is handed back
    for cancellation at the gateway instead of being attached.
    """
    if sub.status.is_terminal:
        billing_logger.warning(
            f"Subscription {sub.id} is {sub.status.value}; recurrence {recurrence_id} will be canceled"
        )
        return Transition(
            sub.id, sub.status, sub.status, "authorized_after_end",
            cancel_gateway_recurrence=recurrence_id, gateway=gateway,
        )

    sub.gateway = gateway
    if recurrence_id:
        sub.gateway_recurrence_id = recurrence_id
    if customer_id:
        sub.gateway_customer_id = customer_id
    return _noop(sub, "recurrence_authorized")


def recurrence_ended(
    sub: Subscription,
    *,
    outcome: EventType,
    recurrence_id: Optional[str],
    now: datetime,
    reason: Optional[str] = None,
) -> Transition:
    """The gateway reports a recurrence rejected, canceled or expired.

    Notifications for a recurrence that is no longer the subscription's live
    one (including the echo of our own cancellation) change nothing. A
    rejected authorization only detaches the recurrence. A canceled or expired
    recurrence ends a subscription that was still billing through it.
    """
    if outcome not in (EventType.RECURRENCE_REJECTED, EventType.RECURRENCE_CANCELED, EventType.RECURRENCE_EXPIRED):
        raise ValueError(f"Not a recurrence-ended event: {outcome}")

    if sub.status.is_terminal or not recurrence_id or sub.gateway_recurrence_id != recurrence_id:
        return _noop(sub, "stale_recurrence_notification")

    if outcome == EventType.RECURRENCE_REJECTED or sub.status == TRIALING:
        sub.gateway_recurrence_id = None
        billing_logger.info(f"Subscription {sub.id}: recurrence {recurrence_id} detached ({outcome.value})")
        return _noop(sub, outcome.value)

    sub.cancel_reason = reason or REASON_GATEWAY_CANCELED
    transition = _terminate(sub, CANCELED, sub.cancel_reason, now)
    # The gateway already ended it; nothing left to cancel there
    return Transition(
        transition.subscription_id, transition.from_status, transition.to_status, transition.reason,
    )
