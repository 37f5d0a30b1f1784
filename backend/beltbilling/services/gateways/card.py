"""Card billing adapter (Stripe subscriptions via Checkout).

The Stripe secret key is served through the CredentialCache like any other
bearer credential and passed per request as ``api_key``, so a 401 from Stripe
goes through the same invalidate-and-retry path as the PIX gateway.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

import stripe
from pydantic import ValidationError as SchemaValidationError

from beltbilling.core.config import GATEWAY_CARD, settings
from beltbilling.core.errors import (
    AuthError, PayloadError, RateLimitError, TransportError, ValidationError,
    error_for_status
)
from beltbilling.models.enums import EventType
from beltbilling.schemas.payments import (
    Charge, ChargeRequest, ChargeState, ChargeStatus, NormalizedEvent
)
from beltbilling.services.credential_cache import (
    DEFAULT_REFRESH_LEAD, CredentialCache, StaticSecret
)
from beltbilling.services.gateways.base import GatewayAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")

SIGNATURE_TOLERANCE_SECONDS = 300

_SUBSCRIPTION_STATE = {
    "incomplete": ChargeState.PENDING,
    "trialing": ChargeState.AUTHORIZED,
    "active": ChargeState.AUTHORIZED,
    "past_due": ChargeState.AUTHORIZED,
    "unpaid": ChargeState.AUTHORIZED,
    "paused": ChargeState.AUTHORIZED,
    "canceled": ChargeState.CANCELED,
    "incomplete_expired": ChargeState.EXPIRED,
}


def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, default)
    return default if value is None else value


def _from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError) as e:
        raise PayloadError(f"Invalid timestamp: {value!r}") from e


def _expand_id(value: Any) -> Optional[str]:
    """Stripe fields may hold either an id or an expanded object"""
    if value is None or isinstance(value, str):
        return value
    return _get_stripe_value(value, "id")


class CardAdapter(GatewayAdapter):
    gateway = GATEWAY_CARD
    signature_header = "Stripe-Signature"

    def __init__(
        self,
        cache: CredentialCache,
        *,
        webhook_secret: str = "",
        resolve_secret: Optional[Callable[[], str]] = None,
        timeout: float = 30.0,
        refresh_lead: float = DEFAULT_REFRESH_LEAD,
        api_version: Optional[str] = None,
    ):
        super().__init__(cache)
        self._webhook_secret = webhook_secret
        stripe.api_version = api_version or settings.STRIPE_API_VERSION
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        cache.register(
            self.gateway,
            StaticSecret(resolve_secret or (lambda: settings.STRIPE_SECRET_KEY), gateway=self.gateway),
            refresh_lead,
        )

    def _stripe_call(self, operation: str, fn: Callable[[str], T]) -> T:
        """Run a Stripe SDK call with the cached key, mapping SDK errors to the gateway taxonomy"""
        def send(api_key: str) -> T:
            try:
                return fn(api_key)
            except stripe.AuthenticationError as e:
                raise AuthError(str(e.user_message or e), gateway=self.gateway, status_code=401) from e
            except stripe.RateLimitError as e:
                raise RateLimitError(str(e.user_message or e), gateway=self.gateway, status_code=429) from e
            except stripe.APIConnectionError as e:
                raise TransportError(str(e.user_message or e), gateway=self.gateway) from e
            except stripe.StripeError as e:
                status = e.http_status or 500
                raise error_for_status(status, str(e.user_message or e), gateway=self.gateway, code=e.code) from e

        return self._call_authenticated(operation, send)

    @property
    def signature_required(self) -> bool:
        return bool(self._webhook_secret)

    def create_recurring_charge(self, req: ChargeRequest) -> Charge:
        """Open a Checkout session in subscription mode.

        The session and the resulting Stripe subscription both carry our
        subscription id in metadata so later webhooks can be matched back.
        """
        if not req.price_id:
            raise ValidationError("Card billing requires a price reference", gateway=self.gateway)
        if not req.success_url or not req.cancel_url:
            raise ValidationError("Checkout requires success_url and cancel_url", gateway=self.gateway)

        metadata = {"subscription_id": str(req.subscription_id)}
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": req.price_id, "quantity": 1}],
            "success_url": req.success_url,
            "cancel_url": req.cancel_url,
            "client_reference_id": str(req.subscription_id),
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if req.customer_id:
            params["customer"] = req.customer_id
        elif req.payer.email:
            params["customer_email"] = req.payer.email

        session = self._stripe_call(
            "checkout.Session.create",
            lambda api_key: stripe.checkout.Session.create(api_key=api_key, **params),
        )
        session_id = _get_stripe_value(session, "id")
        logger.info(f"Created checkout session {session_id} for subscription {req.subscription_id}")
        return Charge(
            charge_id=session_id,
            status=ChargeState.PENDING,
            provider_status=_get_stripe_value(session, "status"),
            authorization_artifact=_get_stripe_value(session, "url"),
        )

    def get_charge_status(self, charge_id: str) -> ChargeStatus:
        """Status of a checkout session (``cs_...``) or a subscription (``sub_...``)"""
        if charge_id.startswith("cs_"):
            session = self._stripe_call(
                "checkout.Session.retrieve",
                lambda api_key: stripe.checkout.Session.retrieve(charge_id, api_key=api_key),
            )
            provider_status = _get_stripe_value(session, "status")
            if provider_status == "complete":
                state = ChargeState.AUTHORIZED
            elif provider_status == "expired":
                state = ChargeState.EXPIRED
            else:
                state = ChargeState.PENDING
            return ChargeStatus(charge_id=charge_id, status=state, provider_status=provider_status)

        subscription = self._stripe_call(
            "Subscription.retrieve",
            lambda api_key: stripe.Subscription.retrieve(charge_id, api_key=api_key),
        )
        provider_status = _get_stripe_value(subscription, "status")
        return ChargeStatus(
            charge_id=charge_id,
            status=_SUBSCRIPTION_STATE.get(provider_status, ChargeState.PENDING),
            provider_status=provider_status,
        )

    def cancel_recurrence(self, recurrence_id: str) -> None:
        if not recurrence_id:
            raise ValidationError("Subscription id is required", gateway=self.gateway)
        self._stripe_call(
            "Subscription.cancel",
            lambda api_key: stripe.Subscription.cancel(recurrence_id, api_key=api_key),
        )
        logger.info(f"Canceled Stripe subscription {recurrence_id}")

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not self._webhook_secret:
            return True
        if not signature:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self._webhook_secret,
                tolerance=SIGNATURE_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning(f"Invalid Stripe webhook signature: {e}")
            return False
        return True

    def parse_webhook_payload(self, payload: bytes) -> List[NormalizedEvent]:
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise PayloadError(f"Invalid JSON: {e}") from e
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise PayloadError("Stripe event missing id or type")

        obj = (event.get("data") or {}).get("object")
        if not isinstance(obj, dict):
            raise PayloadError("Stripe event missing data.object")

        try:
            return [self._normalize(event, obj)]
        except SchemaValidationError as e:
            raise PayloadError(f"Invalid Stripe event: {e}") from e

    def _normalize(self, event: Dict[str, Any], obj: Dict[str, Any]) -> NormalizedEvent:
        event_type = event["type"]
        base = {
            "gateway": self.gateway,
            "event_id": event["id"],
            "provider_event_type": event_type,
            "raw": event,
        }

        if event_type in ("invoice.paid", "invoice.payment_succeeded"):
            line = ((obj.get("lines") or {}).get("data") or [{}])[0]
            period = line.get("period") or {}
            paid_at = (obj.get("status_transitions") or {}).get("paid_at") or event.get("created")
            return NormalizedEvent(
                event_type=EventType.PAYMENT_CONFIRMED,
                recurrence_id=self._invoice_subscription(obj),
                subscription_ref=self._invoice_subscription_ref(obj),
                customer_id=_expand_id(obj.get("customer")),
                gateway_payment_id=obj.get("id"),
                amount_cents=obj.get("amount_paid"),
                period_start=_from_epoch(period.get("start")),
                period_end=_from_epoch(period.get("end")),
                paid_at=_from_epoch(paid_at),
                **base,
            )

        if event_type == "invoice.payment_failed":
            last_error = (obj.get("last_finalization_error") or {}).get("message")
            return NormalizedEvent(
                event_type=EventType.PAYMENT_FAILED,
                recurrence_id=self._invoice_subscription(obj),
                subscription_ref=self._invoice_subscription_ref(obj),
                customer_id=_expand_id(obj.get("customer")),
                gateway_payment_id=self._failed_attempt_id(obj),
                amount_cents=obj.get("amount_due"),
                reason=last_error or f"Invoice {obj.get('id')} payment failed (attempt {obj.get('attempt_count')})",
                **base,
            )

        if event_type == "charge.refunded":
            # Ledger rows are keyed by invoice id; basil charges no longer carry it
            return NormalizedEvent(
                event_type=EventType.PAYMENT_REFUNDED,
                customer_id=_expand_id(obj.get("customer")),
                gateway_payment_id=_expand_id(obj.get("invoice")),
                amount_cents=obj.get("amount_refunded"),
                **base,
            )

        if event_type == "checkout.session.completed":
            metadata = obj.get("metadata") or {}
            return NormalizedEvent(
                event_type=EventType.RECURRENCE_AUTHORIZED,
                recurrence_id=_expand_id(obj.get("subscription")),
                subscription_ref=obj.get("client_reference_id") or metadata.get("subscription_id"),
                customer_id=_expand_id(obj.get("customer")),
                **base,
            )

        if event_type == "customer.subscription.deleted":
            metadata = obj.get("metadata") or {}
            details = obj.get("cancellation_details") or {}
            return NormalizedEvent(
                event_type=EventType.RECURRENCE_CANCELED,
                recurrence_id=obj.get("id"),
                subscription_ref=metadata.get("subscription_id"),
                customer_id=_expand_id(obj.get("customer")),
                reason=details.get("reason") or "Subscription deleted in Stripe",
                **base,
            )

        return NormalizedEvent(event_type=EventType.IGNORED, **base)

    def resolve_payment_id(self, event: NormalizedEvent) -> Optional[str]:
        """Invoice id a refunded charge belongs to.

        Charges from API versions before 2025-03-31 name the invoice directly.
        Newer ones only carry the payment intent, which is mapped back to its
        invoice through the InvoicePayment list.
        """
        if event.gateway_payment_id:
            return event.gateway_payment_id
        obj = (event.raw.get("data") or {}).get("object") or {}
        payment_intent = _expand_id(obj.get("payment_intent"))
        if not payment_intent:
            return None

        payments = self._stripe_call(
            "InvoicePayment.list",
            lambda api_key: stripe.InvoicePayment.list(
                payment={"type": "payment_intent", "payment_intent": payment_intent},
                limit=1,
                api_key=api_key,
            ),
        )
        data = _get_stripe_value(payments, "data", [])
        if not data:
            logger.warning(f"No invoice found for payment intent {payment_intent}")
            return None
        return _expand_id(_get_stripe_value(data[0], "invoice"))

    @staticmethod
    def _failed_attempt_id(invoice: Dict[str, Any]) -> Optional[str]:
        # Older API versions expose the failed charge; basil invoices do not
        charge = _expand_id(invoice.get("charge"))
        if charge:
            return charge
        if not invoice.get("id"):
            return None
        return f"{invoice['id']}:attempt-{invoice.get('attempt_count') or 0}"

    @staticmethod
    def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
        # Newer API versions nest the subscription under parent.subscription_details
        sub = _expand_id(invoice.get("subscription"))
        if sub:
            return sub
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        return _expand_id(details.get("subscription"))

    @staticmethod
    def _invoice_subscription_ref(invoice: Dict[str, Any]) -> Optional[str]:
        details = invoice.get("subscription_details") or (invoice.get("parent") or {}).get("subscription_details") or {}
        metadata = details.get("metadata") or invoice.get("metadata") or {}
        ref = metadata.get("subscription_id")
        return str(ref) if ref else None
