"""Card (Stripe) adapter tests with the Stripe SDK patched out"""
import json
import time
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import stripe

from beltbilling.core.errors import (
    AuthError, NotFoundError, PayloadError, RateLimitError, TransportError, ValidationError
)
from beltbilling.models.enums import EventType
from beltbilling.schemas.payments import ChargeRequest, ChargeState, Payer
from beltbilling.services.credential_cache import CredentialCache
from beltbilling.services.gateways.base import hmac_sha256_hex
from beltbilling.services.gateways.card import CardAdapter

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def card_adapter():
    keys = iter(["sk_test_first", "sk_test_second", "sk_test_third"])
    return CardAdapter(CredentialCache(), webhook_secret=WEBHOOK_SECRET, resolve_secret=lambda: next(keys))


def _charge_request(**overrides) -> ChargeRequest:
    values = {
        "subscription_id": 42,
        "amount_cents": 19900,
        "payer": Payer(name="Maria Souza", email="maria@example.com"),
        "price_id": "price_monthly",
        "success_url": "https://app.test/ok",
        "cancel_url": "https://app.test/cancel",
    }
    values.update(overrides)
    return ChargeRequest(**values)


def _event(event_type: str, obj: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "created": 1772366400,
        "data": {"object": obj},
    }).encode()


def _signature(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    return f"t={timestamp},v1={hmac_sha256_hex(secret, f'{timestamp}.'.encode() + body)}"


@pytest.mark.critical
class TestCardCharges:
    def test_create_checkout_session(self, card_adapter):
        session = {"id": "cs_test_1", "status": "open", "url": "https://checkout.stripe.test/cs_test_1"}
        with patch.object(stripe.checkout.Session, "create", return_value=session) as create:
            charge = card_adapter.create_recurring_charge(_charge_request())

        assert charge.charge_id == "cs_test_1"
        assert charge.status == ChargeState.PENDING
        assert charge.authorization_artifact == "https://checkout.stripe.test/cs_test_1"

        kwargs = create.call_args.kwargs
        assert kwargs["api_key"] == "sk_test_first"
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_monthly", "quantity": 1}]
        assert kwargs["client_reference_id"] == "42"
        assert kwargs["subscription_data"] == {"metadata": {"subscription_id": "42"}}
        assert kwargs["customer_email"] == "maria@example.com"

    def test_existing_customer_reused(self, card_adapter):
        with patch.object(stripe.checkout.Session, "create", return_value={"id": "cs_test_2"}) as create:
            card_adapter.create_recurring_charge(_charge_request(customer_id="cus_123"))
        assert create.call_args.kwargs["customer"] == "cus_123"
        assert "customer_email" not in create.call_args.kwargs

    @pytest.mark.parametrize("overrides", [{"price_id": None}, {"success_url": None}, {"cancel_url": None}])
    def test_missing_checkout_fields(self, card_adapter, overrides):
        with patch.object(stripe.checkout.Session, "create") as create:
            with pytest.raises(ValidationError):
                card_adapter.create_recurring_charge(_charge_request(**overrides))
        create.assert_not_called()

    def test_authentication_error_refreshes_key_once(self, card_adapter):
        calls = []

        def create(**kwargs):
            calls.append(kwargs["api_key"])
            if len(calls) == 1:
                raise stripe.AuthenticationError("Invalid API Key provided")
            return {"id": "cs_test_3"}

        with patch.object(stripe.checkout.Session, "create", side_effect=create):
            charge = card_adapter.create_recurring_charge(_charge_request())

        assert charge.charge_id == "cs_test_3"
        assert calls == ["sk_test_first", "sk_test_second"]

    def test_repeated_authentication_error(self, card_adapter):
        with patch.object(stripe.Subscription, "cancel", side_effect=stripe.AuthenticationError("Invalid API Key")) as cancel:
            with pytest.raises(AuthError):
                card_adapter.cancel_recurrence("sub_123")
        assert cancel.call_count == 2

    @pytest.mark.parametrize("error,expected", [
        (stripe.RateLimitError("slow down"), RateLimitError),
        (stripe.APIConnectionError("connection reset"), TransportError),
        (stripe.InvalidRequestError("No such subscription", "id", http_status=404), NotFoundError),
        (stripe.InvalidRequestError("Bad param", "price", http_status=400), ValidationError),
    ])
    def test_sdk_errors_mapped(self, card_adapter, error, expected):
        with patch.object(stripe.Subscription, "cancel", side_effect=error):
            with pytest.raises(expected):
                card_adapter.cancel_recurrence("sub_123")

    def test_cancel_recurrence(self, card_adapter):
        with patch.object(stripe.Subscription, "cancel", return_value={"id": "sub_123", "status": "canceled"}) as cancel:
            card_adapter.cancel_recurrence("sub_123")
        cancel.assert_called_once_with("sub_123", api_key="sk_test_first")

    def test_charge_status_for_session_and_subscription(self, card_adapter):
        with patch.object(stripe.checkout.Session, "retrieve", return_value={"id": "cs_1", "status": "complete"}):
            assert card_adapter.get_charge_status("cs_1").status == ChargeState.AUTHORIZED
        with patch.object(stripe.Subscription, "retrieve", return_value={"id": "sub_1", "status": "incomplete_expired"}):
            status = card_adapter.get_charge_status("sub_1")
        assert status.status == ChargeState.EXPIRED
        assert status.provider_status == "incomplete_expired"


@pytest.mark.critical
class TestCardWebhooks:
    def test_invoice_paid(self, card_adapter):
        body = _event("invoice.paid", {
            "id": "in_1",
            "customer": "cus_1",
            "subscription": "sub_1",
            "amount_paid": 19900,
            "status_transitions": {"paid_at": 1772366400},
            "subscription_details": {"metadata": {"subscription_id": "42"}},
            "lines": {"data": [{"period": {"start": 1772366400, "end": 1774958400}}]},
        })

        [event] = card_adapter.parse_webhook_payload(body)

        assert event.event_type == EventType.PAYMENT_CONFIRMED
        assert event.event_id == "evt_1"
        assert event.gateway_payment_id == "in_1"
        assert event.recurrence_id == "sub_1"
        assert event.subscription_ref == "42"
        assert event.customer_id == "cus_1"
        assert event.amount_cents == 19900
        assert event.paid_at == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert event.period_end == datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)

    def test_invoice_subscription_under_parent(self, card_adapter):
        body = _event("invoice.payment_succeeded", {
            "id": "in_2",
            "parent": {"subscription_details": {"subscription": "sub_2", "metadata": {"subscription_id": "7"}}},
            "lines": {"data": []},
        })
        [event] = card_adapter.parse_webhook_payload(body)
        assert event.recurrence_id == "sub_2"
        assert event.subscription_ref == "7"

    def test_invoice_payment_failed(self, card_adapter):
        body = _event("invoice.payment_failed", {
            "id": "in_3", "subscription": "sub_1", "charge": "ch_9", "amount_due": 19900, "attempt_count": 2,
        })
        [event] = card_adapter.parse_webhook_payload(body)
        assert event.event_type == EventType.PAYMENT_FAILED
        assert event.gateway_payment_id == "ch_9"
        assert "attempt 2" in event.reason

    def test_charge_refunded_keyed_by_invoice(self, card_adapter):
        body = _event("charge.refunded", {"id": "ch_9", "invoice": "in_1", "amount_refunded": 19900})
        [event] = card_adapter.parse_webhook_payload(body)
        assert event.event_type == EventType.PAYMENT_REFUNDED
        assert event.gateway_payment_id == "in_1"

    def test_basil_invoice_payment_failed_keyed_by_attempt(self, card_adapter):
        body = _event("invoice.payment_failed", {
            "id": "in_3", "amount_due": 19900, "attempt_count": 2,
            "parent": {"subscription_details": {"subscription": "sub_1"}},
        })
        [event] = card_adapter.parse_webhook_payload(body)
        assert event.gateway_payment_id == "in_3:attempt-2"
        assert event.recurrence_id == "sub_1"

    def test_basil_charge_refunded_resolved_to_invoice(self, card_adapter):
        body = _event("charge.refunded", {"id": "ch_9", "payment_intent": "pi_9", "amount_refunded": 19900})
        [event] = card_adapter.parse_webhook_payload(body)
        assert event.gateway_payment_id is None

        with patch("stripe.InvoicePayment.list") as list_payments:
            list_payments.return_value = {"data": [{"id": "inpay_1", "invoice": "in_1"}]}
            assert card_adapter.resolve_payment_id(event) == "in_1"

        kwargs = list_payments.call_args.kwargs
        assert kwargs["payment"] == {"type": "payment_intent", "payment_intent": "pi_9"}
        assert kwargs["api_key"] == "sk_test_first"

    def test_refund_resolution_without_invoice_payment(self, card_adapter):
        body = _event("charge.refunded", {"id": "ch_9", "payment_intent": "pi_9"})
        [event] = card_adapter.parse_webhook_payload(body)
        with patch("stripe.InvoicePayment.list", return_value={"data": []}):
            assert card_adapter.resolve_payment_id(event) is None

    def test_refund_with_invoice_needs_no_lookup(self, card_adapter):
        body = _event("charge.refunded", {"id": "ch_9", "invoice": "in_1"})
        [event] = card_adapter.parse_webhook_payload(body)
        with patch("stripe.InvoicePayment.list") as list_payments:
            assert card_adapter.resolve_payment_id(event) == "in_1"
        list_payments.assert_not_called()

    def test_sdk_pinned_to_configured_api_version(self):
        CardAdapter(CredentialCache(), resolve_secret=lambda: "sk_test", api_version="2025-03-31.basil")
        assert stripe.api_version == "2025-03-31.basil"

    def test_checkout_completed(self, card_adapter):
        body = _event("checkout.session.completed", {
            "id": "cs_1", "subscription": "sub_1", "customer": "cus_1", "client_reference_id": "42",
        })
        [event] = card_adapter.parse_webhook_payload(body)
        assert event.event_type == EventType.RECURRENCE_AUTHORIZED
        assert event.recurrence_id == "sub_1"
        assert event.subscription_ref == "42"

    def test_subscription_deleted(self, card_adapter):
        body = _event("customer.subscription.deleted", {
            "id": "sub_1", "metadata": {"subscription_id": "42"},
            "cancellation_details": {"reason": "payment_failed"},
        })
        [event] = card_adapter.parse_webhook_payload(body)
        assert event.event_type == EventType.RECURRENCE_CANCELED
        assert event.reason == "payment_failed"

    def test_unhandled_type_is_ignored(self, card_adapter):
        [event] = card_adapter.parse_webhook_payload(_event("customer.updated", {"id": "cus_1"}))
        assert event.event_type == EventType.IGNORED

    @pytest.mark.parametrize("body", [
        b"garbage",
        b'{"type": "invoice.paid"}',
        b'{"id": "evt_1", "type": "invoice.paid", "data": {}}',
    ])
    def test_malformed_events(self, card_adapter, body):
        with pytest.raises(PayloadError):
            card_adapter.parse_webhook_payload(body)

    def test_signature_verification(self, card_adapter):
        body = _event("invoice.paid", {"id": "in_1"})

        assert card_adapter.verify_webhook_signature(body, _signature(body)) is True
        assert card_adapter.verify_webhook_signature(body, _signature(body, secret="whsec_other")) is False
        assert card_adapter.verify_webhook_signature(body, None) is False

    def test_stale_signature_rejected(self, card_adapter):
        body = _event("invoice.paid", {"id": "in_1"})
        old = int(time.time()) - 3600
        assert card_adapter.verify_webhook_signature(body, _signature(body, timestamp=old)) is False
