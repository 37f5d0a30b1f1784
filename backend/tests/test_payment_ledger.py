"""Payment ledger tests"""
from datetime import datetime, timedelta, timezone

import pytest

from beltbilling.models.enums import Gateway, PaymentStatus
from beltbilling.models.payment_record import PaymentRecord
from beltbilling.services import payment_ledger
from beltbilling.services.payment_ledger import PaymentStatusError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.critical
class TestPaymentLedger:
    def _succeed(self, sub, db_session, payment_id="E1"):
        record = payment_ledger.record_succeeded(
            sub,
            gateway=Gateway.PIX,
            gateway_payment_id=payment_id,
            amount_cents=19900,
            paid_at=NOW,
            period_start=NOW,
            period_end=NOW + timedelta(days=30),
            db=db_session,
        )
        db_session.commit()
        return record

    def test_record_succeeded(self, make_subscription, db_session):
        sub = make_subscription()
        record = self._succeed(sub, db_session)

        assert record.status == PaymentStatus.SUCCEEDED
        assert record.subscription_id == sub.id
        assert record.period_end == NOW + timedelta(days=30)
        assert payment_ledger.is_settled("E1", db_session)
        assert not payment_ledger.is_settled("E2", db_session)
        assert not payment_ledger.is_settled(None, db_session)

    def test_gateway_payment_id_is_unique(self, make_subscription, db_session):
        sub = make_subscription()
        self._succeed(sub, db_session)
        with pytest.raises(PaymentStatusError):
            self._succeed(sub, db_session)
        db_session.rollback()
        assert db_session.query(PaymentRecord).count() == 1

    def test_refund_moves_forward_only(self, make_subscription, db_session):
        sub = make_subscription()
        self._succeed(sub, db_session)

        record = payment_ledger.mark_refunded("E1", db_session)
        assert record.status == PaymentStatus.REFUNDED
        assert payment_ledger.is_settled("E1", db_session)
        # Repeated refund notifications are harmless
        assert payment_ledger.mark_refunded("E1", db_session).status == PaymentStatus.REFUNDED
        assert payment_ledger.mark_refunded("unknown", db_session) is None

    def test_failed_payment_cannot_succeed_later(self, make_subscription, db_session):
        sub = make_subscription()
        payment_ledger.record_failed(
            sub, gateway=Gateway.CARD, gateway_payment_id="ch_1", amount_cents=None,
            reason="card declined", db=db_session,
        )
        db_session.commit()
        record = payment_ledger.get_by_gateway_payment_id("ch_1", db_session)
        assert record.status == PaymentStatus.FAILED
        assert record.amount_cents == 0
        assert record.failure_reason == "card declined"

        with pytest.raises(PaymentStatusError):
            payment_ledger.advance_status(record, PaymentStatus.SUCCEEDED)

    def test_failures_without_payment_id_are_all_kept(self, make_subscription, db_session):
        sub = make_subscription()
        for _ in range(2):
            payment_ledger.record_failed(
                sub, gateway=Gateway.PIX, gateway_payment_id=None, amount_cents=19900,
                reason="no funds", db=db_session,
            )
        db_session.commit()
        assert len(payment_ledger.list_for_subscription(sub.id, db_session)) == 2
