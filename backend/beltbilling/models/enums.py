"""Closed vocabularies shared by models, services and schemas"""
import enum

from sqlalchemy import Enum as SQLEnum


class Gateway(str, enum.Enum):
    PIX = "pix"
    CARD = "card"
    NONE = "none"


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)


class WebhookStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PlanInterval(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EventType(str, enum.Enum):
    """Gateway-neutral webhook event vocabulary"""
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    RECURRENCE_AUTHORIZED = "recurrence_authorized"
    RECURRENCE_REJECTED = "recurrence_rejected"
    RECURRENCE_CANCELED = "recurrence_canceled"
    RECURRENCE_EXPIRED = "recurrence_expired"
    IGNORED = "ignored"


def enum_column(enum_cls, length: int = 32):
    """String-backed column storing the enum's value"""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
