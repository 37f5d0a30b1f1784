"""Pydantic schemas for gateway-neutral payment operations"""
import enum
from datetime import date
from typing import Any, Dict, Optional

from pydantic import AwareDatetime, BaseModel, Field

from beltbilling.models.enums import EventType


class Periodicity(str, enum.Enum):
    """Billing cadence accepted by PIX Automático recurrences"""
    WEEKLY = "SEMANAL"
    BIWEEKLY = "QUINZENAL"
    MONTHLY = "MENSAL"
    BIMONTHLY = "BIMESTRAL"
    QUARTERLY = "TRIMESTRAL"
    SEMIANNUAL = "SEMESTRAL"
    YEARLY = "ANUAL"


class ChargeState(str, enum.Enum):
    """Normalized status of an outbound charge / recurrence authorization"""
    PENDING = "pending"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"
    CANCELED = "canceled"
    EXPIRED = "expired"


class Payer(BaseModel):
    name: str
    tax_id: Optional[str] = None  # CPF (11 digits) or CNPJ (14 digits)
    email: Optional[str] = None


class ChargeRequest(BaseModel):
    """Gateway-neutral request for a recurring charge"""
    subscription_id: int
    amount_cents: int = Field(gt=0)
    description: Optional[str] = None
    payer: Payer
    # Card only
    price_id: Optional[str] = None
    customer_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class RecurrenceRequest(ChargeRequest):
    """ChargeRequest plus the schedule a PIX recurrence needs"""
    periodicity: Periodicity = Periodicity.MONTHLY
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    due_day: Optional[int] = Field(default=None, ge=1, le=28)


class Charge(BaseModel):
    charge_id: str
    status: ChargeState
    provider_status: Optional[str] = None
    authorization_artifact: Optional[str] = None  # PIX copy-and-paste/location, or checkout URL
    raw: Dict[str, Any] = Field(default_factory=dict)


class ChargeStatus(BaseModel):
    charge_id: str
    status: ChargeState
    provider_status: Optional[str] = None
    reason: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class NormalizedEvent(BaseModel):
    """A single webhook notification in gateway-neutral form.

    ``event_id`` is the provider's idempotency key: duplicate deliveries of the
    same notification carry the same id.
    """
    gateway: str
    event_id: str
    event_type: EventType
    provider_event_type: Optional[str] = None
    recurrence_id: Optional[str] = None
    subscription_ref: Optional[str] = None  # our subscription id echoed back by the provider
    customer_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    amount_cents: Optional[int] = None
    # Offset required: naive timestamps would be compared against UTC periods
    period_start: Optional[AwareDatetime] = None
    period_end: Optional[AwareDatetime] = None
    paid_at: Optional[AwareDatetime] = None
    reason: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
