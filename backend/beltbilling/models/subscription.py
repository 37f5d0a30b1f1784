"""Subscription model"""
from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from beltbilling.models.base import Base, UTCDateTime, utcnow
from beltbilling.models.enums import Gateway, SubscriptionStatus, enum_column


class Subscription(Base):
    """Academy subscription - aggregate root for the billing lifecycle"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), nullable=False, index=True)  # academy id
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    status = Column(enum_column(SubscriptionStatus), default=SubscriptionStatus.TRIALING, nullable=False, index=True)
    gateway = Column(enum_column(Gateway), default=Gateway.NONE, nullable=False)
    gateway_recurrence_id = Column(String(255), unique=True, nullable=True, index=True)  # idRec (PIX) / sub_... (Stripe)
    gateway_customer_id = Column(String(255), nullable=True)
    current_period_start = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    trial_end_date = Column(UTCDateTime, nullable=True)
    past_due_since = Column(UTCDateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(UTCDateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    plan = relationship("Plan")
    payments = relationship("PaymentRecord", back_populates="subscription", order_by="PaymentRecord.id")

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, owner={self.owner_id}, status={self.status.value if self.status else None})>"
