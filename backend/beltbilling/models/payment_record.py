"""PaymentRecord model"""
from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from beltbilling.models.base import Base, UTCDateTime, utcnow
from beltbilling.models.enums import Gateway, PaymentStatus, enum_column


class PaymentRecord(Base):
    """One payment attempt against a subscription (append-mostly ledger)"""
    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    gateway = Column(enum_column(Gateway), nullable=False)
    gateway_payment_id = Column(String(255), unique=True, nullable=True)  # endToEndId (PIX) / in_... (Stripe)
    status = Column(enum_column(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    period_start = Column(UTCDateTime, nullable=True)
    period_end = Column(UTCDateTime, nullable=True)
    paid_at = Column(UTCDateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="payments")

    __table_args__ = (
        Index('ix_payment_records_subscription_created', 'subscription_id', 'created_at'),
    )
