"""Plan model"""
from datetime import timedelta

from sqlalchemy import Boolean, Column, Integer, String

from beltbilling.models.base import Base, UTCDateTime, utcnow
from beltbilling.models.enums import PlanInterval, enum_column


class Plan(Base):
    """Academy subscription plan"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), default="BRL", nullable=False)
    interval = Column(enum_column(PlanInterval), default=PlanInterval.MONTHLY, nullable=False)
    trial_days = Column(Integer, default=0, nullable=False)
    stripe_price_id = Column(String(255), nullable=True)  # catalog reference for card billing
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def interval_delta(self) -> timedelta:
        if self.interval == PlanInterval.YEARLY:
            return timedelta(days=365)
        return timedelta(days=30)
