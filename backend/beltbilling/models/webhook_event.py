"""WebhookEvent model"""
from sqlalchemy import JSON, Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from beltbilling.models.base import Base, UTCDateTime, utcnow
from beltbilling.models.enums import WebhookStatus, enum_column


class WebhookEvent(Base):
    """Inbound gateway notification - idempotency key and audit trail"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    gateway = Column(String(32), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)  # normalized event
    raw_payload = Column(JSON, nullable=True)  # provider body as received
    headers = Column(JSON, nullable=True)
    status = Column(enum_column(WebhookStatus), default=WebhookStatus.PENDING, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    next_retry_at = Column(UTCDateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    received_at = Column(UTCDateTime, default=utcnow, nullable=False)
    processed_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
    archived_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('gateway', 'event_id', name='uq_webhook_events_gateway_event_id'),
        Index('ix_webhook_events_status_next_retry', 'status', 'next_retry_at'),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id}, gateway={self.gateway}, event_id={self.event_id}, "
            f"status={self.status.value if self.status else None}, retries={self.retry_count})>"
        )
