"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from beltbilling.models.base import Base
from beltbilling.models.plan import Plan
from beltbilling.models.subscription import Subscription
from beltbilling.models.payment_record import PaymentRecord
from beltbilling.models.webhook_event import WebhookEvent

# Export all for convenience
__all__ = [
    "Base", "Plan", "Subscription", "PaymentRecord", "WebhookEvent"
]
