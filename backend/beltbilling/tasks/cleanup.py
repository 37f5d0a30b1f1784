"""Webhook event archival.

Events are never deleted; settled events older than the retention window are
flagged ``archived_at`` so the retry sweep and operator views can skip them.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from beltbilling.core.config import settings
from beltbilling.models.base import utcnow
from beltbilling.models.enums import WebhookStatus
from beltbilling.models.webhook_event import WebhookEvent

cleanup_logger = logging.getLogger("cleanup")


def archive_old_webhook_events(db: Session, now: Optional[datetime] = None, older_than_days: Optional[int] = None) -> int:
    """Archive processed, skipped and permanently failed events past retention.

    Events still waiting for a retry are left alone regardless of age.

    Returns:
        Number of events archived
    """
    now = now or utcnow()
    days = settings.WEBHOOK_ARCHIVE_AFTER_DAYS if older_than_days is None else older_than_days
    cutoff = now - timedelta(days=days)

    archived = (
        db.query(WebhookEvent)
        .filter(
            WebhookEvent.archived_at.is_(None),
            WebhookEvent.received_at < cutoff,
            or_(
                WebhookEvent.status.in_([WebhookStatus.PROCESSED, WebhookStatus.SKIPPED]),
                and_(WebhookEvent.status == WebhookStatus.FAILED, WebhookEvent.next_retry_at.is_(None)),
            ),
        )
        .update({WebhookEvent.archived_at: now}, synchronize_session=False)
    )
    db.commit()
    if archived:
        cleanup_logger.info(f"Archived {archived} webhook event(s) received before {cutoff.isoformat()}")
    return archived
