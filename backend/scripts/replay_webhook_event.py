#!/usr/bin/env python3
"""
Re-queue a stored webhook event and optionally process it right away.

Usage:
    # Reset a permanently failed event to pending (picked up by the retry sweep)
    python replay_webhook_event.py --event-id 42

    # Reset and process now
    python replay_webhook_event.py --event-id 42 --now

    # Show events that failed for good
    python replay_webhook_event.py --list-failed
"""

import argparse
import os
import sys

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from beltbilling.db.session import SessionLocal
from beltbilling.models.enums import WebhookStatus
from beltbilling.models.webhook_event import WebhookEvent
from beltbilling.services.event_processor import process_event, requeue_event


def list_failed(limit: int):
    """Print permanently failed, unarchived events"""
    db = SessionLocal()
    try:
        events = (
            db.query(WebhookEvent)
            .filter(
                WebhookEvent.status == WebhookStatus.FAILED,
                WebhookEvent.next_retry_at.is_(None),
                WebhookEvent.archived_at.is_(None),
            )
            .order_by(WebhookEvent.received_at.desc())
            .limit(limit)
            .all()
        )
        if not events:
            print("✅ No permanently failed events")
            return True
        for event in events:
            print(
                f"#{event.id} {event.gateway}:{event.event_id} {event.event_type} "
                f"retries={event.retry_count} error={event.error_message}"
            )
        return True
    finally:
        db.close()


def replay(event_id: int, process_now: bool):
    db = SessionLocal()
    try:
        event = requeue_event(event_id, db)
        print(f"✅ Event #{event.id} ({event.gateway}:{event.event_id}) reset to pending")

        if process_now:
            status = process_event(event.id, db)
            if status is None:
                print(f"❌ Event #{event.id} was claimed by another worker")
                return False
            print(f"✅ Event #{event.id} processed: {status.value}")
            return status != WebhookStatus.FAILED
        return True
    except (LookupError, ValueError) as e:
        db.rollback()
        print(f"❌ {e}")
        return False
    except Exception as e:
        db.rollback()
        print(f"❌ Error replaying event #{event_id}: {e}")
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description='Replay stored webhook events')
    parser.add_argument('--event-id', type=int, help='WebhookEvent row id to re-queue')
    parser.add_argument('--now', action='store_true', help='Process the event immediately after re-queueing')
    parser.add_argument('--list-failed', action='store_true', help='List permanently failed events')
    parser.add_argument('--limit', type=int, default=50, help='Maximum events to list (default: 50)')

    args = parser.parse_args()

    if args.list_failed:
        success = list_failed(args.limit)
    elif args.event_id:
        success = replay(args.event_id, args.now)
    else:
        print("❌ Error: Must specify --event-id or --list-failed")
        parser.print_help()
        sys.exit(1)

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
