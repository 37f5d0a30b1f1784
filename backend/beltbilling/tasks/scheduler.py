"""Background sweep loops started from the application lifespan.

Each loop sleeps, takes a Redis lock so only one replica sweeps at a time,
and runs its synchronous database work in a worker thread.
"""
import asyncio
import logging
from typing import Callable, Dict

from beltbilling.core.config import settings
from beltbilling.core.metrics import scheduler_runs_counter
from beltbilling.db.redis import acquire_lock, release_lock, sweep_lock_key
from beltbilling.db.session import SessionLocal
from beltbilling.services.event_processor import retry_due_events
from beltbilling.tasks.cleanup import archive_old_webhook_events
from beltbilling.tasks.reconciliation import run_reconciliation

logger = logging.getLogger(__name__)


def run_locked(task_name: str, work: Callable) -> bool:
    """Run ``work(db)`` under the task's sweep lock with a fresh session.

    Returns:
        False when another replica holds the lock, True once the work ran
    """
    lock_key = sweep_lock_key(task_name)
    if not acquire_lock(lock_key, timeout=settings.SWEEP_LOCK_TIMEOUT):
        logger.debug(f"{task_name} sweep already running elsewhere, skipping")
        scheduler_runs_counter.labels(task=task_name, status="skipped").inc()
        return False

    db = SessionLocal()
    try:
        result = work(db)
        scheduler_runs_counter.labels(task=task_name, status="success").inc()
        logger.debug(f"{task_name} sweep finished: {result}")
        return True
    except Exception:
        db.rollback()
        scheduler_runs_counter.labels(task=task_name, status="error").inc()
        raise
    finally:
        db.close()
        release_lock(lock_key)


async def _sweep_loop(task_name: str, interval: int, work: Callable):
    while True:
        try:
            await asyncio.sleep(interval)
            await asyncio.to_thread(run_locked, task_name, work)
        except asyncio.CancelledError:
            logger.info(f"{task_name} sweep stopped")
            raise
        except Exception as e:
            logger.error(f"Error in {task_name} sweep: {e}", exc_info=True)


async def retry_sweep_task():
    """Re-drive failed, stranded-pending and abandoned webhook events"""
    await _sweep_loop("webhook_retry", settings.RETRY_SWEEP_INTERVAL_SECONDS, retry_due_events)


async def reconciliation_task():
    """Trial expiry, overdue and grace-period transitions"""
    await _sweep_loop("reconciliation", settings.RECONCILIATION_INTERVAL_SECONDS, run_reconciliation)


async def cleanup_task():
    """Archive settled webhook events past retention"""
    await _sweep_loop("webhook_archive", settings.CLEANUP_INTERVAL_SECONDS, archive_old_webhook_events)


def start_background_tasks() -> Dict[str, asyncio.Task]:
    return {
        "webhook_retry": asyncio.create_task(retry_sweep_task()),
        "reconciliation": asyncio.create_task(reconciliation_task()),
        "webhook_archive": asyncio.create_task(cleanup_task()),
    }


async def stop_background_tasks(tasks: Dict[str, asyncio.Task]) -> None:
    for task in tasks.values():
        task.cancel()
    await asyncio.gather(*tasks.values(), return_exceptions=True)
