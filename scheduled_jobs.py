"""
Scheduled Jobs Module for UniJobs
Replays webhook deliveries parked in the reconciliation queue
"""

import os
from datetime import datetime
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def process_reconciliation_queue(app, reconciler, ReconciliationTask, batch_size=20):
    """
    Retry every due reconciliation task once

    Args:
        app: Flask application instance
        reconciler: PaymentReconciler instance
        ReconciliationTask: ReconciliationTask model
        batch_size: Maximum tasks replayed per run

    Returns:
        dict: count of tasks per resulting status
    """
    results = {'done': 0, 'pending': 0, 'dead': 0}

    with app.app_context():
        try:
            due_tasks = ReconciliationTask.query.filter(
                ReconciliationTask.status == 'pending',
                ReconciliationTask.next_attempt_at <= datetime.utcnow()
            ).order_by(ReconciliationTask.next_attempt_at.asc()).limit(batch_size).all()

            if not due_tasks:
                return results

            logger.info(f"Replaying {len(due_tasks)} reconciliation tasks")

            for task in due_tasks:
                status = reconciler.retry_task(task)
                results[status] = results.get(status, 0) + 1

            logger.info(f"Reconciliation queue run finished: {results}")

        except Exception as e:
            logger.error(f"Error in process_reconciliation_queue: {str(e)}", exc_info=True)

    return results


def init_scheduler(app, reconciler, ReconciliationTask):
    """
    Initialize APScheduler with all scheduled jobs

    Args:
        app: Flask application instance
        reconciler: PaymentReconciler instance
        ReconciliationTask: ReconciliationTask model

    Returns:
        scheduler: Configured APScheduler instance
    """
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.interval import IntervalTrigger
    import atexit

    scheduler = BackgroundScheduler(daemon=True)

    timezone = os.getenv('TIMEZONE', 'Asia/Vientiane')
    interval = int(app.config.get('RECONCILIATION_INTERVAL_SECONDS', 60))

    scheduler.add_job(
        func=lambda: process_reconciliation_queue(app, reconciler, ReconciliationTask),
        trigger=IntervalTrigger(seconds=interval, timezone=timezone),
        id='reconciliation_queue',
        name='Replay queued payment webhooks',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    scheduler.start()
    logger.info(f"Scheduler started with timezone: {timezone}")
    logger.info(f"  - Reconciliation queue every {interval}s")

    # Shut down the scheduler when exiting the app
    atexit.register(lambda: scheduler.shutdown())

    return scheduler
