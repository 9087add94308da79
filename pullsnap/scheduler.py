"""
APScheduler hosting of the scan loop for pullsnap.

Manages:
- Sweeps over all targets, each scheduled a fixed delay after the previous
  one finished
- Manual sweep triggers
- Stopping everything when the destination disk is full
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from pullsnap.backup.retention import DiskFullError


logger = logging.getLogger(__name__)

# Global scheduler instance and the scan loop it drives
scheduler = None
scan_loop = None


def init_scheduler(app, loop):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
        loop: ScanLoop to drive
    """
    global scheduler, scan_loop

    if scheduler is not None:
        return scheduler

    scan_loop = loop

    # One worker thread: sweeps never overlap
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,
        'max_instances': 1,
        'misfire_grace_time': None
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler and schedule the first sweep immediately.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (interval={scan_loop.interval_seconds}s, targets={len(scan_loop.states)})")
        _schedule_sweep(0)
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the scan loop and the APScheduler."""
    if scan_loop is not None:
        scan_loop.stop()

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")


def _schedule_sweep(delay_seconds: float, reschedule: bool = True):
    scheduler.add_job(
        func=_run_sweep,
        kwargs={'reschedule': reschedule},
        trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)),
        name='Scan sweep' if reschedule else 'Manual sweep'
    )


def _run_sweep(reschedule: bool = True):
    """
    Run one sweep in the scheduler's worker thread.

    Schedules the next sweep unless shutdown was requested. A full disk stops
    the loop and the scheduler for good.

    Args:
        reschedule: Chain the next sweep after this one
    """
    if scan_loop.stop_requested:
        return

    try:
        scan_loop.sweep()
    except DiskFullError as e:
        logger.critical(f"Scan loop stopped, destination disk is full: {e}")
        scan_loop.stop()
        scheduler.shutdown(wait=False)
        return
    except Exception as e:
        logger.exception(f"Sweep failed: {e}")

    if reschedule and not scan_loop.stop_requested:
        _schedule_sweep(scan_loop.interval_seconds)


def trigger_sweep_now():
    """
    Manually trigger a sweep without waiting for the next scheduled one.

    Raises:
        RuntimeError: If the scheduler isn't running
    """
    if scheduler is None or not scheduler.running:
        raise RuntimeError("Scheduler not running")

    _schedule_sweep(1, reschedule=False)
    logger.info("Manually triggered sweep")


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running


def get_scheduled_jobs() -> list:
    """
    Get list of pending sweeps.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs
