"""
APScheduler configuration for statevault.

Runs one cron job from BACKUP_SCHEDULE that takes a backup and then prunes
old backups down to the configured retention count. Every run records its
outcome (see statevault.backup.notifications).
"""

import logging
from typing import Dict, Any, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from statevault.config import BackupSettings
from statevault.backup.executor import run_backup
from statevault.backup.index import IndexManager
from statevault.backup.notifications import notify_backup_failure, notify_backup_success
from statevault.backup.providers import create_storage_providers
from statevault.backup.retention import prune_backups

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance

    Raises:
        ValueError: If BACKUP_SCHEDULE is not a valid 5-field cron expression
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    trigger = CronTrigger.from_crontab(app.config['BACKUP_SCHEDULE'], timezone='UTC')

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=run_scheduled_backup,
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Scheduled Backup + Prune',
        replace_existing=True
    )

    logger.info(f"Scheduled backup job ({app.config['BACKUP_SCHEDULE']})")
    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
    scheduler = None


def run_scheduled_backup() -> Optional[Dict[str, Any]]:
    """
    Scheduler entry point: back up, then prune.

    Failures are logged, never raised, so one failed run does not stop the
    schedule. Pruning is skipped when the backup fails.

    Returns:
        Dict with 'backup' and 'prune' results, or None if the backup failed
    """
    settings = BackupSettings.from_mapping(flask_app.config)

    try:
        backup_result = run_backup(settings)
    except Exception as e:
        logger.error(f"Scheduled backup failed: {e}")
        _record(notify_backup_failure, settings, e)
        return None

    logger.info(f"Scheduled backup {backup_result['key']} completed")
    _record(notify_backup_success, settings, backup_result)

    try:
        providers = create_storage_providers(settings.destinations, settings.hostname)
        prune_result = prune_backups(providers, settings.retention_count, IndexManager(settings.index_path))
    except Exception as e:
        logger.error(f"Scheduled prune failed: {e}")
        return {'backup': backup_result, 'prune': None}

    for error in prune_result['errors']:
        logger.warning(f"Prune error: {error}")

    return {'backup': backup_result, 'prune': prune_result}


def _record(notify, settings: BackupSettings, outcome):
    try:
        notify(settings, outcome)
    except OSError as e:
        logger.error(f"Failed to record backup outcome: {e}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

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
