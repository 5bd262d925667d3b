"""
APScheduler configuration for daemon mode.

When BACKUP_SCHEDULE holds a crontab expression the backup runs on that
schedule; otherwise the scheduler runs without jobs so the sidecar stays
alive for manual operations.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from sidecar.config import Config, ConfigurationError
from sidecar.backup.executor import run_backup


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'


def init_scheduler(config: Config) -> BlockingScheduler:
    """
    Create the scheduler and register the backup job.

    Raises:
        ConfigurationError: If BACKUP_SCHEDULE is not a valid crontab expression
    """
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Never overlap two backups of this sidecar
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=config.timezone
    )

    if config.schedule:
        try:
            trigger = CronTrigger.from_crontab(config.schedule, timezone=config.timezone)
        except ValueError as e:
            raise ConfigurationError(f"Invalid BACKUP_SCHEDULE {config.schedule!r}: {e}")

        scheduler.add_job(
            func=_execute_backup_wrapper,
            args=[config],
            trigger=trigger,
            id=BACKUP_JOB_ID,
            name=f"Backup: {config.name}",
            replace_existing=True
        )

    return scheduler


def _execute_backup_wrapper(config: Config):
    """
    Run a scheduled backup. Failures are already reported by the executor.
    """
    logger.info(f"Scheduler executing backup: {config.name}")
    result = run_backup(config)
    logger.info(f"Scheduled backup completed with status: {result.status}")


def next_run_time(scheduler: BlockingScheduler) -> Optional[str]:
    job = scheduler.get_job(BACKUP_JOB_ID)
    if job is None:
        return None

    # Jobs only get a next_run_time once the scheduler has started
    next_run = getattr(job, 'next_run_time', None)
    if next_run is None:
        next_run = job.trigger.get_next_fire_time(None, datetime.now(scheduler.timezone))
    return next_run.isoformat() if next_run else None


def run_scheduler(config: Config):
    """
    Run the scheduler in the foreground until interrupted.
    """
    logger.info("Backup sidecar starting...")
    logger.info(f"Backup Name: {config.name or 'NOT_SET'}")

    scheduler = init_scheduler(config)

    if config.schedule:
        logger.info(f"Configuring scheduled backups: {config.schedule} ({config.timezone})")
        logger.info(f"Next backup: {next_run_time(scheduler)}")
    else:
        logger.warning("BACKUP_SCHEDULE not set - running in manual mode")
        logger.info("You can run backups manually with: backup-sidecar backup")
        logger.info("List backups with: backup-sidecar list")
        logger.info("Restore with: backup-sidecar restore <timestamp>")
        logger.info("Keeping container alive for manual operations...")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
        if scheduler.running:
            # Waits for a running backup to finish its cleanup
            scheduler.shutdown(wait=True)
