"""
APScheduler configuration for the backup daemon.

Manages:
- The cron-scheduled backup cycle (BACKUP_SCHEDULE)
- Starting and stopping the blocking scheduler
"""

import logging
from typing import Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from pgbackup.backup.producer import BackupError, CycleResult, run_backup_cycle
from pgbackup.config import Config, ConfigurationError


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup_cycle'

# Global scheduler instance
scheduler = None


def build_trigger(schedule: Optional[str]) -> CronTrigger:
    """
    Parse a five-field cron expression.

    Raises:
        ConfigurationError: If the expression is missing or invalid
    """
    if not schedule:
        raise ConfigurationError("BACKUP_SCHEDULE must be set")
    try:
        return CronTrigger.from_crontab(schedule)
    except ValueError as e:
        raise ConfigurationError(f"Invalid BACKUP_SCHEDULE '{schedule}': {e}") from e


def run_scheduled_backup(config: Config, cycle: Callable[[Config], CycleResult] = run_backup_cycle):
    """
    Job body: run one cycle and log its outcome.

    A cycle that cannot start is logged; the daemon keeps its schedule.
    """
    try:
        result = cycle(config)
    except BackupError as e:
        logger.error(f"Backup cycle failed: {e}")
        return None

    logger.info(f"Backup cycle {result.folder_id} finished with status: {result.status}")
    return result


def init_scheduler(config: Config, cycle: Callable[[Config], CycleResult] = run_backup_cycle) -> BlockingScheduler:
    """
    Initialize and configure APScheduler.

    Args:
        config: Runtime configuration
        cycle: Callable that runs one backup cycle

    Raises:
        ConfigurationError: If BACKUP_SCHEDULE is missing or invalid
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    trigger = build_trigger(config.schedule)

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine missed runs into one
        'max_instances': 1,  # Cycles never overlap
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults
    )

    scheduler.add_job(
        func=run_scheduled_backup,
        args=[config, cycle],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='PostgreSQL Backup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until stop_scheduler() is called.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    logger.info("Waiting for next scheduled backup...")
    scheduler.start()


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None
