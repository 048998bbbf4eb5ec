"""
APScheduler configuration for daemon mode.

Runs the backup on the BACKUP_SCHEDULE crontab expression. Every
execution loads a fresh RunConfig, so edits to the env file apply from
the next run on.
"""

import logging
from typing import Callable, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from pvebackup.backup.executor import execute_backup
from pvebackup.config import load_config


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'pvebackup_run'

# Global scheduler instance
scheduler = None


def _execute_backup_wrapper(config_name: Optional[str] = None, env_file: Optional[str] = None):
    """
    Wrapper for executing a backup in scheduler context.

    Exceptions are logged here so one failed run never stops the scheduler.
    """
    try:
        config = load_config(config_name, env_file=env_file)
        logger.info("Scheduler starting backup run")
        run = execute_backup(config)
        logger.info(f"Scheduled backup {run.basename} finished with exit code {int(run.severity)}")
    except Exception as e:
        logger.exception(f"Scheduled backup failed: {e}")


def init_scheduler(config, func: Optional[Callable] = None, env_file: Optional[str] = None) -> BlockingScheduler:
    """
    Initialize and configure APScheduler.

    Args:
        config: RunConfig holding BACKUP_SCHEDULE
        func: Job callable (default: one backup run per trigger)
        env_file: Env file re-read before every run

    Returns:
        Configured (not started) scheduler

    Raises:
        ValueError: If no schedule is configured or the expression is invalid
    """
    global scheduler

    if not config.backup_schedule:
        raise ValueError("BACKUP_SCHEDULE is not set")

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(job_defaults=job_defaults, timezone='UTC')

    trigger = CronTrigger.from_crontab(config.backup_schedule, timezone='UTC')
    scheduler.add_job(
        func=func or _execute_backup_wrapper,
        kwargs={} if func else {'config_name': config.config_name, 'env_file': env_file},
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Proxmox configuration backup',
        replace_existing=True
    )

    logger.info(f"Scheduled backup with '{config.backup_schedule}'")
    return scheduler


def start_scheduler():
    """
    Start the scheduler; blocks until stop_scheduler() is called from a signal handler.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        logger.info(f"Job {job.id}: {job.name} (next run: {next_run.isoformat() if next_run else 'pending'})")
    scheduler.start()


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
