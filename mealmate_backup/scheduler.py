"""
APScheduler configuration for periodic backups.

One job runs BackupManager.create_backup() on a fixed interval (default 24
hours) or on a cron schedule when one is configured. A missed or overlapping
run is dropped, never queued.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from mealmate_backup.backup.manager import BackupManager


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'


class BackupScheduler:
    """
    Periodic trigger for the backup pipeline.

    start() and stop() are idempotent. The owning process must call stop()
    before it exits.
    """

    def __init__(self, manager: BackupManager):
        self.manager = manager
        self._scheduler = None

    def _create_scheduler(self) -> BackgroundScheduler:
        executors = {
            'default': ThreadPoolExecutor(max_workers=1)
        }

        job_defaults = {
            'coalesce': True,  # Combine multiple pending instances into one
            'max_instances': 1,  # Only one instance of a job at a time
            'misfire_grace_time': 300  # 5 minutes grace period for misfires
        }

        return BackgroundScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def _build_trigger(self):
        config = self.manager.get_config()
        if config.schedule:
            return CronTrigger.from_crontab(config.schedule, timezone='UTC')
        return IntervalTrigger(hours=config.interval_hours, timezone='UTC')

    def start(self):
        """
        Install the backup job, replacing any existing one.

        Does nothing when backups are disabled in the configuration.
        """
        config = self.manager.get_config()
        if not config.enabled:
            logger.info("Backup scheduler disabled")
            self.stop()
            return

        if self._scheduler is None:
            self._scheduler = self._create_scheduler()

        trigger = self._build_trigger()
        self._scheduler.add_job(
            func=self._run_backup,
            trigger=trigger,
            id=BACKUP_JOB_ID,
            name='Scheduled database backup',
            replace_existing=True
        )

        if not self._scheduler.running:
            self._scheduler.start()

        job = self._scheduler.get_job(BACKUP_JOB_ID)
        next_run = job.next_run_time.isoformat() if job and job.next_run_time else 'N/A'
        logger.info(f"Backup scheduler started (trigger={trigger}, next run: {next_run})")

    def stop(self):
        """Cancel the backup job. No-op when not started."""
        if self._scheduler is None:
            return

        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Backup scheduler stopped")

    def restart(self):
        """Re-read the configuration (schedule, interval, enabled) and reinstall the job."""
        self.stop()
        self.start()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def get_jobs(self) -> list:
        """
        Get list of scheduled jobs.

        Returns:
            List of dicts with job information
        """
        if self._scheduler is None:
            return []

        return [
            {
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'trigger': str(job.trigger)
            }
            for job in self._scheduler.get_jobs()
        ]

    def _run_backup(self):
        """Job body: failures are logged and the next tick is awaited."""
        try:
            record = self.manager.create_backup()
        except Exception as e:
            logger.error(f"Scheduled backup failed: {e}")
            return

        if record.succeeded:
            logger.info(f"Scheduled backup {record.id} completed: {record.filename}")
        else:
            logger.error(f"Scheduled backup {record.id} failed: {record.error}")
