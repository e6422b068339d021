import logging
import threading
from datetime import datetime

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from exceptions import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'UTC'


def build_trigger(schedule, timezone=DEFAULT_TIMEZONE):
    """Cron trigger from a 5-field crontab or a 6-field one with leading seconds."""
    fields = schedule.split()
    if len(fields) == 5:
        return CronTrigger.from_crontab(schedule, timezone=timezone)
    if len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
        return CronTrigger(second=second, minute=minute, hour=hour, day=day, month=month,
                           day_of_week=day_of_week, timezone=timezone)
    raise ValueError(f"Invalid cron expression '{schedule}': expected 5 or 6 fields")


class JobScheduler:
    """Named cron jobs on top of an APScheduler BackgroundScheduler.

    Every task runs inside the Flask app context when an app is given. A
    failing task is logged and handed to its `on_error` callback; the job
    stays registered and fires again at its next scheduled time.
    """

    def __init__(self, app=None, scheduler=None, default_timezone=DEFAULT_TIMEZONE):
        self.app = app
        self.default_timezone = default_timezone
        self.scheduler = scheduler or BackgroundScheduler(timezone=default_timezone)
        self._jobs = {}
        self._lock = threading.RLock()
        self._started = False

    def add_job(self, name, schedule, task, timezone=None, on_error=None):
        timezone = timezone or self.default_timezone
        trigger = build_trigger(schedule, timezone)

        with self._lock:
            if name in self._jobs:
                logger.warning("Job '%s' already exists, replacing", name)
                self.remove_job(name)

            self._jobs[name] = {
                'name': name,
                'schedule': schedule,
                'timezone': timezone,
                'task': task,
                'on_error': on_error,
                'trigger': trigger,
                'last_run': None,
                'last_error': None,
                'running': False,
            }
            if self._started:
                self._schedule(name)

        logger.info("Job '%s' registered (%s %s)", name, schedule, timezone)

    def remove_job(self, name):
        with self._lock:
            job = self._jobs.pop(name, None)
            if job is None:
                return
            if job['running']:
                try:
                    self.scheduler.remove_job(name)
                except JobLookupError:
                    pass
        logger.info("Job '%s' removed", name)

    def start_all_jobs(self):
        with self._lock:
            if not self.scheduler.running:
                self.scheduler.start()
            self._started = True
            for name in list(self._jobs):
                try:
                    self._schedule(name)
                except Exception as e:
                    logger.error("Failed to start job '%s': %s", name, e)

    def run_job(self, name):
        """Run a job's task once, now, on the calling thread."""
        with self._lock:
            if name not in self._jobs:
                raise NotFoundError(f"Job '{name}' not found")
        return self._execute(name)

    def get_jobs(self):
        with self._lock:
            return [self._describe(job) for job in self._jobs.values()]

    def shutdown(self, wait=False):
        with self._lock:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=wait)
            self._started = False
            for job in self._jobs.values():
                job['running'] = False
        logger.info("Job scheduler stopped")

    def _schedule(self, name):
        job = self._jobs[name]
        if job['running']:
            return
        self.scheduler.add_job(
            self._execute,
            job['trigger'],
            args=[name],
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        job['running'] = True

    def _execute(self, name):
        with self._lock:
            job = self._jobs.get(name)
        if job is None:
            return None

        job['last_run'] = datetime.utcnow()
        try:
            if self.app is not None:
                with self.app.app_context():
                    result = job['task']()
            else:
                result = job['task']()
        except Exception as e:
            logger.exception("Job '%s' failed", name)
            job['last_error'] = str(e)
            if job['on_error']:
                try:
                    job['on_error'](e, name)
                except Exception:
                    logger.exception("Error handler for job '%s' failed", name)
            return {'name': name, 'success': False, 'error': str(e)}

        job['last_error'] = None
        return {'name': name, 'success': True, 'result': result}

    def _describe(self, job):
        next_run = None
        if job['running']:
            scheduled = self.scheduler.get_job(job['name'])
            if scheduled is not None and scheduled.next_run_time:
                next_run = scheduled.next_run_time.isoformat()
        return {
            'name': job['name'],
            'schedule': job['schedule'],
            'timezone': job['timezone'],
            'running': job['running'],
            'lastRun': job['last_run'].isoformat() if job['last_run'] else None,
            'lastError': job['last_error'],
            'nextRun': next_run,
        }
