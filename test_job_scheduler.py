"""
Job scheduler tests
"""

from types import SimpleNamespace

import pytest
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from flask import has_app_context

from exceptions import NotFoundError
from job_scheduler import JobScheduler, build_trigger
from jobs import METER_ABNORMALITY_CHECK, NOTIFICATION_RETRY, PREPAID_BALANCE_CHECK, check_prepaid_balances
from models import Notification, PrepaidAlert


class FakeScheduler:
    """Stands in for BackgroundScheduler so no threads are started."""

    def __init__(self, fail_for=()):
        self.running = False
        self.jobs = {}
        self.removed = []
        self.fail_for = set(fail_for)

    def start(self):
        self.running = True

    def shutdown(self, wait=False):
        self.running = False

    def add_job(self, func, trigger, args=None, id=None, **kwargs):
        if id in self.fail_for:
            raise RuntimeError(f"cannot schedule {id}")
        self.jobs[id] = SimpleNamespace(func=func, args=args, trigger=trigger, next_run_time=None)

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        self.removed.append(job_id)
        del self.jobs[job_id]

    def get_job(self, job_id):
        return self.jobs.get(job_id)


def test_build_trigger_accepts_five_and_six_fields():
    assert isinstance(build_trigger('*/15 * * * *'), CronTrigger)
    trigger = build_trigger('30 0 9 * * *', 'Asia/Kolkata')
    assert str(trigger.fields[CronTrigger.FIELD_NAMES.index('second')]) == '30'

    with pytest.raises(ValueError):
        build_trigger('* * *')
    with pytest.raises(ValueError):
        build_trigger('not a cron at all x')


def test_add_job_with_same_name_replaces_it():
    calls = []
    scheduler = JobScheduler(scheduler=FakeScheduler())
    scheduler.add_job('x', '* * * * *', lambda: calls.append('old'))
    scheduler.add_job('x', '*/5 * * * *', lambda: calls.append('new'))

    jobs = scheduler.get_jobs()
    assert [(j['name'], j['schedule']) for j in jobs] == [('x', '*/5 * * * *')]

    scheduler.run_job('x')
    assert calls == ['new']


def test_replacing_a_started_job_stops_the_old_instance():
    fake = FakeScheduler()
    scheduler = JobScheduler(scheduler=fake)
    scheduler.add_job('x', '* * * * *', lambda: None)
    scheduler.start_all_jobs()

    scheduler.add_job('x', '*/2 * * * *', lambda: None)
    assert fake.removed == ['x']
    assert list(fake.jobs) == ['x']
    assert scheduler.get_jobs()[0]['running'] is True


def test_remove_missing_job_is_a_no_op():
    scheduler = JobScheduler(scheduler=FakeScheduler())
    scheduler.remove_job('nope')
    assert scheduler.get_jobs() == []


def test_one_job_failing_to_start_does_not_stop_the_others():
    fake = FakeScheduler(fail_for={'broken'})
    scheduler = JobScheduler(scheduler=fake)
    scheduler.add_job('broken', '* * * * *', lambda: None)
    scheduler.add_job('healthy', '* * * * *', lambda: None)

    scheduler.start_all_jobs()

    assert list(fake.jobs) == ['healthy']
    running = {j['name']: j['running'] for j in scheduler.get_jobs()}
    assert running == {'broken': False, 'healthy': True}


def test_jobs_added_after_start_are_scheduled_immediately():
    fake = FakeScheduler()
    scheduler = JobScheduler(scheduler=fake)
    scheduler.start_all_jobs()

    scheduler.add_job('late', '0 * * * *', lambda: None)
    assert 'late' in fake.jobs


def test_task_failure_is_reported_and_job_stays_registered():
    errors = []
    runs = []

    def task():
        runs.append(1)
        raise RuntimeError('database down')

    scheduler = JobScheduler(scheduler=FakeScheduler())
    scheduler.add_job('flaky', '* * * * *', task, on_error=lambda error, name: errors.append((str(error), name)))

    first = scheduler.run_job('flaky')
    second = scheduler.run_job('flaky')

    assert first['success'] is False
    assert second['error'] == 'database down'
    assert len(runs) == 2
    assert errors == [('database down', 'flaky'), ('database down', 'flaky')]
    job = scheduler.get_jobs()[0]
    assert job['lastRun'] is not None
    assert job['lastError'] == 'database down'


def test_broken_error_handler_does_not_escape():
    def on_error(error, name):
        raise ValueError('handler bug')

    scheduler = JobScheduler(scheduler=FakeScheduler())
    scheduler.add_job('flaky', '* * * * *', lambda: 1 / 0, on_error=on_error)
    assert scheduler.run_job('flaky')['success'] is False


def test_run_unknown_job():
    with pytest.raises(NotFoundError):
        JobScheduler(scheduler=FakeScheduler()).run_job('ghost')


def test_tasks_run_inside_the_app_context(app):
    seen = []
    scheduler = JobScheduler(app=app, scheduler=FakeScheduler())
    scheduler.add_job('ctx', '* * * * *', lambda: seen.append(has_app_context()))
    scheduler.run_job('ctx')
    assert seen == [True]


def test_scheduled_callable_runs_the_wrapped_task():
    calls = []
    fake = FakeScheduler()
    scheduler = JobScheduler(scheduler=fake)
    scheduler.add_job('tick', '* * * * *', lambda: calls.append('tick') or 'done')
    scheduler.start_all_jobs()

    scheduled = fake.jobs['tick']
    result = scheduled.func(*scheduled.args)
    assert calls == ['tick']
    assert result == {'name': 'tick', 'success': True, 'result': 'done'}


def test_background_scheduler_reports_next_run():
    scheduler = JobScheduler(default_timezone='UTC')
    scheduler.add_job('hourly', '0 * * * *', lambda: None)
    try:
        scheduler.start_all_jobs()
        job = scheduler.get_jobs()[0]
        assert job['running'] is True
        assert job['nextRun'] is not None
        assert job['timezone'] == 'UTC'
    finally:
        scheduler.shutdown()
    assert scheduler.get_jobs()[0]['running'] is False


def test_app_registers_the_periodic_jobs(app):
    jobs = {j['name']: j['schedule'] for j in app.extensions['job_scheduler'].get_jobs()}
    assert jobs == {
        METER_ABNORMALITY_CHECK: '* * * * *',
        PREPAID_BALANCE_CHECK: '*/15 * * * *',
        NOTIFICATION_RETRY: '*/5 * * * *',
    }


def test_jobs_api(client, admin_headers, operator_headers):
    body = client.get('/api/jobs', headers=admin_headers).get_json()
    assert len(body['data']) == 3

    response = client.post(f'/api/jobs/{NOTIFICATION_RETRY}/run', headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()['data']['result'] == {'retried': 0, 'delivered': 0}

    assert client.post('/api/jobs/ghost/run', headers=admin_headers).status_code == 404
    assert client.get('/api/jobs', headers=operator_headers).status_code == 403


# Prepaid balance job

class FlakyDispatcher:
    def __init__(self, dispatcher, failures):
        self.dispatcher = dispatcher
        self.failures = failures

    def raise_alert(self, kind, context, **kwargs):
        if self.failures:
            self.failures -= 1
            raise RuntimeError('notification store unavailable')
        return self.dispatcher.raise_alert(kind, context, **kwargs)


def test_prepaid_balance_check_notifies_each_low_account(app, make_account):
    low = make_account(balance='60')
    make_account(balance='10')
    make_account(balance='500')
    dispatcher = app.extensions['notification_dispatcher']

    assert check_prepaid_balances(dispatcher) == {'alertsCreated': 2}

    notifications = Notification.query.order_by(Notification.type).all()
    assert [n.type for n in notifications] == ['EMERGENCY_LOW', 'LOW_BALANCE']
    assert notifications[1].title == 'Low Balance Alert - PA0001'
    assert notifications[1].consumer_id == low.consumer_id
    assert 'balance of 60.00' in notifications[1].message

    assert check_prepaid_balances(dispatcher) == {'alertsCreated': 0}
    assert Notification.query.count() == 2


def test_failed_balance_notification_is_retried_next_run(app, make_account):
    make_account(balance='60')
    make_account(balance='70')
    flaky = FlakyDispatcher(app.extensions['notification_dispatcher'], failures=1)

    assert check_prepaid_balances(flaky) == {'alertsCreated': 1}
    assert PrepaidAlert.query.count() == 1
    assert Notification.query.count() == 1

    assert check_prepaid_balances(flaky) == {'alertsCreated': 1}
    assert PrepaidAlert.query.count() == 2
    assert Notification.query.count() == 2
