"""
Scheduled job definitions.
"""

import logging

from prepaid_billing import create_low_balance_alerts
from utils import round_money

logger = logging.getLogger(__name__)

METER_ABNORMALITY_CHECK = 'meter-abnormality-check'
PREPAID_BALANCE_CHECK = 'prepaid-balance-check'
NOTIFICATION_RETRY = 'notification-retry'


def check_prepaid_balances(dispatcher):
    """Raise a notification for every new low balance alert.

    The alert row is committed together with its notification.
    """
    def notify(account, alert):
        consumer = account.consumer
        dispatcher.raise_alert(alert.alert_type, {
            'account_number': account.account_number,
            'consumer_number': consumer.consumer_number if consumer else None,
            'consumer_name': consumer.name if consumer else None,
            'balance': f"{round_money(account.current_balance):.2f}",
        }, consumer_id=account.consumer_id)

    alerts = create_low_balance_alerts(notify=notify)
    return {'alertsCreated': len(alerts)}


def retry_notifications(dispatcher):
    outcomes = dispatcher.retry_pending()
    return {
        'retried': len(outcomes),
        'delivered': sum(1 for o in outcomes if o.status == 'DELIVERED'),
    }


def log_job_failure(error, name):
    logger.error("Scheduled job '%s' failed: %s", name, error)


def initialize_jobs(scheduler, app):
    """Register the periodic jobs on `scheduler`."""
    dispatcher = app.extensions['notification_dispatcher']
    monitor = app.extensions['abnormality_monitor']
    timezone = app.config.get('SCHEDULER_TIMEZONE')

    scheduler.add_job(METER_ABNORMALITY_CHECK, '* * * * *', monitor.check_meters,
                      timezone=timezone, on_error=log_job_failure)
    scheduler.add_job(PREPAID_BALANCE_CHECK, '*/15 * * * *', lambda: check_prepaid_balances(dispatcher),
                      timezone=timezone, on_error=log_job_failure)
    scheduler.add_job(NOTIFICATION_RETRY, '*/5 * * * *', lambda: retry_notifications(dispatcher),
                      timezone=timezone, on_error=log_job_failure)

    logger.info("Registered %d scheduled jobs", len(scheduler.get_jobs()))
    return scheduler
