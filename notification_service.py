"""
Notification dispatcher: every alert is first stored as a PENDING
notification, then pushed over the socket layer, email and SMS. Channel
failures are recorded on the row and reported in the DispatchResult; they
never undo the stored notification.
"""

import logging
from collections import namedtuple
from datetime import datetime

from exceptions import DownstreamDeliveryError
from models import db, Notification

logger = logging.getLogger(__name__)

ALL_CHANNELS = ['PUSH', 'EMAIL', 'SMS']

# Delivery outcomes
RECORDED = 'RECORDED'
DELIVERED = 'DELIVERED'
DELIVERY_FAILED = 'DELIVERY_FAILED'

SENT = 'sent'
FAILED = 'failed'
SKIPPED = 'skipped'

DispatchResult = namedtuple('DispatchResult', ['notification', 'status', 'channels'])

ALERT_KINDS = {
    'ZERO_VALUE': {
        'priority': 'URGENT',
        'title': 'Zero Power Values Alert - {dtr_name}',
        'message': ('Meter {meter_serial} at {dtr_name} ({feeder_name}) has detected zero power values'
                    ' ({zero_values}). Requires immediate investigation.'),
    },
    'POWER_FAILURE': {
        'priority': 'URGENT',
        'title': 'Power Failure Alert - {dtr_name}',
        'message': ('Meter {meter_serial} at {dtr_name} ({feeder_name}) has detected power failure.'
                    ' Requires immediate investigation.'),
    },
    'METER_ABNORMALITY': {
        'priority': 'HIGH',
        'title': 'Meter Abnormality Alert - {dtr_name}',
        'message': ('Meter {meter_serial} at {dtr_name} ({feeder_name}) has detected abnormality:'
                    ' {abnormality_type}. Requires investigation.'),
    },
    'LOW_BALANCE': {
        'priority': 'HIGH',
        'title': 'Low Balance Alert - {account_number}',
        'message': 'Prepaid account {account_number} is running low with a balance of {balance}.',
    },
    'EMERGENCY_LOW': {
        'priority': 'URGENT',
        'title': 'Emergency Balance Alert - {account_number}',
        'message': ('Prepaid account {account_number} has reached its emergency threshold with a'
                    ' balance of {balance}. Supply may be disconnected.'),
    },
}


class _ContextDefaults(dict):
    def __missing__(self, key):
        return 'N/A'


def _format_values(value):
    if isinstance(value, (list, tuple)):
        return ', '.join(str(v) for v in value)
    return value


def build_alert_text(kind, context):
    """Return (priority, title, message) for an alert kind."""
    try:
        template = ALERT_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown alert kind: {kind}")
    values = _ContextDefaults({k: _format_values(v) for k, v in context.items()})
    return template['priority'], template['title'].format_map(values), template['message'].format_map(values)


def serialize_notification(notification):
    return {
        'id': notification.id,
        'type': notification.type,
        'title': notification.title,
        'message': notification.message,
        'priority': notification.priority,
        'channels': notification.channels or [],
        'status': notification.status,
        'attempts': notification.attempts,
        'lastError': notification.last_error,
        'consumerId': notification.consumer_id,
        'userId': notification.user_id,
        'sentAt': notification.sent_at.isoformat() if notification.sent_at else None,
        'createdAt': notification.created_at.isoformat() if notification.created_at else None,
    }


class NotificationDispatcher:
    def __init__(self, email_service=None, sms_service=None, broadcaster=None,
                 admin_emails=None, alert_phone_numbers=None, max_attempts=5):
        self.email_service = email_service
        self.sms_service = sms_service
        self.broadcaster = broadcaster
        self.admin_emails = list(admin_emails or [])
        self.alert_phone_numbers = list(alert_phone_numbers or [])
        self.max_attempts = max_attempts

    def raise_alert(self, kind, context, user_id=None, consumer_id=None, channels=None):
        """Record an alert notification and try to deliver it."""
        priority, title, message = build_alert_text(kind, context)
        logger.info("Raising %s alert: %s", kind, title)
        notification = self.create_notification(
            notification_type=kind,
            title=title,
            message=message,
            priority=priority,
            channels=channels or ALL_CHANNELS,
            user_id=user_id,
            consumer_id=consumer_id,
            payload=context,
        )
        return self.deliver(notification)

    def create_notification(self, notification_type, title, message, priority='MEDIUM',
                            channels=None, user_id=None, consumer_id=None, payload=None):
        notification = Notification(
            type=notification_type,
            title=title,
            message=message,
            priority=priority,
            channels=list(channels or ['PUSH']),
            user_id=user_id,
            consumer_id=consumer_id,
            payload=payload,
            status='PENDING',
        )
        db.session.add(notification)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Notification %s created", notification.id)
        return notification

    def deliver(self, notification):
        """Attempt every channel of an already stored notification."""
        results = {}
        errors = []
        for channel in notification.channels or []:
            sender = getattr(self, f"_send_{channel.lower()}", None)
            if sender is None:
                results[channel] = SKIPPED
                continue
            try:
                results[channel] = SENT if sender(notification) else SKIPPED
            except DownstreamDeliveryError as e:
                logger.warning("Notification %s: %s", notification.id, e)
                results[channel] = FAILED
                errors.append(str(e))
            except Exception as e:
                logger.exception("Notification %s: %s channel crashed", notification.id, channel)
                results[channel] = FAILED
                errors.append(f"{channel}: {e}")

        status = self._apply_outcome(notification, results, errors)
        return DispatchResult(notification, status, results)

    def retry_pending(self, limit=50):
        """Re-deliver notifications whose earlier delivery attempt failed."""
        pending = Notification.query.filter(
            Notification.status == 'PENDING',
            Notification.attempts > 0,
            Notification.attempts < self.max_attempts,
        ).order_by(Notification.created_at.asc()).limit(limit).all()

        outcomes = [self.deliver(n) for n in pending]
        if outcomes:
            delivered = sum(1 for o in outcomes if o.status == DELIVERED)
            logger.info("Retried %d notifications, %d delivered", len(outcomes), delivered)
        return outcomes

    def _apply_outcome(self, notification, results, errors):
        attempted = [r for r in results.values() if r != SKIPPED]
        if not attempted:
            return RECORDED

        if errors:
            notification.attempts = (notification.attempts or 0) + 1
            notification.last_error = '; '.join(errors)
            if notification.attempts >= self.max_attempts:
                notification.status = 'FAILED'
            status = DELIVERY_FAILED
        else:
            notification.status = 'SENT'
            notification.sent_at = datetime.utcnow()
            notification.last_error = None
            status = DELIVERED

        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return status

    def _send_push(self, notification):
        if self.broadcaster is None:
            return False
        room = f"user_{notification.user_id}" if notification.user_id else 'role_admin'
        payload = {
            'id': notification.id,
            'type': notification.type,
            'title': notification.title,
            'message': notification.message,
            'priority': notification.priority,
            'timestamp': notification.created_at.isoformat() if notification.created_at else None,
            'read': False,
        }
        try:
            self.broadcaster.emit_to_room(room, 'notification', payload)
        except Exception as e:
            raise DownstreamDeliveryError('PUSH', str(e)) from e
        return True

    def _send_email(self, notification):
        if self.email_service is None or not self.email_service.enabled:
            return False
        body = self.email_service.render_alert_html(notification, notification.payload)
        return self.email_service.send_email(
            self.admin_emails, notification.title, body, priority=notification.priority
        )

    def _send_sms(self, notification):
        if self.sms_service is None or not self.sms_service.enabled:
            return False
        payload = notification.payload or {}
        variables = {
            'var': payload.get('dtr_name') or payload.get('account_number') or notification.title,
            'var1': payload.get('meter_serial') or payload.get('meter_number') or '',
            'var2': _format_values(payload.get('abnormality_type') or payload.get('zero_values')) or notification.message,
            'var3': notification.created_at.strftime('%d-%m-%Y %H:%M:%S') if notification.created_at else '',
        }
        self.sms_service.send_sms(self.alert_phone_numbers, variables)
        return True
