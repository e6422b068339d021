import logging
import smtplib
import threading
import time
from collections import defaultdict, deque
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

import requests

from exceptions import DownstreamDeliveryError

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600

SUBJECT_PREFIXES = {
    'LOW': '[INFO]',
    'MEDIUM': '[NOTICE]',
    'HIGH': '[ALERT]',
    'URGENT': '[URGENT]',
}


class HourlyRateLimiter:
    """Sliding one-hour cap on sends, tracked separately per priority.

    `allows` only looks at the count; `record` adds a send. Callers record
    after the message has actually gone out, so failed attempts cost nothing.
    """

    def __init__(self, limits, clock=time.monotonic):
        self.limits = dict(limits)
        self.clock = clock
        self._sent = defaultdict(deque)
        self._lock = threading.Lock()

    def _window(self, priority, now):
        window = self._sent[priority]
        while window and now - window[0] >= HOUR_SECONDS:
            window.popleft()
        return window

    def allows(self, priority):
        limit = self.limits.get(priority)
        if limit is None:
            return True
        with self._lock:
            return len(self._window(priority, self.clock())) < limit

    def record(self, priority):
        if priority not in self.limits:
            return
        now = self.clock()
        with self._lock:
            self._window(priority, now).append(now)


class EmailService:
    def __init__(self, smtp_server='smtp.gmail.com', smtp_port=587, username='', password='',
                 sender=None, use_tls=True, enabled=False, rate_limits=None):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.use_tls = use_tls
        self.enabled = enabled
        self.rate_limiter = HourlyRateLimiter(rate_limits or {})

    @classmethod
    def from_config(cls, config):
        return cls(
            smtp_server=config['SMTP_HOST'],
            smtp_port=config['SMTP_PORT'],
            username=config['SMTP_USER'],
            password=config['SMTP_PASS'],
            sender=config['EMAIL_FROM'],
            use_tls=config['SMTP_USE_TLS'],
            enabled=config['MAIL_ENABLED'],
            rate_limits=config['EMAIL_RATE_LIMITS'],
        )

    def send_email(self, recipients, subject, body, priority='MEDIUM'):
        """Send an HTML email; raises DownstreamDeliveryError on any failure."""
        if not recipients:
            raise DownstreamDeliveryError('EMAIL', 'no recipients configured')
        msg = MIMEMultipart('alternative')
        msg['From'] = self.sender
        msg['To'] = ', '.join(recipients)
        msg['Subject'] = f"{SUBJECT_PREFIXES.get(priority, '')} {subject}".strip()
        msg.attach(MIMEText(body, 'html'))

        if not self.enabled:
            logger.info("Mail disabled, not sending '%s' to %s", msg['Subject'], msg['To'])
            return False
        if not self.rate_limiter.allows(priority):
            raise DownstreamDeliveryError('EMAIL', f'hourly limit reached for {priority} emails')

        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.sendmail(self.sender, recipients, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise DownstreamDeliveryError('EMAIL', str(e)) from e

        self.rate_limiter.record(priority)
        logger.info("Email '%s' sent to %d recipients", subject, len(recipients))
        return True

    def render_alert_html(self, notification, details=None):
        rows = ''.join(
            f"<tr><th>{key}</th><td>{value}</td></tr>" for key, value in (details or {}).items()
        )
        return f"""
        <html>
        <body>
            <h2>{notification.title}</h2>
            <p><strong>Priority:</strong> {notification.priority}</p>
            <p>{notification.message}</p>
            {f'<table>{rows}</table>' if rows else ''}
            <p><strong>Created:</strong> {notification.created_at.strftime("%d-%m-%Y %H:%M:%S")}</p>
            <hr>
            <p><small>Utility Admin Alerts</small></p>
        </body>
        </html>
        """


class SmsService:
    """MSG91 flow API client."""

    def __init__(self, auth_token='', sender_id='', template_id='', flow_url='', session=None):
        self.auth_token = auth_token
        self.sender_id = sender_id
        self.template_id = template_id
        self.flow_url = flow_url
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config):
        return cls(
            auth_token=config['MSG91_AUTH_TOKEN'],
            sender_id=config['MSG91_SENDER_ID'],
            template_id=config['MSG91_TEMPLATE_ID'],
            flow_url=config['MSG91_FLOW_URL'],
        )

    @property
    def enabled(self):
        return bool(self.auth_token and self.template_id)

    def send_sms(self, mobiles, variables, template_id=None):
        """Send one flow message to each mobile; raises DownstreamDeliveryError."""
        if not mobiles:
            raise DownstreamDeliveryError('SMS', 'no phone numbers configured')

        payload = {
            'template_id': template_id or self.template_id,
            'sender': self.sender_id,
            'short_url': '0',
            'recipients': [dict(mobiles=m, **variables) for m in mobiles],
        }
        try:
            response = self.session.post(
                self.flow_url,
                json=payload,
                headers={'authkey': self.auth_token, 'Content-Type': 'application/json'},
                timeout=15,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise DownstreamDeliveryError('SMS', str(e)) from e

        if body.get('type') == 'error':
            raise DownstreamDeliveryError('SMS', body.get('message', 'provider rejected the request'))

        logger.info("SMS sent to %d numbers", len(mobiles))
        return body
