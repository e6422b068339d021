import os
import logging
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()


def _env_list(name, default=''):
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(',') if item.strip()]


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///utility_admin.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    JWT_SECRET_KEY = os.environ.get('JWT_SECRET', 'change-me-in-production')
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=int(os.environ.get('JWT_EXPIRY_HOURS', '24')))
    # Header first, then cookie, then query string
    JWT_TOKEN_LOCATION = ['headers', 'cookies', 'query_string']
    JWT_ACCESS_COOKIE_NAME = 'accessToken'
    JWT_QUERY_STRING_NAME = 'token'
    JWT_COOKIE_CSRF_PROTECT = False

    CORS_ORIGINS = _env_list('CORS_ORIGINS', 'http://localhost:1700')

    # Email
    MAIL_ENABLED = _env_bool('MAIL_ENABLED')
    SMTP_HOST = os.environ.get('SMTP_HOST', 'smtp.gmail.com')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', '587'))
    SMTP_USER = os.environ.get('SMTP_USER', '')
    SMTP_PASS = os.environ.get('SMTP_PASS', '')
    SMTP_USE_TLS = _env_bool('SMTP_USE_TLS', 'true')
    EMAIL_FROM = os.environ.get('EMAIL_FROM') or os.environ.get('SMTP_USER', 'alerts@localhost')
    ADMIN_EMAILS = _env_list('ADMIN_EMAILS', 'admin@example.com')
    EMAIL_RATE_LIMITS = {
        'LOW': int(os.environ.get('EMAIL_LIMIT_LOW', '10')),
        'MEDIUM': int(os.environ.get('EMAIL_LIMIT_MEDIUM', '20')),
        'HIGH': int(os.environ.get('EMAIL_LIMIT_HIGH', '30')),
        'URGENT': int(os.environ.get('EMAIL_LIMIT_URGENT', '50')),
    }

    # SMS (MSG91 flow API)
    MSG91_AUTH_TOKEN = os.environ.get('MSG_AUTH_TOKEN', '')
    MSG91_SENDER_ID = os.environ.get('MSG_SENDER_ID', '')
    MSG91_TEMPLATE_ID = os.environ.get('MSG_TEMPLATE_ID', '')
    MSG91_FLOW_URL = os.environ.get('MSG91_FLOW_URL', 'https://control.msg91.com/api/v5/flow/')
    ALERT_PHONE_NUMBERS = _env_list('ALERT_PHONE_NUMBERS')

    # Scheduler
    ENABLE_SCHEDULER = _env_bool('ENABLE_SCHEDULER')
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE', 'Asia/Kolkata')

    # Billing and notifications
    LOW_BALANCE_LIMIT = float(os.environ.get('LOW_BALANCE_LIMIT', '100'))
    NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get('NOTIFICATION_MAX_ATTEMPTS', '5'))

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


def configure_logging(level=None):
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
