from decimal import Decimal

import pytest

from app import create_app
from auth import issue_token
from models import db, Consumer, DTR, Location, Meter, PrepaidAccount, Role, User

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite://',
    'JWT_SECRET_KEY': 'test-secret-key-with-enough-length-for-hs256',
    'MAIL_ENABLED': False,
    'MSG91_AUTH_TOKEN': '',
    'ENABLE_SCHEDULER': False,
    'ADMIN_EMAILS': ['ops@example.com'],
    'ALERT_PHONE_NUMBERS': [],
    'CORS_ORIGINS': ['http://localhost'],
    'NOTIFICATION_MAX_ATTEMPTS': 3,
}


@pytest.fixture
def app():
    app = create_app(TEST_CONFIG)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
    app.extensions['job_scheduler'].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


def bearer(token):
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def admin_token(app):
    return issue_token(1, roles=['admin'], permissions=['MANAGE_ROLES'])


@pytest.fixture
def admin_headers(admin_token):
    return bearer(admin_token)


@pytest.fixture
def operator_headers(app):
    return bearer(issue_token(2, roles=['operator'], location_id=1))


@pytest.fixture
def make_account(app):
    """Create a consumer with one prepaid account."""
    created = []

    def _make(balance='0', recharged='0', consumed='0', number=None, **kwargs):
        n = len(created) + 1
        consumer = Consumer(consumer_number=number or f"CON{n:04d}", name=f"Consumer {n}",
                            primary_phone=f"90000000{n:02d}")
        account = PrepaidAccount(
            consumer=consumer,
            account_number=f"PA{n:04d}",
            current_balance=Decimal(balance),
            total_recharged=Decimal(recharged),
            total_consumed=Decimal(consumed),
            **kwargs,
        )
        db.session.add(account)
        db.session.commit()
        created.append(account)
        return account

    return _make


@pytest.fixture
def meter(app):
    location = Location(name='North Zone', code='NZ')
    dtr = DTR(dtr_number='DTR-002', name='Market Road', feeder_name='Feeder 11', location=location)
    meter = Meter(meter_number='23010587', serial_number='SN-23010587', dtr=dtr, location=location)
    db.session.add(meter)
    db.session.commit()
    return meter


@pytest.fixture
def locations(app):
    north = Location(id=1, name='North Zone', code='NZ')
    south = Location(id=2, name='South Zone', code='SZ')
    db.session.add_all([north, south])
    db.session.commit()
    return north, south


def add_user(username, role, location):
    user = User(username=username, email=f"{username}@example.com", role=role, location=location)
    db.session.add(user)
    db.session.commit()
    return user


def add_role(name, **kwargs):
    role = Role(name=name, **kwargs)
    db.session.add(role)
    db.session.commit()
    return role
