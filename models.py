from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
from decimal import Decimal
import uuid

db = SQLAlchemy()


def new_id():
    return str(uuid.uuid4())


# Access control
class Location(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(20), unique=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Permission(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(255))


class RolePermission(db.Model):
    __tablename__ = 'role_permission'
    __table_args__ = (db.UniqueConstraint('role_id', 'permission_id', name='uq_role_permission'),)

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(db.Integer, db.ForeignKey('role.id'), nullable=False)
    permission_id = db.Column(db.Integer, db.ForeignKey('permission.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    permission = db.relationship('Permission')


class Role(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.String(255))
    level = db.Column(db.Integer, default=1, nullable=False)
    access_level = db.Column(db.String(20), default='NORMAL', nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = db.relationship('User', back_populates='role')
    role_permissions = db.relationship('RolePermission', backref='role', order_by='RolePermission.permission_id')

    @property
    def permissions(self):
        return [rp.permission for rp in self.role_permissions]


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    email = db.Column(db.String(100), unique=True)
    phone = db.Column(db.String(20))
    role_id = db.Column(db.Integer, db.ForeignKey('role.id'))
    location_id = db.Column(db.Integer, db.ForeignKey('location.id'))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    role = db.relationship('Role', back_populates='users')
    location = db.relationship('Location')


# Prepaid billing
class Consumer(db.Model):
    id = db.Column(db.String(50), primary_key=True, default=new_id)
    consumer_number = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    primary_phone = db.Column(db.String(20))
    email = db.Column(db.String(100))
    category = db.Column(db.String(30), default='DOMESTIC')
    location_id = db.Column(db.Integer, db.ForeignKey('location.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class PrepaidAccount(db.Model):
    __tablename__ = 'prepaid_account'

    id = db.Column(db.String(50), primary_key=True, default=new_id)
    consumer_id = db.Column(db.String(50), db.ForeignKey('consumer.id'), nullable=False)
    account_number = db.Column(db.String(50), unique=True, nullable=False)
    current_balance = db.Column(db.Numeric(14, 4), default=Decimal('0'), nullable=False)
    total_recharged = db.Column(db.Numeric(14, 4), default=Decimal('0'), nullable=False)
    total_consumed = db.Column(db.Numeric(14, 4), default=Decimal('0'), nullable=False)
    low_balance_threshold = db.Column(db.Numeric(14, 4), default=Decimal('100'))
    emergency_threshold = db.Column(db.Numeric(14, 4), default=Decimal('20'))
    is_active = db.Column(db.Boolean, default=True)
    is_blocked = db.Column(db.Boolean, default=False)
    block_reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    consumer = db.relationship('Consumer', backref='prepaid_accounts')
    recharges = db.relationship('PrepaidRecharge', backref='account')
    transactions = db.relationship('PrepaidTransaction', backref='account')
    alerts = db.relationship('PrepaidAlert', backref='account')


class PrepaidRecharge(db.Model):
    __tablename__ = 'prepaid_recharge'

    id = db.Column(db.String(50), primary_key=True, default=new_id)
    account_id = db.Column(db.String(50), db.ForeignKey('prepaid_account.id'), nullable=False)
    amount = db.Column(db.Numeric(14, 4), nullable=False)
    payment_status = db.Column(db.Enum('PENDING', 'SUCCESS', 'FAILED', name='payment_status'), default='PENDING')
    payment_reference = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)


class PrepaidTransaction(db.Model):
    __tablename__ = 'prepaid_transaction'

    id = db.Column(db.String(50), primary_key=True, default=new_id)
    account_id = db.Column(db.String(50), db.ForeignKey('prepaid_account.id'), nullable=False)
    transaction_type = db.Column(db.Enum('CONSUMPTION', 'RECHARGE', 'ADJUSTMENT', 'REFUND', name='transaction_type'), nullable=False)
    status = db.Column(db.Enum('PENDING', 'COMPLETED', 'FAILED', name='transaction_status'), default='PENDING')
    consumption_kwh = db.Column(db.Numeric(14, 4), default=Decimal('0'))
    amount = db.Column(db.Numeric(14, 4), nullable=False)
    balance_after = db.Column(db.Numeric(14, 4))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)


class PrepaidAlert(db.Model):
    __tablename__ = 'prepaid_alert'

    id = db.Column(db.String(50), primary_key=True, default=new_id)
    account_id = db.Column(db.String(50), db.ForeignKey('prepaid_account.id'), nullable=False)
    alert_type = db.Column(db.Enum('LOW_BALANCE', 'EMERGENCY_LOW', 'RECHARGE_SUCCESS', 'ACCOUNT_BLOCKED', name='prepaid_alert_type'), nullable=False)
    message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)


# Notifications
class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    consumer_id = db.Column(db.String(50), db.ForeignKey('consumer.id'))
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    priority = db.Column(db.Enum('LOW', 'MEDIUM', 'HIGH', 'URGENT', name='notification_priority'), default='MEDIUM')
    channels = db.Column(db.JSON, default=lambda: ['PUSH'])
    payload = db.Column(db.JSON)
    status = db.Column(db.Enum('PENDING', 'SENT', 'FAILED', name='notification_status'), default='PENDING', nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    last_error = db.Column(db.Text)
    sent_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Grid assets
class DTR(db.Model):
    __tablename__ = 'dtr'

    id = db.Column(db.Integer, primary_key=True)
    dtr_number = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(100))
    feeder_name = db.Column(db.String(100))
    location_id = db.Column(db.Integer, db.ForeignKey('location.id'))

    location = db.relationship('Location')


class Meter(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    meter_number = db.Column(db.String(50), unique=True, nullable=False)
    serial_number = db.Column(db.String(50), unique=True, nullable=False)
    status = db.Column(db.Enum('ACTIVE', 'INACTIVE', 'FAULTY', name='meter_status'), default='ACTIVE')
    is_in_use = db.Column(db.Boolean, default=True)
    dtr_id = db.Column(db.Integer, db.ForeignKey('dtr.id'))
    location_id = db.Column(db.Integer, db.ForeignKey('location.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    dtr = db.relationship('DTR', backref='meters')
    location = db.relationship('Location')
    readings = db.relationship('MeterReading', backref='meter', order_by='MeterReading.reading_date.desc()', lazy='dynamic')

    @property
    def dtr_label(self):
        if self.dtr:
            return self.dtr.dtr_number
        if self.dtr_id:
            return f"DTR-{self.dtr_id}"
        return 'Unknown DTR'

    @property
    def feeder_label(self):
        if self.dtr and self.dtr.feeder_name:
            return self.dtr.feeder_name
        if self.location:
            return self.location.name
        return 'Unknown Feeder'


class MeterReading(db.Model):
    __tablename__ = 'meter_reading'

    id = db.Column(db.Integer, primary_key=True)
    meter_id = db.Column(db.Integer, db.ForeignKey('meter.id'), nullable=False)
    voltage_r = db.Column(db.Float)
    voltage_y = db.Column(db.Float)
    voltage_b = db.Column(db.Float)
    current_r = db.Column(db.Float)
    current_y = db.Column(db.Float)
    current_b = db.Column(db.Float)
    rph_power_factor = db.Column(db.Float)
    yph_power_factor = db.Column(db.Float)
    bph_power_factor = db.Column(db.Float)
    neutral_current = db.Column(db.Float)
    frequency = db.Column(db.Float)
    kwh = db.Column(db.Float)
    reading_date = db.Column(db.DateTime, default=datetime.utcnow, index=True)


# Tickets
class Ticket(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    ticket_number = db.Column(db.String(20), unique=True, nullable=False)
    subject = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.Enum('OPEN', 'IN_PROGRESS', 'ESCALATED', 'URGENT', 'RESOLVED', 'CLOSED', name='ticket_status'), default='OPEN', nullable=False)
    priority = db.Column(db.Enum('LOW', 'MEDIUM', 'HIGH', 'URGENT', name='ticket_priority'), default='MEDIUM')
    consumer_id = db.Column(db.String(50), db.ForeignKey('consumer.id'))
    assigned_to = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    resolved_at = db.Column(db.DateTime)

    consumer = db.relationship('Consumer')
    assignee = db.relationship('User')
