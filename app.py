import logging
from datetime import datetime

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, jwt_required
from flask_socketio import SocketIO
from werkzeug.exceptions import HTTPException

from abnormality import MeterAbnormalityMonitor, analyze_meter_reading, get_abnormality_summary
from auth import ADMIN_ROLES, current_user_context, register_jwt_handlers, role_required
from config import Config, configure_logging
from email_service import EmailService, SmsService
from exceptions import AppError, InvalidOperationError, NotFoundError
from job_scheduler import JobScheduler
from jobs import initialize_jobs
from models import db, Meter, MeterReading, Notification, Ticket
from notification_service import NotificationDispatcher, serialize_notification
from pagination import paginate_query
from prepaid_billing import (
    compute_prepaid_stats, get_prepaid_billing_table, record_consumption, record_recharge,
)
from role_service import role_service, serialize_permission, serialize_role
from socket_events import (
    Broadcaster, publish_meter_reading, publish_ticket_update, register_socket_handlers, send_announcement,
)
from utils import round_money
from validation import (
    AnnouncementIn, AssignPermissions, ConsumptionIn, MeterReadingIn, RechargeIn, RoleCreate, RoleUpdate,
    TicketStatusIn, parse_body,
)

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


def create_response(success=True, data=None, error=None, message=None, errors=None,
                    pagination=None, status=200):
    response = {'success': success, 'metadata': {'timestamp': datetime.utcnow().isoformat()}}
    if data is not None: response['data'] = data
    if message is not None: response['message'] = message
    if error is not None: response['error'] = error
    if errors: response['errors'] = errors
    if pagination is not None: response['pagination'] = pagination
    return jsonify(response), status


def _service(name):
    return current_app.extensions[name]


# Prepaid billing
@api.route('/prepaid-billing/stats', methods=['GET'])
@jwt_required()
def prepaid_billing_stats():
    return create_response(data=compute_prepaid_stats(), message='Prepaid billing stats retrieved successfully')


@api.route('/prepaid-billing/table', methods=['GET'])
@jwt_required()
def prepaid_billing_table():
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 10, type=int)
    filters = {
        'status': request.args.get('status'),
        'consumerNumber': request.args.get('consumerNumber'),
        'accountNumber': request.args.get('accountNumber'),
    }
    rows, pagination = get_prepaid_billing_table(page, limit, filters)
    return create_response(data=rows, pagination=pagination)


@api.route('/prepaid-billing/accounts/<account_id>/recharges', methods=['POST'])
@jwt_required()
def create_recharge(account_id):
    body = parse_body(RechargeIn)
    recharge = record_recharge(account_id, body.amount, body.payment_status, body.payment_reference)
    return create_response(data={
        'id': recharge.id,
        'accountId': recharge.account_id,
        'amount': round_money(recharge.amount),
        'paymentStatus': recharge.payment_status,
        'paymentReference': recharge.payment_reference,
        'currentBalance': round_money(recharge.account.current_balance),
        'createdAt': recharge.created_at.isoformat(),
    }, message='Recharge recorded successfully', status=201)


@api.route('/prepaid-billing/accounts/<account_id>/consumption', methods=['POST'])
@jwt_required()
def create_consumption(account_id):
    body = parse_body(ConsumptionIn)
    transaction = record_consumption(account_id, body.consumption_kwh, body.amount)
    return create_response(data={
        'id': transaction.id,
        'accountId': transaction.account_id,
        'consumptionKWh': round_money(transaction.consumption_kwh),
        'amount': round_money(transaction.amount),
        'balanceAfter': round_money(transaction.balance_after),
        'createdAt': transaction.created_at.isoformat(),
    }, message='Consumption recorded successfully', status=201)


# Roles
@api.route('/roles', methods=['GET'])
@jwt_required()
def get_roles():
    user = current_user_context()
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 10, type=int)
    search = request.args.get('search', '')

    roles, pagination = role_service.list_roles(user.location_id, page, limit, search)
    return create_response(
        data=[serialize_role(r, user.location_id) for r in roles],
        pagination=pagination,
        message='Roles retrieved successfully',
    )


@api.route('/roles/<int:role_id>', methods=['GET'])
@jwt_required()
def get_role(role_id):
    return create_response(data=serialize_role(role_service.get_role(role_id)))


@api.route('/roles', methods=['POST'])
@jwt_required()
def create_role():
    body = parse_body(RoleCreate)
    role = role_service.create_role(
        name=body.name,
        description=body.description,
        level=body.level,
        access_level=body.access_level,
        is_active=body.is_active,
        permission_ids=body.permission_ids,
    )
    return create_response(data=serialize_role(role), message='Role created successfully', status=201)


@api.route('/roles/<int:role_id>', methods=['PUT'])
@jwt_required()
def update_role(role_id):
    body = parse_body(RoleUpdate)
    role = role_service.update_role(role_id, body.model_dump(exclude_unset=True))
    return create_response(data=serialize_role(role), message='Role updated successfully')


@api.route('/roles/<int:role_id>', methods=['DELETE'])
@jwt_required()
def delete_role(role_id):
    role_service.delete_role(role_id)
    return create_response(message='Role deleted successfully')


@api.route('/roles/<int:role_id>/assign-permissions', methods=['POST'])
@jwt_required()
def assign_permissions(role_id):
    body = parse_body(AssignPermissions)
    role = role_service.replace_permissions(role_id, body.permission_ids)
    return create_response(data=serialize_role(role), message='Permissions assigned successfully')


@api.route('/permissions', methods=['GET'])
@jwt_required()
def get_permissions():
    return create_response(data=[serialize_permission(p) for p in role_service.list_permissions()])


# Notifications
@api.route('/notifications', methods=['GET'])
@jwt_required()
def get_notifications():
    user = current_user_context()
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 10, type=int)
    status = request.args.get('status')

    query = Notification.query
    if not user.has_role(*ADMIN_ROLES):
        query = query.filter(Notification.user_id == user.user_id)
    if status:
        query = query.filter(Notification.status == status.upper())

    query = query.order_by(Notification.created_at.desc(), Notification.id.desc())
    notifications, pagination = paginate_query(query, page, limit)
    return create_response(data=[serialize_notification(n) for n in notifications], pagination=pagination)


@api.route('/notifications/<int:notification_id>/retry', methods=['POST'])
@role_required(*ADMIN_ROLES)
def retry_notification(notification_id):
    notification = db.session.get(Notification, notification_id)
    if not notification:
        raise NotFoundError('Notification not found')
    if notification.status == 'SENT':
        raise InvalidOperationError('Notification has already been sent')

    result = _service('notification_dispatcher').deliver(notification)
    return create_response(data={
        'notification': serialize_notification(result.notification),
        'status': result.status,
        'channels': result.channels,
    })


# Meters
@api.route('/meters/<int:meter_id>/readings', methods=['POST'])
@jwt_required()
def create_meter_reading(meter_id):
    meter = db.session.get(Meter, meter_id)
    if not meter:
        raise NotFoundError('Meter not found')
    body = parse_body(MeterReadingIn)

    values = body.model_dump(exclude_none=True)
    reading = MeterReading(meter_id=meter.id, **values)
    db.session.add(reading)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    publish_meter_reading(_service('broadcaster'), meter, reading)

    alert = None
    if meter.status == 'ACTIVE' and meter.is_in_use:
        result = _service('abnormality_monitor').evaluate(meter, reading)
        if result is not None:
            alert = {'notificationId': result.notification.id, 'status': result.status}

    return create_response(data={
        'id': reading.id,
        'meterId': meter.id,
        'readingDate': reading.reading_date.isoformat(),
        'abnormalities': get_abnormality_summary(analyze_meter_reading(reading)),
        'alert': alert,
    }, message='Meter reading recorded successfully', status=201)


# Tickets
@api.route('/tickets/<int:ticket_id>/status', methods=['PUT'])
@jwt_required()
def update_ticket_status(ticket_id):
    user = current_user_context()
    ticket = db.session.get(Ticket, ticket_id)
    if not ticket:
        raise NotFoundError('Ticket not found')
    body = parse_body(TicketStatusIn)

    ticket.status = body.status
    if body.assigned_to is not None:
        ticket.assigned_to = body.assigned_to
    if body.status in ('RESOLVED', 'CLOSED') and not ticket.resolved_at:
        ticket.resolved_at = datetime.utcnow()
    ticket.updated_at = datetime.utcnow()
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    event = publish_ticket_update(_service('broadcaster'), ticket, updated_by=user.user_id)
    return create_response(data=event, message='Ticket status updated successfully')


# Administration
@api.route('/announcements', methods=['POST'])
@role_required(*ADMIN_ROLES)
def create_announcement():
    body = parse_body(AnnouncementIn)
    announcement = send_announcement(
        _service('broadcaster'), body.title, body.message, body.priority, body.target_roles
    )
    return create_response(data=announcement, message='Announcement sent', status=201)


@api.route('/jobs', methods=['GET'])
@role_required(*ADMIN_ROLES)
def get_jobs():
    return create_response(data=_service('job_scheduler').get_jobs())


@api.route('/jobs/<name>/run', methods=['POST'])
@role_required(*ADMIN_ROLES)
def run_job(name):
    return create_response(data=_service('job_scheduler').run_job(name))


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(e):
        return create_response(success=False, message=e.message, errors=getattr(e, 'errors', None),
                               status=e.status_code)

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return create_response(success=False, message=e.description, status=e.code)
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return create_response(success=False, message='Internal server error', status=500)


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    db.init_app(app)
    CORS(app, origins=app.config['CORS_ORIGINS'], supports_credentials=True)
    jwt = JWTManager(app)
    register_jwt_handlers(jwt)

    socketio = SocketIO(app, cors_allowed_origins=app.config['CORS_ORIGINS'], async_mode='threading')
    broadcaster = Broadcaster(socketio)
    register_socket_handlers(socketio, broadcaster)

    dispatcher = NotificationDispatcher(
        email_service=EmailService.from_config(app.config),
        sms_service=SmsService.from_config(app.config),
        broadcaster=broadcaster,
        admin_emails=app.config['ADMIN_EMAILS'],
        alert_phone_numbers=app.config['ALERT_PHONE_NUMBERS'],
        max_attempts=app.config['NOTIFICATION_MAX_ATTEMPTS'],
    )
    scheduler = JobScheduler(app, default_timezone=app.config['SCHEDULER_TIMEZONE'])
    app.extensions.update({
        'broadcaster': broadcaster,
        'notification_dispatcher': dispatcher,
        'abnormality_monitor': MeterAbnormalityMonitor(dispatcher),
        'job_scheduler': scheduler,
    })
    initialize_jobs(scheduler, app)

    app.register_blueprint(api)
    register_error_handlers(app)

    with app.app_context():
        db.create_all()

    if app.config['ENABLE_SCHEDULER']:
        scheduler.start_all_jobs()
        logger.info("Job scheduler started")

    return app


if __name__ == '__main__':
    configure_logging()
    app = create_app()
    app.extensions['socketio'].run(app, host='0.0.0.0', port=5000, allow_unsafe_werkzeug=True)
