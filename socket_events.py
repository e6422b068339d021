"""
Socket.IO broadcast layer: presence, rooms and the server-pushed events.

Rooms: `user_<id>` per user, `role_<role>` per role, `dtr_<name>` for
clients watching a transformer's meter readings.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime

from flask import request
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_socketio import ConnectionRefusedError
from jwt.exceptions import PyJWTError

from auth import UserContext

logger = logging.getLogger(__name__)

ESCALATION_STATUSES = ('ESCALATED', 'URGENT')


class PresenceTracker:
    """Connected sockets per user."""

    def __init__(self):
        self._sessions = {}
        self._user_sids = defaultdict(set)
        self._lock = threading.Lock()

    def add(self, sid, user):
        """Register a socket; True when it is the user's first one."""
        with self._lock:
            self._sessions[sid] = user
            sids = self._user_sids[user.user_id]
            first = not sids
            sids.add(sid)
            return first

    def remove(self, sid):
        """Forget a socket; returns (user, was_last_socket)."""
        with self._lock:
            user = self._sessions.pop(sid, None)
            if user is None:
                return None, False
            sids = self._user_sids.get(user.user_id, set())
            sids.discard(sid)
            if not sids:
                self._user_sids.pop(user.user_id, None)
                return user, True
            return user, False

    def user_for(self, sid):
        with self._lock:
            return self._sessions.get(sid)

    def is_online(self, user_id):
        with self._lock:
            return bool(self._user_sids.get(user_id))

    def online_user_ids(self):
        with self._lock:
            return list(self._user_sids)

    def session_count(self):
        with self._lock:
            return len(self._sessions)


class Broadcaster:
    def __init__(self, socketio, presence=None):
        self.socketio = socketio
        self.presence = presence or PresenceTracker()

    def emit_to_all(self, event, data):
        self.socketio.emit(event, data)

    def emit_to_room(self, room, event, data):
        self.socketio.emit(event, data, to=room)

    def join_room(self, sid, room):
        self.socketio.server.enter_room(sid, room, namespace='/')

    def leave_room(self, sid, room):
        self.socketio.server.leave_room(sid, room, namespace='/')

    def connected_count(self):
        return self.presence.session_count()


def _timestamp():
    return datetime.utcnow().isoformat()


def _handshake_token(auth):
    if isinstance(auth, dict) and auth.get('token'):
        token = auth['token']
    else:
        token = request.headers.get('Authorization', '')
    if token.startswith('Bearer '):
        token = token[len('Bearer '):]
    return token.strip() or None


def register_socket_handlers(socketio, broadcaster):
    presence = broadcaster.presence

    @socketio.on('connect')
    def handle_connect(auth=None):
        token = _handshake_token(auth)
        if not token:
            logger.warning("Socket %s rejected: no token", request.sid)
            raise ConnectionRefusedError('Authentication token required')
        try:
            claims = decode_token(token)
        except (JWTExtendedException, PyJWTError) as e:
            logger.warning("Socket %s rejected: %s", request.sid, e)
            raise ConnectionRefusedError('Authentication failed')

        user = UserContext.from_claims(claims)
        first = presence.add(request.sid, user)
        broadcaster.join_room(request.sid, f"user_{user.user_id}")
        for role in user.roles:
            broadcaster.join_room(request.sid, f"role_{role}")

        logger.info("User %s connected (%s)", user.user_id, request.sid)
        if first:
            broadcaster.emit_to_all('user_online', {
                'userId': user.user_id,
                'roles': user.roles,
                'timestamp': _timestamp(),
            })

    @socketio.on('disconnect')
    def handle_disconnect(*args):
        user, last = presence.remove(request.sid)
        if user is None:
            return
        logger.info("User %s disconnected (%s)", user.user_id, request.sid)
        if last:
            broadcaster.emit_to_all('user_offline', {'userId': user.user_id, 'timestamp': _timestamp()})

    @socketio.on('join_dtr')
    def handle_join_dtr(data):
        dtr = _dtr_name(data)
        if not dtr:
            return {'success': False, 'message': 'dtr is required'}
        room = f"dtr_{dtr}"
        broadcaster.join_room(request.sid, room)
        return {'success': True, 'room': room}

    @socketio.on('leave_dtr')
    def handle_leave_dtr(data):
        dtr = _dtr_name(data)
        if not dtr:
            return {'success': False, 'message': 'dtr is required'}
        room = f"dtr_{dtr}"
        broadcaster.leave_room(request.sid, room)
        return {'success': True, 'room': room}


def _dtr_name(data):
    if isinstance(data, dict):
        data = data.get('dtr') or data.get('dtrName')
    return str(data).strip() if data else None


def publish_ticket_update(broadcaster, ticket, updated_by=None):
    payload = {
        'ticketId': ticket.id,
        'ticketNumber': ticket.ticket_number,
        'status': ticket.status,
        'assignedTo': ticket.assigned_to,
        'updatedBy': updated_by,
        'timestamp': _timestamp(),
    }
    if ticket.assigned_to:
        broadcaster.emit_to_room(f"user_{ticket.assigned_to}", 'ticket_updated', payload)
    if ticket.status in ESCALATION_STATUSES:
        broadcaster.emit_to_room('role_admin', 'ticket_escalated', payload)
    logger.info("Ticket %s update broadcast", ticket.ticket_number)
    return payload


def publish_meter_reading(broadcaster, meter, reading):
    payload = {
        'meterSerial': meter.serial_number,
        'dtrName': meter.dtr_label,
        'feederName': meter.feeder_label,
        'readings': {
            'voltageR': reading.voltage_r,
            'voltageY': reading.voltage_y,
            'voltageB': reading.voltage_b,
            'currentR': reading.current_r,
            'currentY': reading.current_y,
            'currentB': reading.current_b,
            'rphPowerFactor': reading.rph_power_factor,
            'yphPowerFactor': reading.yph_power_factor,
            'bphPowerFactor': reading.bph_power_factor,
            'neutralCurrent': reading.neutral_current,
            'frequency': reading.frequency,
            'kwh': reading.kwh,
            'readingDate': reading.reading_date.isoformat() if reading.reading_date else None,
        },
        'timestamp': _timestamp(),
    }
    broadcaster.emit_to_room(f"dtr_{meter.dtr_label}", 'meter_reading', payload)
    return payload


def send_announcement(broadcaster, title, message, priority='MEDIUM', target_roles=None):
    target_roles = list(target_roles or [])
    announcement = {
        'id': int(datetime.utcnow().timestamp() * 1000),
        'title': title,
        'message': message,
        'priority': priority,
        'targetRoles': target_roles,
        'timestamp': _timestamp(),
    }
    if target_roles:
        for role in target_roles:
            broadcaster.emit_to_room(f"role_{role.lower()}", 'announcement', announcement)
    else:
        broadcaster.emit_to_all('announcement', announcement)
    logger.info("Announcement sent: %s", title)
    return announcement
