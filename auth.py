"""
JWT authentication helpers.

Tokens are read by Flask-JWT-Extended from the Authorization header, then
the `accessToken` cookie, then the `token` query parameter. Their claims are
mapped onto a UserContext; claims it does not know about are dropped.
"""

from functools import wraps

from flask import jsonify
from flask_jwt_extended import create_access_token, get_jwt, verify_jwt_in_request

from exceptions import ForbiddenError

ADMIN_ROLES = ('admin', 'super_admin')


class UserContext:
    __slots__ = ('user_id', 'roles', 'permissions', 'location_id', 'access_level', 'app_id', 'type')

    def __init__(self, user_id, roles=None, permissions=None, location_id=None,
                 access_level=None, app_id=None, type=None):
        self.user_id = user_id
        self.roles = list(roles or [])
        self.permissions = list(permissions or [])
        self.location_id = location_id
        self.access_level = access_level
        self.app_id = app_id
        self.type = type

    @classmethod
    def from_claims(cls, claims):
        roles = claims.get('roles')
        if roles is None and claims.get('role'):
            roles = [claims['role']]
        if isinstance(roles, str):
            roles = [roles]

        location_id = claims.get('locationId')
        if location_id is not None:
            try:
                location_id = int(location_id)
            except (TypeError, ValueError):
                location_id = None

        return cls(
            user_id=claims.get('userId') or claims.get('sub'),
            roles=[str(r).lower() for r in roles or []],
            permissions=claims.get('permissions') or [],
            location_id=location_id,
            access_level=claims.get('accessLevel'),
            app_id=claims.get('appId'),
            type=claims.get('userType'),
        )

    def has_role(self, *roles):
        wanted = {r.lower() for r in roles}
        return any(r in wanted for r in self.roles)

    @property
    def is_admin(self):
        return self.has_role(*ADMIN_ROLES)

    def to_dict(self):
        return {
            'userId': self.user_id,
            'roles': self.roles,
            'permissions': self.permissions,
            'locationId': self.location_id,
            'accessLevel': self.access_level,
            'appId': self.app_id,
            'type': self.type,
        }


def issue_token(user_id, roles=(), permissions=(), location_id=None, access_level=None,
                app_id=None, user_type=None, **kwargs):
    claims = {
        'userId': user_id,
        'roles': list(roles),
        'permissions': list(permissions),
        'locationId': location_id,
        'accessLevel': access_level,
        'appId': app_id,
        'userType': user_type,
    }
    return create_access_token(identity=str(user_id), additional_claims=claims, **kwargs)


def current_user_context():
    """UserContext for the current request; requires a valid token."""
    verify_jwt_in_request()
    return UserContext.from_claims(get_jwt())


def role_required(*roles):
    """Reject requests whose token carries none of `roles`."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = current_user_context()
            if not user.has_role(*roles):
                raise ForbiddenError('Insufficient permissions')
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def _unauthorized(message):
    response = jsonify({'success': False, 'message': message})
    response.status_code = 401
    return response


def register_jwt_handlers(jwt):
    @jwt.unauthorized_loader
    def missing_token(reason):
        return _unauthorized('Access token required')

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return _unauthorized('Invalid or expired token')

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return _unauthorized('Invalid or expired token')
