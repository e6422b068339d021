import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from exceptions import ConflictError, InvalidOperationError, NotFoundError, ValidationError
from models import db, Role, Permission, RolePermission, User
from pagination import paginate_query

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('name', 'description', 'level', 'access_level', 'is_active')
# Fields an update may set to null
NULLABLE_FIELDS = ('description',)


def serialize_user(user):
    return {
        'id': user.id,
        'username': user.username,
        'firstName': user.first_name,
        'lastName': user.last_name,
        'email': user.email,
        'isActive': user.is_active,
    }


def serialize_permission(permission):
    return {'id': permission.id, 'name': permission.name, 'description': permission.description}


def serialize_role(role, location_id=None):
    users = role.users
    if location_id is not None:
        users = [u for u in users if u.location_id == location_id]
    return {
        'id': role.id,
        'name': role.name,
        'description': role.description,
        'level': role.level,
        'accessLevel': role.access_level,
        'isActive': role.is_active,
        'users': [serialize_user(u) for u in users],
        'permissions': [serialize_permission(p) for p in role.permissions],
        'createdAt': role.created_at.isoformat() if role.created_at else None,
        'updatedAt': role.updated_at.isoformat() if role.updated_at else None,
    }


class RoleService:

    def list_roles(self, location_id=None, page=1, limit=10, search=''):
        """Roles ordered by id; with a location only roles held by users there."""
        query = Role.query
        if search and search.strip():
            query = query.filter(Role.name.ilike(f"%{search.strip()}%"))
        if location_id is not None:
            query = query.filter(Role.users.any(User.location_id == location_id))
        return paginate_query(query.order_by(Role.id.asc()), page, limit)

    def get_role(self, role_id):
        role = db.session.get(Role, role_id)
        if not role:
            raise NotFoundError('Role not found')
        return role

    def create_role(self, name, description=None, level=None, access_level=None,
                    is_active=True, permission_ids=None):
        if Role.query.filter_by(name=name).first():
            raise ConflictError('Role name already exists')

        permissions = self._load_permissions(permission_ids or [])
        role = Role(
            name=name,
            description=description,
            level=level or 1,
            access_level=access_level or 'NORMAL',
            is_active=is_active,
        )
        role.role_permissions = [RolePermission(permission=p) for p in permissions]
        db.session.add(role)
        self._commit('Role name already exists')
        logger.info("Role %s created with %d permissions", role.name, len(permissions))
        return role

    def update_role(self, role_id, changes):
        role = self.get_role(role_id)

        new_name = changes.get('name')
        if new_name:
            clash = Role.query.filter(Role.name == new_name, Role.id != role.id).first()
            if clash:
                raise ConflictError('Role name already exists')

        for field in UPDATABLE_FIELDS:
            if field not in changes:
                continue
            if changes[field] is not None or field in NULLABLE_FIELDS:
                setattr(role, field, changes[field])
        role.updated_at = datetime.utcnow()

        self._commit('Role name already exists')
        return role

    def delete_role(self, role_id):
        role = self.get_role(role_id)

        assigned = User.query.filter_by(role_id=role.id).count()
        if assigned:
            raise InvalidOperationError('Cannot delete role that is assigned to users')

        for link in list(role.role_permissions):
            db.session.delete(link)
        db.session.delete(role)
        self._commit()
        logger.info("Role %s deleted", role_id)

    def replace_permissions(self, role_id, permission_ids):
        """Swap the role's permission links for exactly `permission_ids`.

        The delete and the inserts share one transaction, so readers never
        see the role with an empty permission set mid-replacement.
        """
        role = self.get_role(role_id)
        permissions = self._load_permissions(permission_ids)

        try:
            for link in list(role.role_permissions):
                db.session.delete(link)
            # Deletes must reach the database before the re-inserts hit the unique key
            db.session.flush()
            for permission in permissions:
                db.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
            role.updated_at = datetime.utcnow()
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        db.session.refresh(role)
        return role

    def list_permissions(self):
        return Permission.query.order_by(Permission.id.asc()).all()

    def _load_permissions(self, permission_ids):
        wanted = list(dict.fromkeys(int(pid) for pid in permission_ids))
        if not wanted:
            return []
        found = Permission.query.filter(Permission.id.in_(wanted)).all()
        by_id = {p.id: p for p in found}
        missing = [pid for pid in wanted if pid not in by_id]
        if missing:
            raise ValidationError(errors=[{
                'field': 'permissionIds',
                'message': f"Unknown permission ids: {', '.join(str(m) for m in missing)}",
            }])
        return [by_id[pid] for pid in wanted]

    def _commit(self, conflict_message=None):
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            if conflict_message:
                raise ConflictError(conflict_message)
            raise
        except Exception:
            db.session.rollback()
            raise


role_service = RoleService()
