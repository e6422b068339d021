"""
Role and permission store tests
"""

import pytest

from conftest import add_role, add_user, bearer
from exceptions import ConflictError, InvalidOperationError, NotFoundError, ValidationError
from models import db, Permission, Role, RolePermission
from role_service import role_service


@pytest.fixture
def permissions(app):
    perms = [Permission(name=name, description=f"{name} permission")
             for name in ('VIEW_DASHBOARD', 'MANAGE_ROLES', 'MANAGE_USERS')]
    db.session.add_all(perms)
    db.session.commit()
    return perms


def test_create_role_with_permissions(permissions):
    role = role_service.create_role('Supervisor', description='Shift lead', permission_ids=[p.id for p in permissions[:2]])
    assert role.level == 1
    assert role.access_level == 'NORMAL'
    assert [p.name for p in role.permissions] == ['VIEW_DASHBOARD', 'MANAGE_ROLES']


def test_duplicate_role_name_conflicts_and_keeps_original(app):
    add_role('Auditor', description='original')

    with pytest.raises(ConflictError):
        role_service.create_role('Auditor', description='second')

    roles = Role.query.filter_by(name='Auditor').all()
    assert len(roles) == 1
    assert roles[0].description == 'original'


def test_role_names_are_case_sensitive(app):
    add_role('Auditor')
    role = role_service.create_role('auditor')
    assert role.id is not None


def test_create_role_with_unknown_permission(permissions):
    with pytest.raises(ValidationError) as excinfo:
        role_service.create_role('Clerk', permission_ids=[permissions[0].id, 999])
    assert excinfo.value.errors[0]['field'] == 'permissionIds'
    assert Role.query.filter_by(name='Clerk').first() is None


def test_rename_to_another_roles_name_conflicts(app):
    add_role('Auditor')
    clerk = add_role('Clerk')

    with pytest.raises(ConflictError):
        role_service.update_role(clerk.id, {'name': 'Auditor'})

    # Renaming a role to its own name is fine
    updated = role_service.update_role(clerk.id, {'name': 'Clerk', 'level': 3})
    assert updated.level == 3


def test_update_only_touches_given_fields(app):
    role = add_role('Clerk', level=4, access_level='FULL')
    role_service.update_role(role.id, {'description': 'Front desk'})
    assert role.level == 4
    assert role.access_level == 'FULL'
    assert role.description == 'Front desk'


def test_update_with_null_description_clears_it(app):
    role = add_role('Clerk', description='Front desk', level=2)
    role_service.update_role(role.id, {'description': None, 'level': None})
    assert role.description is None
    assert role.level == 2


def test_delete_role_in_use_is_refused(locations):
    role = add_role('Operator')
    add_user('field1', role, locations[0])

    with pytest.raises(InvalidOperationError):
        role_service.delete_role(role.id)
    assert db.session.get(Role, role.id) is not None
    assert len(role.users) == 1


def test_delete_role_removes_permission_links(permissions):
    role = role_service.create_role('Temp', permission_ids=[permissions[0].id])
    role_service.delete_role(role.id)

    assert db.session.get(Role, role.id) is None
    assert RolePermission.query.count() == 0
    with pytest.raises(NotFoundError):
        role_service.get_role(role.id)


def test_replace_permissions_swaps_the_whole_set(permissions):
    role = role_service.create_role('Supervisor', permission_ids=[permissions[0].id, permissions[1].id])

    role = role_service.replace_permissions(role.id, [permissions[1].id, permissions[2].id])
    assert [p.name for p in role.permissions] == ['MANAGE_ROLES', 'MANAGE_USERS']

    role = role_service.replace_permissions(role.id, [])
    assert role.permissions == []


def test_replace_permissions_with_unknown_id_keeps_old_set(permissions):
    role = role_service.create_role('Supervisor', permission_ids=[permissions[0].id])

    with pytest.raises(ValidationError):
        role_service.replace_permissions(role.id, [permissions[1].id, 12345])
    db.session.refresh(role)
    assert [p.name for p in role.permissions] == ['VIEW_DASHBOARD']


def test_list_roles_filters_by_search_and_location(locations):
    north, south = locations
    operator = add_role('Operator')
    billing = add_role('Billing Clerk')
    add_role('Unused')
    add_user('north_op', operator, north)
    add_user('south_op', operator, south)
    add_user('south_billing', billing, south)

    roles, pagination = role_service.list_roles(location_id=north.id)
    assert [r.name for r in roles] == ['Operator']
    assert pagination['totalCount'] == 1

    roles, _ = role_service.list_roles(search='CLERK')
    assert [r.name for r in roles] == ['Billing Clerk']

    roles, pagination = role_service.list_roles(page=1, limit=2)
    assert [r.name for r in roles] == ['Operator', 'Billing Clerk']
    assert pagination['totalPages'] == 2


# HTTP surface

def test_roles_api_crud(client, admin_headers, permissions):
    response = client.post('/api/roles', headers=admin_headers, json={
        'name': 'Meter Reader', 'description': 'Reads meters', 'permissionIds': [permissions[0].id],
    })
    assert response.status_code == 201
    role = response.get_json()['data']
    assert role['permissions'][0]['name'] == 'VIEW_DASHBOARD'

    response = client.post('/api/roles', headers=admin_headers, json={'name': 'Meter Reader'})
    assert response.status_code == 409
    assert response.get_json()['success'] is False

    response = client.put(f"/api/roles/{role['id']}", headers=admin_headers, json={'level': 2})
    assert response.status_code == 200
    assert response.get_json()['data']['level'] == 2

    response = client.put(f"/api/roles/{role['id']}", headers=admin_headers, json={'description': None})
    assert response.get_json()['data']['description'] is None

    response = client.post(f"/api/roles/{role['id']}/assign-permissions", headers=admin_headers,
                           json={'permissionIds': [permissions[1].id, permissions[2].id]})
    assert [p['name'] for p in response.get_json()['data']['permissions']] == ['MANAGE_ROLES', 'MANAGE_USERS']

    response = client.delete(f"/api/roles/{role['id']}", headers=admin_headers)
    assert response.status_code == 200
    assert client.get(f"/api/roles/{role['id']}", headers=admin_headers).status_code == 404


def test_roles_api_validation_errors(client, admin_headers):
    response = client.post('/api/roles', headers=admin_headers, json={'name': 'x'})
    body = response.get_json()
    assert response.status_code == 400
    assert body['message'] == 'Validation failed'
    assert body['errors'][0]['field'] == 'name'

    response = client.post('/api/roles', headers=admin_headers, json={'name': 'Bad-Name!'})
    assert response.status_code == 400

    response = client.post('/api/roles/1/assign-permissions', headers=admin_headers, json={})
    assert response.status_code == 400
    assert response.get_json()['errors'][0]['field'] == 'permissionIds'


def test_roles_api_delete_in_use(client, admin_headers, locations):
    role = add_role('Operator')
    add_user('field1', role, locations[0])

    response = client.delete(f"/api/roles/{role.id}", headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Cannot delete role that is assigned to users'


def test_roles_api_lists_by_token_location(client, operator_headers, locations):
    north, south = locations
    operator = add_role('Operator')
    add_user('north_op', operator, north)
    add_user('south_op', operator, south)
    add_role('Billing')

    body = client.get('/api/roles', headers=operator_headers).get_json()
    assert [r['name'] for r in body['data']] == ['Operator']
    assert [u['username'] for u in body['data'][0]['users']] == ['north_op']
    assert body['pagination']['totalCount'] == 1


def test_permissions_api(client, admin_headers, permissions):
    body = client.get('/api/permissions', headers=admin_headers).get_json()
    assert [p['name'] for p in body['data']] == ['VIEW_DASHBOARD', 'MANAGE_ROLES', 'MANAGE_USERS']


def test_roles_api_requires_token(client):
    response = client.get('/api/roles')
    assert response.status_code == 401
    assert response.get_json()['success'] is False

    response = client.get('/api/roles', headers=bearer('not-a-token'))
    assert response.status_code == 401
