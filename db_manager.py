import click

from app import create_app
from auth import issue_token
from models import (
    db, Consumer, Meter, Notification, Permission, PrepaidAccount, Role, RolePermission, Ticket, User,
)

DEFAULT_PERMISSIONS = [
    ('VIEW_DASHBOARD', 'View dashboards and reports'),
    ('MANAGE_ROLES', 'Create, update and delete roles'),
    ('MANAGE_USERS', 'Create, update and delete users'),
    ('VIEW_PREPAID_BILLING', 'View prepaid billing accounts and stats'),
    ('MANAGE_PREPAID_BILLING', 'Record recharges and consumption'),
    ('MANAGE_METERS', 'Record meter readings'),
    ('MANAGE_TICKETS', 'Update ticket status and assignment'),
    ('SEND_ANNOUNCEMENTS', 'Broadcast announcements'),
    ('MANAGE_JOBS', 'Inspect and run scheduled jobs'),
]

DEFAULT_ROLES = {
    'admin': ('System administrator', 10, 'FULL', [name for name, _ in DEFAULT_PERMISSIONS]),
    'operator': ('Field operations', 2, 'NORMAL', ['VIEW_DASHBOARD', 'MANAGE_METERS', 'MANAGE_TICKETS']),
    'billing': ('Billing desk', 2, 'NORMAL', ['VIEW_DASHBOARD', 'VIEW_PREPAID_BILLING', 'MANAGE_PREPAID_BILLING']),
}


def _app():
    return create_app({'ENABLE_SCHEDULER': False})


@click.group()
def cli():
    """Database management commands"""
    pass


@cli.command()
def init():
    """Initialize database tables"""
    with _app().app_context():
        db.create_all()
        click.echo("✅ Database tables created successfully!")


@cli.command()
def drop():
    """Drop all database tables"""
    with _app().app_context():
        db.drop_all()
        click.echo("✅ All tables dropped successfully!")


@cli.command()
def reset():
    """Reset database (drop and recreate)"""
    with _app().app_context():
        db.drop_all()
        db.create_all()
        click.echo("✅ Database reset successfully!")


@cli.command()
def seed():
    """Seed permissions and the default roles"""
    with _app().app_context():
        permissions = {}
        for name, description in DEFAULT_PERMISSIONS:
            permission = Permission.query.filter_by(name=name).first()
            if not permission:
                permission = Permission(name=name, description=description)
                db.session.add(permission)
            permissions[name] = permission
        db.session.flush()

        created = 0
        for name, (description, level, access_level, granted) in DEFAULT_ROLES.items():
            if Role.query.filter_by(name=name).first():
                continue
            role = Role(name=name, description=description, level=level, access_level=access_level)
            role.role_permissions = [RolePermission(permission=permissions[p]) for p in granted]
            db.session.add(role)
            created += 1

        db.session.commit()
        click.echo(f"✅ Seeded {len(permissions)} permissions and {created} roles")


@cli.command()
def status():
    """Show database status"""
    with _app().app_context():
        try:
            counts = {
                'Users': User.query.count(),
                'Roles': Role.query.count(),
                'Permissions': Permission.query.count(),
                'Consumers': Consumer.query.count(),
                'Prepaid accounts': PrepaidAccount.query.count(),
                'Meters': Meter.query.count(),
                'Tickets': Ticket.query.count(),
                'Notifications': Notification.query.count(),
            }
            click.echo("✅ Database connection: OK")
            click.echo("\n📊 Record counts:")
            for table, count in counts.items():
                click.echo(f"  {table}: {count}")
        except Exception as e:
            click.echo(f"❌ Database error: {e}")
            raise SystemExit(1)


@cli.command('create-token')
@click.option('--user-id', required=True, type=int)
@click.option('--role', 'roles', multiple=True, default=['admin'])
@click.option('--location-id', type=int, default=None)
def create_token(user_id, roles, location_id):
    """Issue an access token for local testing"""
    with _app().app_context():
        click.echo(issue_token(user_id, roles=roles, location_id=location_id))


if __name__ == '__main__':
    cli()
