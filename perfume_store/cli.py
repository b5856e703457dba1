from datetime import datetime
import click
from flask.cli import with_appcontext
from perfume_store.extensions import db
from perfume_store.models import AdminRole, Permission, User, UserRole
from perfume_store.middleware import ALL_PERMISSIONS
from perfume_store.services import voucher_service, warranty_service


@click.command('expire-warranties')
@with_appcontext
def expire_warranties_command():
    """Mark active warranties past their end date as expired."""
    count = warranty_service.expire_warranties(datetime.utcnow())
    click.echo(f'Expired {count} warranties')


@click.command('reset-spins')
@click.option('--spins', type=int, default=None,
              help='Spins per customer (defaults to DAILY_SPINS).')
@with_appcontext
def reset_spins_command(spins):
    """Give every customer their daily spins back."""
    count = voucher_service.reset_spins(spins)
    click.echo(f'Reset spins for {count} customers')


def ensure_super_admin_role():
    permissions = []
    for name in ALL_PERMISSIONS:
        permission = Permission.query.filter_by(name=name).first()
        if permission is None:
            permission = Permission(name=name)
            db.session.add(permission)
        permissions.append(permission)

    role = AdminRole.query.filter_by(name='Super Admin').first()
    if role is None:
        role = AdminRole(name='Super Admin', description='All permissions')
        db.session.add(role)
    role.permissions = permissions
    db.session.flush()
    return role


@click.command('create-admin')
@click.argument('email')
@click.password_option()
@with_appcontext
def create_admin_command(email, password):
    """Create an admin account with every permission."""
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        raise click.ClickException(f'User {email} already exists')

    admin = User(email=email, role=UserRole.ADMIN, name='Administrator')
    admin.set_password(password)
    admin.admin_role = ensure_super_admin_role()
    db.session.add(admin)
    db.session.commit()
    click.echo(f'Created admin {email}')


def register_commands(app):
    app.cli.add_command(expire_warranties_command)
    app.cli.add_command(reset_spins_command)
    app.cli.add_command(create_admin_command)
