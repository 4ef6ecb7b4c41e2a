"""
User management CLI commands
"""

import click
from flask import current_app

from ..auth import MIN_PASSWORD_LENGTH, create_user as create_user_record, random_avatar_color
from ..logger import log_error, log_info
from ..models import User, db
from ..utils.error_handling import ApplicationError


def seed_accounts(admin_password: str):
    """
    Create or refresh the bot user and the admin account.

    The bot always lives under the configured fixed id; re-running only
    refreshes its display metadata. Returns ``(bot, admin)``.
    """
    config = current_app.config
    if not admin_password or len(admin_password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"ADMIN_PASSWORD must be at least {MIN_PASSWORD_LENGTH} characters")

    bot = db.session.get(User, config['BOT_USER_ID'])
    if bot is None:
        bot = User(id=config['BOT_USER_ID'], avatar_color='#8b5cf6')
        db.session.add(bot)
    bot.username = config['BOT_USERNAME']
    bot.display_name = config['BOT_DISPLAY_NAME']
    bot.is_bot = True
    bot.is_admin = False
    bot.password_hash = None

    admin = User.query.filter_by(username=config['ADMIN_USERNAME']).first()
    if admin is None:
        admin = User(username=config['ADMIN_USERNAME'], avatar_color=random_avatar_color())
        db.session.add(admin)
    admin.display_name = config['ADMIN_DISPLAY_NAME']
    admin.is_admin = True
    admin.set_password(admin_password)

    db.session.commit()
    return bot, admin


def register_user_commands(app):
    """Register user management commands"""

    @app.cli.command('seed')
    def seed():
        """Creates the assistant and the admin account."""
        try:
            with app.app_context():
                bot, admin = seed_accounts(app.config['ADMIN_PASSWORD'])
                click.echo(f"Bot user '{bot.username}' ({bot.id}) ready.")
                click.echo(f"Admin user '{admin.username}' ready.")
                log_info(f"Seeded bot {bot.id} and admin {admin.username}")
        except ValueError as e:
            click.echo(f"Error: {e}")
        except Exception as e:
            log_error(f"Error seeding accounts: {e}")
            click.echo(f"Error seeding accounts: {e}")

    @app.cli.command('create-user')
    @click.option('--username', prompt='Enter username')
    @click.option('--display-name', prompt='Enter display name')
    @click.option('--password', prompt='Enter password', hide_input=True, confirmation_prompt=True)
    @click.option('--admin', is_flag=True, default=False, help='Grant admin rights.')
    def create_user(username, display_name, password, admin):
        """Creates a new family member."""
        if len(password) < MIN_PASSWORD_LENGTH:
            click.echo(f"Error: password must be at least {MIN_PASSWORD_LENGTH} characters.")
            return
        try:
            with app.app_context():
                user = create_user_record(username, display_name, password, is_admin=admin)
                click.echo(f"User '{user.username}' created successfully.")
                log_info(f"User created: {user.username}")
        except ApplicationError as e:
            click.echo(f"Error: {e.message}")
        except Exception as e:
            log_error(f"Error creating user: {e}")
            click.echo(f"Error creating user: {e}")

    @app.cli.command('list-users')
    def list_users():
        """List all users."""
        try:
            with app.app_context():
                users = User.query.order_by(User.is_bot.asc(), User.display_name.asc()).all()
                if not users:
                    click.echo("No users found.")
                    return

                click.echo("Users:")
                for user in users:
                    role = "bot" if user.is_bot else ("admin" if user.is_admin else "member")
                    click.echo(f"  {user.username} ({user.display_name}) - {role}")

        except Exception as e:
            log_error(f"Error listing users: {e}")
            click.echo(f"Error listing users: {e}")
