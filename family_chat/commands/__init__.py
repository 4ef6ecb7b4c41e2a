"""
Commands package - Flask CLI commands
"""

from .user_commands import register_user_commands, seed_accounts

__all__ = ['register_user_commands', 'seed_accounts']
