"""
Centralized Configuration Management for the Family Chat server.

This module provides configuration for the realtime chat service: security
keys, database connection, Socket.IO transport, the Ollama completion provider,
bot defaults, admission control and logging. Every value can be overridden
through environment variables (a ``.env`` file is honoured).

Example:
    >>> from family_chat.config import Config
    >>> Config.OLLAMA_MODEL
    'llama3.2'
    >>> app.config.from_object(Config)

Note:
    ``BotSettings`` only take their *defaults* from here. Values changed by an
    admin are persisted in the database and win over the environment on the
    next start.
"""

import os
import secrets
import logging
from typing import Any, Dict
from dotenv import load_dotenv

FAMILY_CHAT_VERSION = "1.0.0"

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str = 'False') -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 'yes', 'on')


DEFAULT_BOT_SYSTEM_PROMPT = (
    "You are a friendly AI assistant in a private family chat. "
    "Be warm, helpful, and concise."
)


class Config:
    """
    Centralized configuration class for the Family Chat server.

    Attributes are read once at import time. Tests and embedding applications
    pass overrides to ``create_app`` instead of mutating this class.

    Key Configuration Areas:
        - Security (Flask secret, JWT signing key and lifetime)
        - Database (SQLAlchemy URI and engine options)
        - Network (host, port, allowed CORS origin)
        - Completion provider (Ollama host, default model)
        - Bot identity and default behaviour
        - Admission control for inbound sends
        - Stalled stream watchdog
        - Logging
    """

    # Application Info
    VERSION = FAMILY_CHAT_VERSION
    APP_NAME = "Family Chat"

    # Security Configuration
    DEBUG = _env_bool('FLASK_DEBUG')
    TESTING = _env_bool('FAMILY_CHAT_TEST_MODE')

    _default_secret_key = 'dev-secret-key-change-in-production'
    _raw_secret_key = os.getenv('SECRET_KEY', _default_secret_key)

    if _raw_secret_key == _default_secret_key and not DEBUG and not TESTING:
        SECRET_KEY = secrets.token_hex(32)
        logging.warning(
            "SECURITY WARNING: Default SECRET_KEY detected in production mode. "
            "A random key has been generated for this process; issued tokens "
            "will not survive a restart. Set SECRET_KEY or JWT_SECRET."
        )
    else:
        SECRET_KEY = _raw_secret_key

    JWT_SECRET = os.getenv('JWT_SECRET', SECRET_KEY)
    JWT_ALGORITHM = 'HS256'
    JWT_EXPIRY_DAYS = int(os.getenv('JWT_EXPIRY_DAYS', '30'))

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URI', 'sqlite:///family_chat.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Server Configuration
    HOST = os.getenv('FAMILY_CHAT_HOST', '0.0.0.0')
    PORT = int(os.getenv('FAMILY_CHAT_PORT', '3000'))
    ALLOWED_ORIGIN = os.getenv('ALLOWED_ORIGIN', '*')

    # Completion provider (Ollama)
    OLLAMA_HOST = os.getenv('OLLAMA_HOST', 'http://localhost:11434')
    OLLAMA_MODEL = os.getenv('OLLAMA_MODEL', 'llama3.2')
    # Connect timeout only: a streaming read has no deadline
    OLLAMA_CONNECT_TIMEOUT = float(os.getenv('OLLAMA_CONNECT_TIMEOUT', '10'))

    # Bot identity and defaults
    BOT_USER_ID = os.getenv('BOT_USER_ID', 'bot-ai-assistant')
    BOT_USERNAME = os.getenv('BOT_USERNAME', 'ai')
    BOT_DISPLAY_NAME = os.getenv('BOT_DISPLAY_NAME', 'AI Assistant')
    BOT_SYSTEM_PROMPT = os.getenv('BOT_SYSTEM_PROMPT', DEFAULT_BOT_SYSTEM_PROMPT)
    BOT_HISTORY_LIMIT = int(os.getenv('BOT_HISTORY_LIMIT', '20'))
    BOT_MENTION_ALIASES = ('ai assistant', 'ai', 'bot')

    # Admission control for send_message
    SEND_RATE_LIMIT = int(os.getenv('SEND_RATE_LIMIT', '10'))
    SEND_RATE_WINDOW_MS = int(os.getenv('SEND_RATE_WINDOW_MS', '5000'))
    MAX_MESSAGE_LENGTH = int(os.getenv('MAX_MESSAGE_LENGTH', '4000'))

    # Stalled stream watchdog
    STREAM_STALL_TIMEOUT = int(os.getenv('STREAM_STALL_TIMEOUT', '300'))
    STREAM_WATCHDOG_INTERVAL = int(os.getenv('STREAM_WATCHDOG_INTERVAL', '60'))
    STREAM_WATCHDOG_ENABLED = _env_bool('STREAM_WATCHDOG_ENABLED', 'True')

    # Seed accounts
    ADMIN_USERNAME = os.getenv('ADMIN_USERNAME', 'admin')
    ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD', '')
    ADMIN_DISPLAY_NAME = os.getenv('ADMIN_DISPLAY_NAME', 'Admin')

    # Web push
    VAPID_CLAIM_EMAIL = os.getenv('VAPID_CLAIM_EMAIL', 'mailto:admin@family-chat.local')
    PUSH_ENABLED = _env_bool('PUSH_ENABLED', 'True')

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FILE_PATH = os.getenv('LOG_FILE_PATH', os.path.join('logs', 'family_chat.log'))
    LOG_MAX_BYTES = int(os.getenv('LOG_MAX_BYTES', str(5 * 1024 * 1024)))
    LOG_BACKUP_COUNT = int(os.getenv('LOG_BACKUP_COUNT', '3'))

    @classmethod
    def get_config_dict(cls) -> Dict[str, Any]:
        """Non-secret configuration values, for diagnostics"""
        hidden = {'SECRET_KEY', 'JWT_SECRET', 'ADMIN_PASSWORD'}
        return {
            key: getattr(cls, key)
            for key in dir(cls)
            if key.isupper() and key not in hidden
        }
