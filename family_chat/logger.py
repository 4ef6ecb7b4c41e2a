"""
Logging for the Family Chat server.

One ``family_chat`` logger is configured per process with a stdout handler and
a size-rotated file. Modules either log through the helpers below or take a
child logger (``logging.getLogger(__name__)`` inside the package, or
``get_logger('bot')``); both end up in the same handlers.

Helpers with chat semantics:
    - ``log_socket_event``: connection lifecycle and room membership
    - ``log_rejection``: a realtime request refused with an error code
    - ``log_user_action`` / ``log_api_request``: audit trail for REST calls
"""

import logging
import logging.handlers
import os
import sys
import threading
import time
from datetime import datetime, timezone
from functools import wraps

from flask import has_request_context, jsonify, request

from .config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
API_LOG_WINDOW_SECONDS = 5


def _resolve_level(name):
    return getattr(logging, str(name).upper(), logging.INFO)


class FamilyChatLogger:
    """Process-wide logger facade; instantiating it twice returns the same object"""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super(FamilyChatLogger, cls).__new__(cls)
                    instance._configure()
                    cls._instance = instance
        return cls._instance

    def _configure(self):
        level = _resolve_level(Config.LOG_LEVEL)
        self._logger = logging.getLogger('family_chat')
        self._logger.setLevel(level)
        self._logger.handlers.clear()

        formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
        for handler in self._build_handlers():
            handler.setLevel(level)
            handler.setFormatter(formatter)
            self._logger.addHandler(handler)

        # Last time each (method, endpoint) pair was logged
        self._api_seen = {}
        self._api_seen_lock = threading.Lock()

        self._logger.info(f"{Config.APP_NAME} {Config.VERSION} - logging to {Config.LOG_FILE_PATH}")

    def _build_handlers(self):
        handlers = [logging.StreamHandler(sys.stdout)]
        try:
            log_dir = os.path.dirname(Config.LOG_FILE_PATH)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            handlers.append(logging.handlers.RotatingFileHandler(
                Config.LOG_FILE_PATH,
                maxBytes=Config.LOG_MAX_BYTES,
                backupCount=Config.LOG_BACKUP_COUNT,
                encoding='utf-8'
            ))
        except OSError as e:
            sys.stderr.write(f"Family Chat: file logging disabled ({e})\n")
        return handlers

    def get_logger(self, name=None):
        if name:
            return self._logger.getChild(name)
        return self._logger

    def debug(self, message, **kwargs):
        self._logger.debug(message, **kwargs)

    def info(self, message, **kwargs):
        self._logger.info(message, **kwargs)

    def warning(self, message, **kwargs):
        self._logger.warning(message, **kwargs)

    def error(self, message, **kwargs):
        self._logger.error(message, **kwargs)

    def log_exception(self, exception, context=None):
        """
        Log an unexpected exception with its traceback.

        Args:
            exception: the exception being handled
            context: extra fields (function name, arguments, ids)

        Returns:
            dict: the structured context, including an ``error_id`` timestamp
            that is also returned to the client
        """
        error_context = {
            'error_id': datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S%f'),
            'exception_type': type(exception).__name__,
            'exception_message': str(exception),
            'context': context or {},
        }
        if has_request_context():
            error_context['request'] = {
                'method': request.method,
                'path': request.path,
                'ip': request.remote_addr,
            }

        self._logger.error(
            f"[{error_context['error_id']}] {error_context['exception_type']}: "
            f"{error_context['exception_message']}",
            extra={'error_context': error_context},
            exc_info=exception
        )
        return error_context

    def log_user_action(self, user_id, action, details=None):
        message = f"User {user_id} - {action}"
        if details:
            message += f" - {details}"
        self._logger.info(message)

    def log_api_request(self, endpoint, method, user_id=None, ip_address=None):
        """Log a REST call; repeats of the same route are muted for a few seconds"""
        key = (method, endpoint)
        now = time.monotonic()
        with self._api_seen_lock:
            if now - self._api_seen.get(key, float('-inf')) < API_LOG_WINDOW_SECONDS:
                return
            self._api_seen[key] = now

        parts = [f"API {method} {endpoint}"]
        if user_id:
            parts.append(f"user={user_id}")
        if ip_address:
            parts.append(f"ip={ip_address}")
        self._logger.info(' '.join(parts))

    def log_socket_event(self, event, sid, user_id=None, detail=None):
        message = f"[WS] {event} sid={sid}"
        if user_id:
            message += f" user={user_id}"
        if detail:
            message += f" - {detail}"
        self._logger.info(message)

    def log_rejection(self, event, user_id, code, detail=None):
        message = f"[WS] {event} rejected for {user_id or 'anonymous'}: {code}"
        if detail:
            message += f" ({detail})"
        self._logger.info(message)


# Global logger instance
logger = FamilyChatLogger()


def get_logger(name=None):
    return logger.get_logger(name)


def log_info(message, **kwargs):
    logger.info(message, **kwargs)


def log_warning(message, **kwargs):
    logger.warning(message, **kwargs)


def log_error(message, **kwargs):
    logger.error(message, **kwargs)


def log_debug(message, **kwargs):
    logger.debug(message, **kwargs)


def log_user_action(user_id, action, details=None):
    logger.log_user_action(user_id, action, details)


def log_api_request(endpoint, method, user_id=None, ip_address=None):
    logger.log_api_request(endpoint, method, user_id, ip_address)


def log_socket_event(event, sid, user_id=None, detail=None):
    logger.log_socket_event(event, sid, user_id, detail)


def log_rejection(event, user_id, code, detail=None):
    logger.log_rejection(event, user_id, code, detail)


def handle_api_errors(f):
    """Turn unexpected route errors into a logged JSON 500; ApplicationErrors pass through"""
    @wraps(f)
    def wrapper(*args, **kwargs):
        from .utils.error_handling import ApplicationError, ErrorCode
        try:
            return f(*args, **kwargs)
        except ApplicationError:
            # Rendered by the registered application error handler
            raise
        except Exception as e:
            error_context = logger.log_exception(e, {
                'function': f.__name__,
                'kwargs': str(kwargs)
            })
            return jsonify({
                'error': 'Internal server error',
                'code': ErrorCode.INTERNAL_ERROR,
                'details': {'errorId': error_context['error_id']},
            }), 500
    return wrapper
