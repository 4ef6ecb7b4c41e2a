#!/usr/bin/env python3
"""
Error Handling Utilities for the Family Chat server
Provides the error code vocabulary shared by the REST API and the realtime
gateway, the application error hierarchy, and the Flask error handlers.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional
from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ErrorCode:
    """Standardized error codes, sent verbatim to clients"""

    # Realtime rejections
    NOT_MEMBER = 'NOT_MEMBER'
    RATE_LIMITED = 'RATE_LIMITED'
    EMPTY_MESSAGE = 'EMPTY_MESSAGE'
    MESSAGE_TOO_LONG = 'MESSAGE_TOO_LONG'
    INVALID_PAYLOAD = 'INVALID_PAYLOAD'

    # Request errors
    NOT_FOUND = 'NOT_FOUND'
    UNAUTHORIZED = 'UNAUTHORIZED'
    FORBIDDEN = 'FORBIDDEN'
    VALIDATION_ERROR = 'VALIDATION_ERROR'
    CONFLICT = 'CONFLICT'

    # Provider / server errors
    BOT_UNAVAILABLE = 'BOT_UNAVAILABLE'
    SERVICE_UNAVAILABLE = 'SERVICE_UNAVAILABLE'
    INTERNAL_ERROR = 'INTERNAL_ERROR'


class ApplicationError(Exception):
    """Base application error carrying a wire code and an HTTP status"""

    status_code = 500
    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: Optional[str] = None,
                 status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses"""
        payload = {
            'error': self.message,
            'code': self.code,
        }
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(ApplicationError):
    status_code = 400
    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, field: Optional[str] = None, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if field:
            details.setdefault('field', field)
        super().__init__(message, code=code, details=details)
        self.field = field


class AuthenticationError(ApplicationError):
    status_code = 401
    default_code = ErrorCode.UNAUTHORIZED


class AuthorizationError(ApplicationError):
    status_code = 403
    default_code = ErrorCode.FORBIDDEN


class NotMemberError(ApplicationError):
    status_code = 403
    default_code = ErrorCode.NOT_MEMBER

    def __init__(self, message: str = 'Not a member of this conversation'):
        super().__init__(message)


class NotFoundError(ApplicationError):
    status_code = 404
    default_code = ErrorCode.NOT_FOUND


class ConflictError(ApplicationError):
    status_code = 409
    default_code = ErrorCode.CONFLICT


class ServiceUnavailableError(ApplicationError):
    status_code = 503
    default_code = ErrorCode.SERVICE_UNAVAILABLE


class LLMServiceError(ApplicationError):
    """The completion provider failed or could not be reached"""
    status_code = 502
    default_code = ErrorCode.BOT_UNAVAILABLE


def handle_application_error(error: ApplicationError):
    """Render an ApplicationError as a JSON response"""
    if error.status_code >= 500:
        logger.error(f"Error {error.code}: {error.message}")
    return jsonify(error.to_dict()), error.status_code


def handle_http_exception(error: HTTPException):
    """Render werkzeug HTTP errors in the same JSON shape"""
    return jsonify({
        'error': error.description,
        'code': (error.name or 'error').upper().replace(' ', '_'),
    }), error.code


def register_error_handlers(app):
    """Attach the JSON error handlers to the Flask app"""
    app.register_error_handler(ApplicationError, handle_application_error)
    app.register_error_handler(HTTPException, handle_http_exception)
