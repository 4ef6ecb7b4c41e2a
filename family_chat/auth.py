"""
Authentication: password login, admin registration, and bearer tokens.

Tokens are HS256 JWTs carrying ``{userId, isAdmin, exp}``. HTTP requests are
authenticated by Flask-Login through ``load_user_from_request``; the realtime
gateway resolves the same token during the socket handshake.
"""

import random
import re
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Optional

import jwt
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from .logger import log_api_request, log_user_action, log_warning
from .models import db, User
from .utils.error_handling import (
    AuthenticationError, AuthorizationError, ConflictError, ValidationError
)

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')

AVATAR_COLORS = [
    "#ef4444", "#f97316", "#eab308", "#22c55e",
    "#06b6d4", "#3b82f6", "#8b5cf6", "#ec4899",
]

USERNAME_PATTERN = re.compile(r'^[a-z0-9_]+$')
MIN_PASSWORD_LENGTH = 8


def random_avatar_color() -> str:
    return random.choice(AVATAR_COLORS)


def issue_token(user: User) -> str:
    expires = datetime.now(timezone.utc) + timedelta(days=current_app.config['JWT_EXPIRY_DAYS'])
    payload = {'userId': user.id, 'isAdmin': bool(user.is_admin), 'exp': expires}
    return jwt.encode(payload, current_app.config['JWT_SECRET'],
                      algorithm=current_app.config['JWT_ALGORITHM'])


def verify_token(token: Optional[str]) -> Optional[User]:
    """Resolve a bearer token to its user, or None when invalid or expired"""
    if not token:
        return None
    try:
        payload = jwt.decode(token, current_app.config['JWT_SECRET'],
                             algorithms=[current_app.config['JWT_ALGORITHM']])
    except jwt.InvalidTokenError as e:
        log_warning(f"Rejected bearer token: {e}")
        return None

    user_id = payload.get('userId')
    if not user_id:
        return None
    return db.session.get(User, user_id)


def bearer_token_from_header(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    scheme, _, token = header_value.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def load_user_from_request(req) -> Optional[User]:
    """Flask-Login request loader"""
    return verify_token(bearer_token_from_header(req.headers.get('Authorization')))


def admin_required(f):
    """Require an authenticated admin; 403 for other users"""
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not current_user.is_admin:
            raise AuthorizationError("Admin access required")
        return f(*args, **kwargs)
    return decorated_function


def create_user(username: str, display_name: str, password: Optional[str],
                is_admin: bool = False, avatar_color: Optional[str] = None,
                is_bot: bool = False, user_id: Optional[str] = None) -> User:
    """Create and commit a user; raises ConflictError on a taken username"""
    if User.query.filter_by(username=username).first() is not None:
        raise ConflictError("Username already taken")

    user = User(
        username=username,
        display_name=display_name,
        is_admin=is_admin,
        is_bot=is_bot,
        avatar_color=avatar_color or random_avatar_color(),
    )
    if user_id:
        user.id = user_id
    if password:
        user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


def validate_registration(data) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    username = data.get('username')
    display_name = data.get('displayName')
    password = data.get('password')
    is_admin = data.get('isAdmin', False)
    avatar_color = data.get('avatarColor')

    if not isinstance(username, str) or not 2 <= len(username) <= 32 \
            or not USERNAME_PATTERN.match(username):
        raise ValidationError("username must be 2-32 characters of a-z, 0-9 or _", field='username')
    if not isinstance(display_name, str) or not 1 <= len(display_name) <= 64:
        raise ValidationError("displayName must be 1-64 characters", field='displayName')
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                              field='password')
    if not isinstance(is_admin, bool):
        raise ValidationError("isAdmin must be a boolean", field='isAdmin')
    if avatar_color is not None and not isinstance(avatar_color, str):
        raise ValidationError("avatarColor must be a string", field='avatarColor')

    return {
        'username': username,
        'display_name': display_name,
        'password': password,
        'is_admin': is_admin,
        'avatar_color': avatar_color,
    }


@auth_bp.route('/login', methods=['POST'])
def login():
    log_api_request(request.endpoint, request.method, ip_address=request.remote_addr)
    data = request.get_json(silent=True) or {}
    username = data.get('username')
    password = data.get('password')

    if not isinstance(username, str) or not username or not isinstance(password, str) or not password:
        raise ValidationError("Invalid request")

    user = User.query.filter_by(username=username).first()
    if user is None or user.is_bot or not user.check_password(password):
        log_user_action(username, "Failed login attempt")
        raise AuthenticationError("Invalid credentials")

    log_user_action(user.id, "Logged in")
    return jsonify({'token': issue_token(user), 'user': user.to_dict()})


@auth_bp.route('/register', methods=['POST'])
@admin_required
def register():
    log_api_request(request.endpoint, request.method, user_id=current_user.id)
    fields = validate_registration(request.get_json(silent=True))
    user = create_user(**fields)
    log_user_action(current_user.id, f"Registered user {user.username}")
    return jsonify(user.to_dict()), 201
