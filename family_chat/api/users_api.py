"""
Users API module - directory of family members.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ..logger import handle_api_errors, log_api_request
from ..models import User

users_bp = Blueprint('users', __name__, url_prefix='/users')


@users_bp.route('', methods=['GET'])
@login_required
@handle_api_errors
def list_users():
    """All users, humans first, then by display name"""
    log_api_request(request.endpoint, request.method, user_id=current_user.id)
    users = User.query.order_by(User.is_bot.asc(), User.display_name.asc()).all()
    return jsonify([user.to_dict() for user in users])


@users_bp.route('/me', methods=['GET'])
@login_required
@handle_api_errors
def get_me():
    return jsonify(current_user.to_dict())
