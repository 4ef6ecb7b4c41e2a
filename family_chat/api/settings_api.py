"""
Settings API module - admin control of the assistant.
"""

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from ..auth import admin_required
from ..logger import handle_api_errors, log_api_request, log_user_action

settings_bp = Blueprint('settings', __name__, url_prefix='/settings')


@settings_bp.route('/bot', methods=['GET'])
@admin_required
@handle_api_errors
def get_bot_settings():
    log_api_request(request.endpoint, request.method, user_id=current_user.id)
    return jsonify(current_app.bot_settings.snapshot().to_dict())  # type: ignore


@settings_bp.route('/bot', methods=['PATCH'])
@admin_required
@handle_api_errors
def update_bot_settings():
    settings_service = current_app.bot_settings  # type: ignore
    changes = settings_service.validate_changes(request.get_json(silent=True))
    updated = settings_service.update(**changes)
    log_user_action(current_user.id, "Updated bot settings", ', '.join(sorted(changes)) or 'no changes')
    return jsonify(updated.to_dict())


@settings_bp.route('/bot/models', methods=['GET'])
@admin_required
@handle_api_errors
def list_bot_models():
    """Models reported by the completion provider; empty when it is unreachable"""
    return jsonify({'models': current_app.llm_client.list_models()})  # type: ignore
