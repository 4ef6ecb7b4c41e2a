"""
Push API module - web push key distribution and subscription bookkeeping.
"""

from urllib.parse import urlparse

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ..logger import handle_api_errors, log_user_action
from ..utils.error_handling import ServiceUnavailableError, ValidationError

push_bp = Blueprint('push', __name__, url_prefix='/push')


def _is_url(value) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


@push_bp.route('/public-key', methods=['GET'])
def get_public_key():
    push_service = current_app.push_service  # type: ignore
    key = push_service.get_public_key() if push_service is not None else None
    if not key:
        raise ServiceUnavailableError("Push not initialized")
    return jsonify({'publicKey': key})


@push_bp.route('/subscribe', methods=['POST'])
@login_required
@handle_api_errors
def subscribe():
    push_service = current_app.push_service  # type: ignore
    if push_service is None:
        raise ServiceUnavailableError("Push not initialized")

    data = request.get_json(silent=True) or {}
    keys = data.get('keys')
    if not _is_url(data.get('endpoint')):
        raise ValidationError("endpoint must be a URL", field='endpoint')
    if not isinstance(keys, dict) or not isinstance(keys.get('p256dh'), str) \
            or not isinstance(keys.get('auth'), str):
        raise ValidationError("keys.p256dh and keys.auth are required", field='keys')

    push_service.subscribe(current_user.id, data['endpoint'], keys['p256dh'], keys['auth'])
    log_user_action(current_user.id, "Subscribed to push notifications")
    return '', 204


@push_bp.route('/unsubscribe', methods=['DELETE'])
@login_required
@handle_api_errors
def unsubscribe():
    push_service = current_app.push_service  # type: ignore
    if push_service is None:
        raise ServiceUnavailableError("Push not initialized")

    data = request.get_json(silent=True) or {}
    endpoint = data.get('endpoint')
    if not isinstance(endpoint, str) or not endpoint:
        raise ValidationError("Missing endpoint", field='endpoint')

    push_service.unsubscribe(current_user.id, endpoint)
    return '', 204
