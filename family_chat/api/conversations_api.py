"""
Conversations API module - listing, creation and message history.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ..logger import handle_api_errors, log_api_request, log_user_action
from ..services.conversation_service import (
    DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, create_group_conversation, find_or_create_dm,
    get_conversation, get_conversation_messages, get_user_conversations
)
from ..utils.error_handling import NotFoundError, ValidationError

conversations_bp = Blueprint('conversations', __name__)


def _validate_create_payload(data):
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    kind = data.get('type')
    if kind == 'dm':
        other_user_id = data.get('otherUserId')
        if not isinstance(other_user_id, str) or not other_user_id:
            raise ValidationError("otherUserId is required", field='otherUserId')
        return {'type': 'dm', 'other_user_id': other_user_id}

    if kind == 'group':
        name = data.get('name')
        member_ids = data.get('memberIds')
        if not isinstance(name, str) or not 1 <= len(name) <= 64:
            raise ValidationError("name must be 1-64 characters", field='name')
        if not isinstance(member_ids, list) or len(member_ids) < 2 \
                or not all(isinstance(member_id, str) and member_id for member_id in member_ids):
            raise ValidationError("memberIds must list at least 2 user ids", field='memberIds')
        return {'type': 'group', 'name': name, 'member_ids': member_ids}

    raise ValidationError("type must be 'dm' or 'group'", field='type')


@conversations_bp.route('/conversations', methods=['GET'])
@login_required
@handle_api_errors
def list_conversations():
    log_api_request(request.endpoint, request.method, user_id=current_user.id)
    return jsonify(get_user_conversations(current_user.id))


@conversations_bp.route('/conversations', methods=['POST'])
@login_required
@handle_api_errors
def create_conversation():
    payload = _validate_create_payload(request.get_json(silent=True))

    if payload['type'] == 'dm':
        conversation = find_or_create_dm(current_user.id, payload['other_user_id'])
    else:
        # Creator always belongs to the group; ids are de-duplicated in order
        member_ids = list(dict.fromkeys([current_user.id] + payload['member_ids']))
        conversation = create_group_conversation(payload['name'], member_ids)

    log_user_action(current_user.id, f"Opened conversation {conversation.id}")
    return jsonify(conversation.to_dict(include_last_message=True)), 201


@conversations_bp.route('/conversations/<conversation_id>', methods=['GET'])
@login_required
@handle_api_errors
def get_conversation_detail(conversation_id):
    conversation = get_conversation(conversation_id, current_user.id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return jsonify(conversation.to_dict())


@conversations_bp.route('/messages', methods=['GET'])
@login_required
@handle_api_errors
def list_messages():
    conversation_id = request.args.get('conversationId')
    if not conversation_id:
        raise ValidationError("conversationId required", field='conversationId')

    if get_conversation(conversation_id, current_user.id) is None:
        raise NotFoundError("Conversation not found")

    try:
        limit = int(request.args.get('limit', DEFAULT_PAGE_SIZE))
    except ValueError:
        raise ValidationError("limit must be an integer", field='limit')
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    return jsonify(get_conversation_messages(conversation_id, request.args.get('cursor'), limit))
