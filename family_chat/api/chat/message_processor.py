"""
Realtime payload validation and notification formatting.

Validators return a result dict instead of raising, matching how socket
handlers reply: ``{'valid': True, ...fields}`` or ``{'valid': False, 'code': ...}``
where ``code`` is the ``ErrorCode`` sent back in the ack.
"""

from typing import Any, Dict, List

from ...utils.error_handling import ErrorCode

PUSH_BODY_MAX_LENGTH = 100
MAX_EMOJI_LENGTH = 32


def validate_message(message: Any, max_length: int) -> Dict[str, Any]:
    """
    Validate a message body.

    Bodies are trimmed; an empty result is ``EMPTY_MESSAGE`` and anything over
    ``max_length`` characters is ``MESSAGE_TOO_LONG``.

    Example:
        >>> validate_message('  hi  ', 4000)
        {'valid': True, 'message': 'hi'}
    """
    if not isinstance(message, str) or not message.strip():
        return {'valid': False, 'code': ErrorCode.EMPTY_MESSAGE}

    message = message.strip()
    if len(message) > max_length:
        return {'valid': False, 'code': ErrorCode.MESSAGE_TOO_LONG}

    return {'valid': True, 'message': message}


def validate_send_payload(data: Any, max_length: int) -> Dict[str, Any]:
    """Validate a ``send_message`` payload ``{conversationId, body}``"""
    if not isinstance(data, dict):
        return {'valid': False, 'code': ErrorCode.INVALID_PAYLOAD}

    body_check = validate_message(data.get('body'), max_length)
    if not body_check['valid']:
        return body_check

    conversation_id = data.get('conversationId')
    if not isinstance(conversation_id, str) or not conversation_id:
        return {'valid': False, 'code': ErrorCode.INVALID_PAYLOAD}

    return {'valid': True, 'conversation_id': conversation_id, 'body': body_check['message']}


def extract_conversation_id(data: Any):
    if isinstance(data, dict):
        conversation_id = data.get('conversationId')
        if isinstance(conversation_id, str) and conversation_id:
            return conversation_id
    return None


def validate_reaction_payload(data: Any) -> Dict[str, Any]:
    """Validate a ``toggle_reaction`` payload ``{messageId, emoji}``"""
    if not isinstance(data, dict):
        return {'valid': False, 'code': ErrorCode.INVALID_PAYLOAD}

    message_id = data.get('messageId')
    emoji = data.get('emoji')
    if not isinstance(message_id, str) or not message_id:
        return {'valid': False, 'code': ErrorCode.INVALID_PAYLOAD}
    if not isinstance(emoji, str) or not emoji.strip() or len(emoji) > MAX_EMOJI_LENGTH:
        return {'valid': False, 'code': ErrorCode.INVALID_PAYLOAD}

    return {'valid': True, 'message_id': message_id, 'emoji': emoji.strip()}


def truncate(text: str, limit: int = PUSH_BODY_MAX_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[:limit - 3] + '...'


def build_push_payload(sender_name: str, conversation, body: str) -> Dict[str, str]:
    title = sender_name
    if conversation.is_group and conversation.name:
        title = f"{sender_name} in {conversation.name}"
    return {
        'title': title,
        'body': truncate(body),
        'url': f"/conversation/{conversation.id}",
    }


def push_recipients(conversation, sender_id: str) -> List[str]:
    """Members who should be notified: everyone but the sender and bots"""
    return [member.user_id for member in conversation.members
            if member.user_id != sender_id and not member.user.is_bot]
