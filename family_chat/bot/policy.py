"""
Bot trigger policy.

The assistant answers every message in a direct conversation it belongs to,
and in groups only when addressed with an ``@`` mention of its display name
or one of the fixed aliases.
"""

from typing import Iterable

from flask import current_app

from ..models import db, Conversation, User
from ..services.conversation_service import is_user_in_conversation


def mentions_bot(body: str, display_name: str, aliases: Iterable[str]) -> bool:
    """Case-insensitive ``@name`` substring match against the name and aliases"""
    lowered = (body or '').lower()
    names = [display_name.lower()] if display_name else []
    names.extend(alias.lower() for alias in aliases)
    return any(f"@{name}" in lowered for name in names if name)


def should_bot_respond(conversation_id: str, body: str) -> bool:
    bot_user_id = current_app.config['BOT_USER_ID']
    if not is_user_in_conversation(bot_user_id, conversation_id):
        return False

    conversation = db.session.get(Conversation, conversation_id)
    if conversation is None:
        return False

    if not conversation.is_group:
        return True

    bot_user = db.session.get(User, bot_user_id)
    display_name = bot_user.display_name if bot_user else current_app.config['BOT_DISPLAY_NAME']
    return mentions_bot(body, display_name, current_app.config['BOT_MENTION_ALIASES'])
