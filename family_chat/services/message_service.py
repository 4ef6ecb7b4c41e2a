"""
Message Service
Create, update and list persisted messages, and toggle reactions.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from ..models import db, Message, MessageReaction


logger = logging.getLogger(__name__)


def get_message(message_id: str) -> Optional[Message]:
    return db.session.get(Message, message_id)


def create_message(conversation_id: str, sender_id: str, body: str,
                   is_streaming: bool = False, message_id: Optional[str] = None) -> Message:
    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        body=body,
        is_streaming=is_streaming,
    )
    if message_id is not None:
        message.id = message_id
    db.session.add(message)
    db.session.commit()
    return message


def update_message(message_id: str, body: Optional[str] = None,
                   is_streaming: Optional[bool] = None) -> Message:
    message = db.session.get(Message, message_id)
    if message is None:
        raise LookupError(f"Message {message_id} does not exist")
    if body is not None:
        message.body = body
    if is_streaming is not None:
        message.is_streaming = is_streaming
    db.session.commit()
    return message


def get_recent_messages(conversation_id: str, limit: int = 20) -> List[Message]:
    """Most recent finished messages, newest first"""
    return (Message.query
            .filter_by(conversation_id=conversation_id, is_streaming=False)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .all())


def get_streaming_messages() -> List[Message]:
    return Message.query.filter_by(is_streaming=True).all()


def get_reactions(message_id: str) -> List[Dict[str, Any]]:
    reactions = (MessageReaction.query
                 .filter_by(message_id=message_id)
                 .order_by(MessageReaction.created_at.asc(), MessageReaction.id.asc())
                 .all())
    return [reaction.to_dict() for reaction in reactions]


def toggle_reaction(message_id: str, user_id: str, emoji: str) -> List[Dict[str, Any]]:
    """
    Delete the (message, user, emoji) reaction if present, insert it otherwise.

    Returns the full reaction set of the message after the change.
    """
    existing = MessageReaction.query.filter_by(
        message_id=message_id, user_id=user_id, emoji=emoji).first()

    if existing is not None:
        db.session.delete(existing)
        db.session.commit()
    else:
        db.session.add(MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji))
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent toggle inserted the same triple first
            db.session.rollback()
            logger.debug(f"Reaction {emoji} on {message_id} by {user_id} already present")

    return get_reactions(message_id)
