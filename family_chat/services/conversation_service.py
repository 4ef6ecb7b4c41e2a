"""
Conversation Service
Membership checks, conversation creation (with direct-message deduplication)
and cursor-based message history.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_

from ..models import db, Conversation, ConversationMember, Message, User
from ..utils.error_handling import NotFoundError, NotMemberError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def is_user_in_conversation(user_id: str, conversation_id: str) -> bool:
    """Membership oracle: True when the user belongs to the conversation"""
    if not user_id or not conversation_id:
        return False
    member = (db.session.query(ConversationMember.id)
              .filter_by(user_id=user_id, conversation_id=conversation_id)
              .first())
    return member is not None


def require_membership(user_id: str, conversation_id: str):
    """Raise ``NotMemberError`` unless the user belongs to the conversation"""
    if not is_user_in_conversation(user_id, conversation_id):
        raise NotMemberError()


def get_conversation(conversation_id: str, user_id: str) -> Optional[Conversation]:
    """Return the conversation only if ``user_id`` is a member of it"""
    if not is_user_in_conversation(user_id, conversation_id):
        return None
    return db.session.get(Conversation, conversation_id)


def get_user_conversations(user_id: str) -> List[Dict[str, Any]]:
    """Conversations the user belongs to, newest first, with their last message"""
    conversations = (Conversation.query
                     .join(ConversationMember)
                     .filter(ConversationMember.user_id == user_id)
                     .order_by(Conversation.created_at.desc())
                     .all())

    result = []
    for conversation in conversations:
        last_message = (Message.query
                        .filter_by(conversation_id=conversation.id)
                        .order_by(Message.created_at.desc(), Message.id.desc())
                        .first())
        result.append(conversation.to_dict(last_message=last_message, include_last_message=True))
    return result


def _find_direct_conversation(user_a: str, user_b: str) -> Optional[Conversation]:
    member_a = db.session.query(ConversationMember.conversation_id).filter_by(user_id=user_a)
    member_b = db.session.query(ConversationMember.conversation_id).filter_by(user_id=user_b)
    candidates = (Conversation.query
                  .filter(Conversation.is_group.is_(False))
                  .filter(Conversation.id.in_(member_a))
                  .filter(Conversation.id.in_(member_b))
                  .order_by(Conversation.created_at.asc())
                  .all())
    for conversation in candidates:
        if len(conversation.members) == 2:
            return conversation
    return None


def find_or_create_dm(user_id: str, other_user_id: str) -> Conversation:
    """
    Return a direct conversation between two users.

    Human-to-human DMs are deduplicated: an existing two-member, non-group
    conversation between the pair is returned as-is. A DM with a bot user is
    always a fresh conversation, so each one starts a new thread.
    """
    if user_id == other_user_id:
        raise ValidationError("Cannot start a conversation with yourself", field='otherUserId')

    other_user = db.session.get(User, other_user_id)
    if other_user is None:
        raise NotFoundError("User not found")

    if not other_user.is_bot:
        existing = _find_direct_conversation(user_id, other_user_id)
        if existing is not None:
            return existing

    conversation = Conversation(is_group=False)
    conversation.members = [
        ConversationMember(user_id=user_id),
        ConversationMember(user_id=other_user_id),
    ]
    db.session.add(conversation)
    db.session.commit()
    logger.info(f"Created direct conversation {conversation.id} ({user_id} <-> {other_user_id})")
    return conversation


def create_group_conversation(name: str, member_ids: List[str]) -> Conversation:
    """Create a group conversation; ``member_ids`` must already be de-duplicated"""
    found = {user_id for (user_id,) in
             db.session.query(User.id).filter(User.id.in_(member_ids)).all()}
    missing = [user_id for user_id in member_ids if user_id not in found]
    if missing:
        raise NotFoundError("User not found", details={'userIds': missing})

    conversation = Conversation(name=name, is_group=True)
    conversation.members = [ConversationMember(user_id=user_id) for user_id in member_ids]
    db.session.add(conversation)
    db.session.commit()
    logger.info(f"Created group conversation {conversation.id} '{name}' with {len(member_ids)} members")
    return conversation


def get_conversation_messages(conversation_id: str, cursor: Optional[str] = None,
                              limit: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
    """
    One page of history, walking backwards from ``cursor``.

    Pages are selected newest first and returned in chronological order.
    ``nextCursor`` is the id of the oldest message on the page when older
    messages remain, otherwise None.
    """
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    query = Message.query.filter_by(conversation_id=conversation_id)

    if cursor:
        anchor = db.session.get(Message, cursor)
        if anchor is None or anchor.conversation_id != conversation_id:
            raise ValidationError("Invalid cursor", field='cursor')
        query = query.filter(or_(
            Message.created_at < anchor.created_at,
            and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
        ))

    rows = (query
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit + 1)
            .all())

    has_more = len(rows) > limit
    items = rows[:limit]
    items.reverse()

    return {
        'messages': [message.to_dict() for message in items],
        'nextCursor': items[0].id if has_more else None,
    }
