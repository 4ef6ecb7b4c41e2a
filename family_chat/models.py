"""
Database Models for the Family Chat server.

This module defines the SQLAlchemy models backing the chat service:

- User: humans and the single designated bot account
- Conversation / ConversationMember: direct and group conversations
- Message: chat messages, including bot replies that are still streaming
- MessageReaction: one row per (message, user, emoji)
- AppSetting: persisted key/value settings (bot settings, VAPID keys)
- PushSubscription: web push endpoints registered by users

Identifiers are random UUID strings, except the bot user which uses the fixed
``Config.BOT_USER_ID``. Every model exposes ``to_dict()`` producing the
camelCase shape sent to clients.

Example:
    >>> from family_chat.models import db, User
    >>> user = User(username='mom', display_name='Mom')
    >>> user.set_password('correct horse battery')
    >>> db.session.add(user)
    >>> db.session.commit()
"""

import uuid
from datetime import datetime, timezone

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import Index, UniqueConstraint
from werkzeug.security import generate_password_hash, check_password_hash

# This will be bound by the create_app function
db = SQLAlchemy()


def generate_id() -> str:
    return str(uuid.uuid4())


def isoformat_utc(value):
    """Serialize a naive UTC datetime as an ISO-8601 string with offset"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class User(db.Model, UserMixin):
    """
    A chat participant.

    Exactly one row has ``is_bot`` set: the assistant, created by the seed
    command under ``Config.BOT_USER_ID``. The bot has no password.
    """
    __tablename__ = 'user'

    id = db.Column(db.String(64), primary_key=True, default=generate_id)
    username = db.Column(db.String(32), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(64), nullable=False)
    password_hash = db.Column(db.String(256), nullable=True)
    is_bot = db.Column(db.Boolean, default=False, nullable=False, index=True)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    avatar_color = db.Column(db.String(16), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'displayName': self.display_name,
            'isBot': bool(self.is_bot),
            'isAdmin': bool(self.is_admin),
            'avatarColor': self.avatar_color,
            'createdAt': isoformat_utc(self.created_at),
        }

    def __repr__(self):
        return f'<User {self.username}>'


class Conversation(db.Model):
    """A direct (exactly two members) or group conversation"""
    __tablename__ = 'conversation'

    id = db.Column(db.String(64), primary_key=True, default=generate_id)
    name = db.Column(db.String(64), nullable=True)
    is_group = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    members = db.relationship('ConversationMember', backref='conversation',
                              lazy='selectin', cascade='all, delete-orphan')

    def member_users(self):
        return [member.user for member in self.members]

    def member_ids(self):
        return [member.user_id for member in self.members]

    def to_dict(self, last_message=None, include_last_message=False):
        payload = {
            'id': self.id,
            'name': self.name,
            'isGroup': bool(self.is_group),
            'createdAt': isoformat_utc(self.created_at),
            'members': [user.to_dict() for user in self.member_users()],
        }
        if include_last_message:
            payload['lastMessage'] = last_message.to_dict() if last_message else None
        return payload


class ConversationMember(db.Model):
    """Membership of one user in one conversation, unique per pair"""
    __tablename__ = 'conversation_member'

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.String(64), db.ForeignKey('conversation.id'), nullable=False)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False, index=True)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    user = db.relationship('User', lazy='joined')

    __table_args__ = (
        UniqueConstraint('user_id', 'conversation_id', name='uq_member_user_conversation'),
    )


class Message(db.Model):
    """
    A persisted chat message.

    ``is_streaming`` stays true while the bot is still generating the body.
    Once it is false the body no longer changes; reactions still can.
    """
    __tablename__ = 'message'

    id = db.Column(db.String(64), primary_key=True, default=generate_id)
    conversation_id = db.Column(db.String(64), db.ForeignKey('conversation.id'), nullable=False)
    sender_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False)
    body = db.Column(db.Text, nullable=False, default='')
    is_streaming = db.Column(db.Boolean, default=False, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    sender = db.relationship('User', lazy='joined')
    reactions = db.relationship('MessageReaction', backref='message', lazy='selectin',
                                cascade='all, delete-orphan',
                                order_by='MessageReaction.created_at')

    __table_args__ = (
        Index('idx_message_conversation_created', 'conversation_id', 'created_at'),
    )

    def to_dict(self, include_reactions=True):
        payload = {
            'id': self.id,
            'conversationId': self.conversation_id,
            'senderId': self.sender_id,
            'body': self.body,
            'isStreaming': bool(self.is_streaming),
            'createdAt': isoformat_utc(self.created_at),
            'sender': self.sender.to_dict() if self.sender else None,
        }
        if include_reactions:
            payload['reactions'] = [reaction.to_dict() for reaction in self.reactions]
        return payload


class MessageReaction(db.Model):
    """A (message, user, emoji) triple; toggling deletes or inserts it"""
    __tablename__ = 'message_reaction'

    id = db.Column(db.Integer, primary_key=True)
    message_id = db.Column(db.String(64), db.ForeignKey('message.id'), nullable=False, index=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False)
    emoji = db.Column(db.String(32), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', 'emoji', name='uq_reaction_message_user_emoji'),
    )

    def to_dict(self):
        return {
            'messageId': self.message_id,
            'userId': self.user_id,
            'emoji': self.emoji,
        }


class AppSetting(db.Model):
    """Persisted application setting (string values)"""
    __tablename__ = 'app_setting'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False, index=True)
    value = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @classmethod
    def get_value(cls, key: str, default=None):
        setting = cls.query.filter_by(key=key).first()
        return setting.value if setting else default

    @classmethod
    def set_value(cls, key: str, value: str):
        """Stage an upsert; the caller commits"""
        setting = cls.query.filter_by(key=key).first()
        if setting is None:
            setting = cls(key=key, value=value)
            db.session.add(setting)
        else:
            setting.value = value
        return setting

    def to_dict(self):
        return {
            'key': self.key,
            'value': self.value,
            'updatedAt': isoformat_utc(self.updated_at),
        }


class PushSubscription(db.Model):
    """A browser push endpoint owned by a user"""
    __tablename__ = 'push_subscription'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False, index=True)
    endpoint = db.Column(db.String(1024), unique=True, nullable=False)
    p256dh = db.Column(db.String(256), nullable=False)
    auth = db.Column(db.String(256), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def subscription_info(self):
        """The dict shape expected by pywebpush"""
        return {
            'endpoint': self.endpoint,
            'keys': {'p256dh': self.p256dh, 'auth': self.auth},
        }
