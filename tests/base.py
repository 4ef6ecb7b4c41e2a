"""
Shared fixtures for the Family Chat test suite.
"""

from flask import g
from flask_testing import TestCase

from family_chat import create_app, socketio
from family_chat.auth import create_user, issue_token
from family_chat.models import db, Conversation, ConversationMember, User
from family_chat.services.llm_service import CONTENT, THINKING, StreamChunk
from family_chat.utils.error_handling import LLMServiceError

BOT_ID = 'bot-ai-assistant'

TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test-secret-key',
    'JWT_SECRET': 'test-jwt-secret',
    'SQLALCHEMY_DATABASE_URI': 'sqlite://',
    'PUSH_ENABLED': False,
    'STREAM_WATCHDOG_ENABLED': False,
    'BOT_USER_ID': BOT_ID,
}


def run_inline(target, *args):
    """Task runner executing background work synchronously"""
    target(*args)


class FakeLLM:
    """Completion provider replaying scripted chunks"""

    def __init__(self, chunks=None, fail_after=None, models=None):
        self.chunks = chunks if chunks is not None else [
            StreamChunk(CONTENT, 'Hello'),
            StreamChunk(CONTENT, ' there'),
            StreamChunk(CONTENT, '!'),
        ]
        self.fail_after = fail_after
        self.models = models or ['llama3.2', 'qwen3:4b']
        self.calls = []

    def stream_chat(self, messages, think=False, model=None):
        self.calls.append({'messages': messages, 'think': think, 'model': model})
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise LLMServiceError("Ollama stream interrupted")
            if chunk.kind == THINKING and not think:
                continue
            yield chunk
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise LLMServiceError("Ollama stream interrupted")

    def list_models(self):
        return list(self.models)

    def is_available(self):
        return True


class BaseTestCase(TestCase):
    """App with in-memory SQLite, inline background tasks and a fake provider"""

    config_overrides = {}

    def create_app(self):
        self.llm = FakeLLM()
        self.push = self.make_push_service()
        config = dict(TEST_CONFIG)
        config.update(self.config_overrides)
        return create_app(
            config_overrides=config,
            llm_client=self.llm,
            push_service=self.push,
            task_runner=run_inline,
            rate_limiter=self.make_rate_limiter(),
        )

    def make_push_service(self):
        return None

    def make_rate_limiter(self):
        return None

    def setUp(self):
        # Flask-Testing keeps one app context open for the whole test, so
        # Flask-Login's per-request user cache on ``g`` would leak between
        # requests; drop it when each request ends.
        self.app.teardown_request(lambda exc: g.pop('_login_user', None))

        self.bot = User(id=BOT_ID, username='ai', display_name='AI Assistant',
                        is_bot=True, avatar_color='#8b5cf6')
        db.session.add(self.bot)
        db.session.commit()

        self.admin = create_user('admin', 'Admin', 'admin-password', is_admin=True)
        self.mom = create_user('mom', 'Mom', 'mom-password')
        self.dad = create_user('dad', 'Dad', 'dad-password')
        self.kid = create_user('kid', 'Kid', 'kid-password')
        self._socket_clients = []

    def tearDown(self):
        for client in self._socket_clients:
            if client.is_connected():
                client.disconnect()
        db.session.remove()
        db.drop_all()

    def token_for(self, user):
        return issue_token(user)

    def auth_headers(self, user):
        return {'Authorization': f"Bearer {self.token_for(user)}"}

    def make_conversation(self, members, is_group=False, name=None):
        conversation = Conversation(is_group=is_group, name=name)
        conversation.members = [ConversationMember(user_id=user.id) for user in members]
        db.session.add(conversation)
        db.session.commit()
        return conversation

    def socket_client(self, user, join=None):
        client = socketio.test_client(self.app, auth={'token': self.token_for(user)})
        self._socket_clients.append(client)
        if join:
            client.emit('join_room', {'conversationId': join})
            client.get_received()
        return client

    @staticmethod
    def events(received, name):
        return [event['args'][0] for event in received if event['name'] == name]
