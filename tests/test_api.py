"""
Tests for the REST API: authentication, users, conversations, message history,
bot settings, push keys and health.
"""

import unittest
from unittest.mock import Mock

from family_chat.models import User
from family_chat.services.message_service import create_message
from family_chat.services.settings_service import BotSettingsService

from tests.base import BOT_ID, BaseTestCase


class AuthApiTestCase(BaseTestCase):

    def test_login_returns_token_and_user(self):
        response = self.client.post('/auth/login', json={'username': 'mom', 'password': 'mom-password'})

        self.assert200(response)
        self.assertEqual(response.json['user']['username'], 'mom')
        self.assertNotIn('passwordHash', response.json['user'])

        me = self.client.get('/users/me', headers={'Authorization': f"Bearer {response.json['token']}"})
        self.assert200(me)
        self.assertEqual(me.json['id'], self.mom.id)

    def test_login_wrong_password(self):
        response = self.client.post('/auth/login', json={'username': 'mom', 'password': 'nope-nope'})
        self.assert401(response)
        self.assertEqual(response.json['code'], 'UNAUTHORIZED')

    def test_login_missing_fields(self):
        self.assert400(self.client.post('/auth/login', json={'username': 'mom'}))
        self.assert400(self.client.post('/auth/login', data='not json'))

    def test_bot_cannot_log_in(self):
        response = self.client.post('/auth/login', json={'username': 'ai', 'password': 'anything'})
        self.assert401(response)

    def test_invalid_bearer_token(self):
        response = self.client.get('/users/me', headers={'Authorization': 'Bearer garbage'})
        self.assert401(response)

    def test_missing_token(self):
        self.assert401(self.client.get('/users'))

    def test_register_requires_admin(self):
        payload = {'username': 'grandma', 'displayName': 'Grandma', 'password': 'knitting-123'}

        self.assert403(self.client.post('/auth/register', json=payload, headers=self.auth_headers(self.mom)))

        response = self.client.post('/auth/register', json=payload, headers=self.auth_headers(self.admin))
        self.assertStatus(response, 201)
        self.assertEqual(response.json['displayName'], 'Grandma')
        self.assertFalse(response.json['isAdmin'])
        self.assertTrue(User.query.filter_by(username='grandma').first().check_password('knitting-123'))

    def test_register_duplicate_username(self):
        payload = {'username': 'mom', 'displayName': 'Other Mom', 'password': 'long-enough'}
        response = self.client.post('/auth/register', json=payload, headers=self.auth_headers(self.admin))
        self.assertStatus(response, 409)

    def test_register_validation(self):
        headers = self.auth_headers(self.admin)
        bad_payloads = [
            {'username': 'G', 'displayName': 'Grandma', 'password': 'long-enough'},
            {'username': 'Grandma!', 'displayName': 'Grandma', 'password': 'long-enough'},
            {'username': 'grandma', 'displayName': '', 'password': 'long-enough'},
            {'username': 'grandma', 'displayName': 'Grandma', 'password': 'short'},
            {'username': 'grandma', 'displayName': 'Grandma', 'password': 'long-enough', 'isAdmin': 'yes'},
        ]
        for payload in bad_payloads:
            response = self.client.post('/auth/register', json=payload, headers=headers)
            self.assert400(response, message=str(payload))


class UsersApiTestCase(BaseTestCase):

    def test_humans_first_then_display_name(self):
        response = self.client.get('/users', headers=self.auth_headers(self.kid))

        self.assert200(response)
        names = [user['displayName'] for user in response.json]
        self.assertEqual(names, ['Admin', 'Dad', 'Kid', 'Mom', 'AI Assistant'])
        self.assertTrue(response.json[-1]['isBot'])


class ConversationsApiTestCase(BaseTestCase):

    def test_dm_is_deduplicated_between_humans(self):
        first = self.client.post('/conversations', json={'type': 'dm', 'otherUserId': self.dad.id},
                                 headers=self.auth_headers(self.mom))
        second = self.client.post('/conversations', json={'type': 'dm', 'otherUserId': self.mom.id},
                                  headers=self.auth_headers(self.dad))

        self.assertStatus(first, 201)
        self.assertEqual(first.json['id'], second.json['id'])
        self.assertFalse(first.json['isGroup'])
        self.assertIsNone(first.json['lastMessage'])
        self.assertEqual({member['id'] for member in first.json['members']}, {self.mom.id, self.dad.id})

    def test_dm_with_bot_always_creates_new_thread(self):
        headers = self.auth_headers(self.mom)
        first = self.client.post('/conversations', json={'type': 'dm', 'otherUserId': BOT_ID}, headers=headers)
        second = self.client.post('/conversations', json={'type': 'dm', 'otherUserId': BOT_ID}, headers=headers)

        self.assertNotEqual(first.json['id'], second.json['id'])

    def test_dm_errors(self):
        headers = self.auth_headers(self.mom)
        self.assert400(self.client.post('/conversations', json={'type': 'dm', 'otherUserId': self.mom.id},
                                        headers=headers))
        self.assert404(self.client.post('/conversations', json={'type': 'dm', 'otherUserId': 'nobody'},
                                        headers=headers))
        self.assert400(self.client.post('/conversations', json={'type': 'channel'}, headers=headers))

    def test_group_includes_creator_once(self):
        response = self.client.post('/conversations', json={
            'type': 'group',
            'name': 'Family',
            'memberIds': [self.dad.id, self.kid.id, self.dad.id, self.mom.id],
        }, headers=self.auth_headers(self.mom))

        self.assertStatus(response, 201)
        self.assertTrue(response.json['isGroup'])
        self.assertEqual(response.json['name'], 'Family')
        member_ids = [member['id'] for member in response.json['members']]
        self.assertEqual(sorted(member_ids), sorted([self.mom.id, self.dad.id, self.kid.id]))

    def test_group_validation(self):
        headers = self.auth_headers(self.mom)
        self.assert400(self.client.post('/conversations', json={
            'type': 'group', 'name': '', 'memberIds': [self.dad.id, self.kid.id]}, headers=headers))
        self.assert400(self.client.post('/conversations', json={
            'type': 'group', 'name': 'Tiny', 'memberIds': [self.dad.id]}, headers=headers))
        self.assert404(self.client.post('/conversations', json={
            'type': 'group', 'name': 'Ghosts', 'memberIds': [self.dad.id, 'nobody']}, headers=headers))

    def test_list_only_own_conversations_with_last_message(self):
        mine = self.make_conversation([self.mom, self.dad])
        self.make_conversation([self.dad, self.kid])
        create_message(mine.id, self.dad.id, 'first')
        create_message(mine.id, self.mom.id, 'latest')

        response = self.client.get('/conversations', headers=self.auth_headers(self.mom))

        self.assert200(response)
        self.assertEqual([conversation['id'] for conversation in response.json], [mine.id])
        self.assertEqual(response.json[0]['lastMessage']['body'], 'latest')

    def test_conversation_detail_hidden_from_non_members(self):
        conversation = self.make_conversation([self.mom, self.dad])

        self.assert200(self.client.get(f"/conversations/{conversation.id}", headers=self.auth_headers(self.dad)))
        self.assert404(self.client.get(f"/conversations/{conversation.id}", headers=self.auth_headers(self.kid)))


class MessagesApiTestCase(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.conversation = self.make_conversation([self.mom, self.dad])
        self.messages = [create_message(self.conversation.id, self.mom.id, f"message {index}")
                         for index in range(5)]

    def get_page(self, user, **params):
        params.setdefault('conversationId', self.conversation.id)
        return self.client.get('/messages', query_string=params, headers=self.auth_headers(user))

    def test_pages_walk_backwards_in_chronological_order(self):
        first = self.get_page(self.dad, limit=2)
        self.assert200(first)
        self.assertEqual([m['body'] for m in first.json['messages']], ['message 3', 'message 4'])
        self.assertEqual(first.json['nextCursor'], first.json['messages'][0]['id'])

        second = self.get_page(self.dad, limit=2, cursor=first.json['nextCursor'])
        self.assertEqual([m['body'] for m in second.json['messages']], ['message 1', 'message 2'])

        third = self.get_page(self.dad, limit=2, cursor=second.json['nextCursor'])
        self.assertEqual([m['body'] for m in third.json['messages']], ['message 0'])
        self.assertIsNone(third.json['nextCursor'])

    def test_default_page_has_everything(self):
        response = self.get_page(self.mom)
        self.assertEqual(len(response.json['messages']), 5)
        self.assertIsNone(response.json['nextCursor'])
        self.assertEqual(response.json['messages'][0]['reactions'], [])

    def test_non_member_gets_404(self):
        self.assert404(self.get_page(self.kid))

    def test_bad_parameters(self):
        self.assert400(self.client.get('/messages', headers=self.auth_headers(self.mom)))
        self.assert400(self.get_page(self.mom, limit='many'))
        self.assert400(self.get_page(self.mom, cursor='not-a-message'))


class SettingsApiTestCase(BaseTestCase):

    def test_admin_only(self):
        headers = self.auth_headers(self.mom)
        self.assert403(self.client.get('/settings/bot', headers=headers))
        self.assert403(self.client.patch('/settings/bot', json={'thinkMode': True}, headers=headers))
        self.assert403(self.client.get('/settings/bot/models', headers=headers))

    def test_get_defaults(self):
        response = self.client.get('/settings/bot', headers=self.auth_headers(self.admin))
        self.assert200(response)
        self.assertEqual(set(response.json), {'thinkMode', 'model', 'systemPrompt'})
        self.assertFalse(response.json['thinkMode'])

    def test_patch_persists_and_applies(self):
        response = self.client.patch('/settings/bot', json={'thinkMode': True, 'model': 'qwen3:4b'},
                                     headers=self.auth_headers(self.admin))

        self.assert200(response)
        self.assertTrue(response.json['thinkMode'])
        self.assertEqual(self.app.bot_settings.snapshot().model, 'qwen3:4b')

        reloaded = BotSettingsService(default_model='other', default_system_prompt='other').load()
        self.assertTrue(reloaded.think_mode)
        self.assertEqual(reloaded.model, 'qwen3:4b')

    def test_patch_validation(self):
        headers = self.auth_headers(self.admin)
        self.assert400(self.client.patch('/settings/bot', json={'thinkMode': 'on'}, headers=headers))
        self.assert400(self.client.patch('/settings/bot', json={'systemPrompt': ''}, headers=headers))
        self.assertFalse(self.app.bot_settings.snapshot().think_mode)

    def test_models(self):
        response = self.client.get('/settings/bot/models', headers=self.auth_headers(self.admin))
        self.assert200(response)
        self.assertEqual(response.json, {'models': ['llama3.2', 'qwen3:4b']})


class PushApiUnavailableTestCase(BaseTestCase):

    def test_public_key_unavailable_without_push(self):
        response = self.client.get('/push/public-key')
        self.assertStatus(response, 503)

    def test_subscribe_unavailable_without_push(self):
        response = self.client.post('/push/subscribe', json={}, headers=self.auth_headers(self.mom))
        self.assertStatus(response, 503)


class PushApiTestCase(BaseTestCase):

    subscription = {
        'endpoint': 'https://push.example.com/send/abc',
        'keys': {'p256dh': 'client-public-key', 'auth': 'client-auth-secret'},
    }

    def make_push_service(self):
        push = Mock()
        push.get_public_key.return_value = 'BPublicKey'
        return push

    def test_public_key(self):
        response = self.client.get('/push/public-key')
        self.assert200(response)
        self.assertEqual(response.json, {'publicKey': 'BPublicKey'})

    def test_subscribe(self):
        response = self.client.post('/push/subscribe', json=self.subscription,
                                    headers=self.auth_headers(self.mom))

        self.assertStatus(response, 204)
        self.push.subscribe.assert_called_once_with(
            self.mom.id, 'https://push.example.com/send/abc', 'client-public-key', 'client-auth-secret')

    def test_subscribe_validation(self):
        headers = self.auth_headers(self.mom)
        self.assert400(self.client.post('/push/subscribe', json={'endpoint': 'nope', 'keys': {}},
                                        headers=headers))
        self.assert400(self.client.post('/push/subscribe', json={'endpoint': self.subscription['endpoint']},
                                        headers=headers))
        self.assert401(self.client.post('/push/subscribe', json=self.subscription))

    def test_unsubscribe(self):
        response = self.client.delete('/push/unsubscribe', json={'endpoint': self.subscription['endpoint']},
                                      headers=self.auth_headers(self.mom))

        self.assertStatus(response, 204)
        self.push.unsubscribe.assert_called_once_with(self.mom.id, self.subscription['endpoint'])


class HealthTestCase(BaseTestCase):

    def test_health(self):
        response = self.client.get('/health')
        self.assert200(response)
        self.assertEqual(response.json['status'], 'ok')
        self.assertIn('timestamp', response.json)


if __name__ == '__main__':
    unittest.main()
