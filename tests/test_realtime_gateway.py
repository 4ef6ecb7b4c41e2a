"""
Tests for the Socket.IO gateway: handshake auth, rooms, the send/ack/broadcast
protocol, bot streaming, typing relay and reactions.
"""

import unittest
from unittest.mock import Mock

from family_chat import socketio
from family_chat.models import db, Message
from family_chat.services.llm_service import CONTENT, THINKING, StreamChunk
from family_chat.services.message_service import create_message
from family_chat.utils.rate_limiter import SlidingWindowRateLimiter

from tests.base import BaseTestCase


class ConnectionTestCase(BaseTestCase):

    def test_connect_without_token_is_refused(self):
        client = socketio.test_client(self.app)
        self.assertFalse(client.is_connected())

    def test_connect_with_invalid_token_is_refused(self):
        client = socketio.test_client(self.app, auth={'token': 'not-a-jwt'})
        self.assertFalse(client.is_connected())

    def test_connect_with_valid_token(self):
        client = self.socket_client(self.mom)
        self.assertTrue(client.is_connected())
        self.assertEqual(self.app.connection_registry.connection_count(), 1)

        client.disconnect()
        self.assertEqual(self.app.connection_registry.connection_count(), 0)

    def test_join_room_rejects_non_member(self):
        conversation = self.make_conversation([self.dad, self.kid])
        client = self.socket_client(self.mom)

        client.emit('join_room', {'conversationId': conversation.id})
        errors = self.events(client.get_received(), 'error')

        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]['code'], 'NOT_MEMBER')


class SendMessageTestCase(BaseTestCase):

    def make_push_service(self):
        return Mock()

    def setUp(self):
        super().setUp()
        self.conversation = self.make_conversation([self.mom, self.dad])

    def test_ack_carries_persisted_record(self):
        mom = self.socket_client(self.mom, join=self.conversation.id)

        ack = mom.emit('send_message', {'conversationId': self.conversation.id, 'body': '  hi dad  '},
                       callback=True)

        self.assertTrue(ack['ok'])
        self.assertEqual(ack['message']['body'], 'hi dad')
        self.assertEqual(ack['message']['reactions'], [])
        self.assertFalse(ack['message']['isStreaming'])

        rows = Message.query.filter_by(conversation_id=self.conversation.id).all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].id, ack['message']['id'])
        self.assertEqual(rows[0].sender_id, self.mom.id)

    def test_broadcast_skips_sender(self):
        mom = self.socket_client(self.mom, join=self.conversation.id)
        dad = self.socket_client(self.dad, join=self.conversation.id)

        ack = mom.emit('send_message', {'conversationId': self.conversation.id, 'body': 'dinner?'},
                       callback=True)

        dad_messages = self.events(dad.get_received(), 'new_message')
        self.assertEqual(len(dad_messages), 1)
        self.assertEqual(dad_messages[0]['message']['id'], ack['message']['id'])
        self.assertEqual(self.events(mom.get_received(), 'new_message'), [])

    def test_broadcast_order_matches_persistence_order(self):
        mom = self.socket_client(self.mom, join=self.conversation.id)
        dad = self.socket_client(self.dad, join=self.conversation.id)

        for body in ('one', 'two', 'three'):
            mom.emit('send_message', {'conversationId': self.conversation.id, 'body': body},
                     callback=True)

        received = [event['message'] for event in self.events(dad.get_received(), 'new_message')]
        stored = (Message.query.filter_by(conversation_id=self.conversation.id)
                  .order_by(Message.created_at.asc()).all())
        self.assertEqual([message['id'] for message in received], [row.id for row in stored])

    def test_non_member_send_is_rejected_without_side_effects(self):
        kid = self.socket_client(self.kid)
        dad = self.socket_client(self.dad, join=self.conversation.id)

        ack = kid.emit('send_message', {'conversationId': self.conversation.id, 'body': 'let me in'},
                       callback=True)

        self.assertEqual(ack, {'ok': False, 'error': 'NOT_MEMBER'})
        self.assertEqual(self.events(kid.get_received(), 'error')[0]['code'], 'NOT_MEMBER')
        self.assertEqual(Message.query.count(), 0)
        self.assertEqual(self.events(dad.get_received(), 'new_message'), [])
        self.push.send_push_to_users.assert_not_called()

    def test_empty_body_is_rejected(self):
        mom = self.socket_client(self.mom, join=self.conversation.id)

        ack = mom.emit('send_message', {'conversationId': self.conversation.id, 'body': '   '},
                       callback=True)

        self.assertEqual(ack, {'ok': False, 'error': 'EMPTY_MESSAGE'})
        self.assertEqual(Message.query.count(), 0)

    def test_overlong_body_is_rejected(self):
        mom = self.socket_client(self.mom, join=self.conversation.id)

        ack = mom.emit('send_message', {'conversationId': self.conversation.id, 'body': 'x' * 4001},
                       callback=True)

        self.assertEqual(ack, {'ok': False, 'error': 'MESSAGE_TOO_LONG'})
        self.assertEqual(Message.query.count(), 0)

    def test_malformed_payload_is_rejected(self):
        mom = self.socket_client(self.mom)

        ack = mom.emit('send_message', {'body': 'no conversation'}, callback=True)

        self.assertEqual(ack, {'ok': False, 'error': 'INVALID_PAYLOAD'})

    def test_push_goes_to_other_human_members(self):
        mom = self.socket_client(self.mom, join=self.conversation.id)

        mom.emit('send_message', {'conversationId': self.conversation.id, 'body': 'hi dad'},
                 callback=True)

        self.push.send_push_to_users.assert_called_once_with([self.dad.id], {
            'title': 'Mom',
            'body': 'hi dad',
            'url': f"/conversation/{self.conversation.id}",
        })

    def test_push_failure_does_not_affect_ack(self):
        self.push.send_push_to_users.side_effect = RuntimeError("push endpoint exploded")
        mom = self.socket_client(self.mom, join=self.conversation.id)
        dad = self.socket_client(self.dad, join=self.conversation.id)

        ack = mom.emit('send_message', {'conversationId': self.conversation.id, 'body': 'still works'},
                       callback=True)

        self.assertTrue(ack['ok'])
        self.assertEqual(len(self.events(dad.get_received(), 'new_message')), 1)

    def test_no_bot_run_in_human_conversation(self):
        mom = self.socket_client(self.mom, join=self.conversation.id)

        mom.emit('send_message', {'conversationId': self.conversation.id, 'body': '@ai hello?'},
                 callback=True)

        self.assertEqual(self.llm.calls, [])


class RateLimitTestCase(BaseTestCase):

    def make_rate_limiter(self):
        self.clock_ms = [0.0]
        return SlidingWindowRateLimiter(max_events=10, window_ms=5000, clock=lambda: self.clock_ms[0])

    def test_eleventh_send_in_window_is_rejected(self):
        conversation = self.make_conversation([self.mom, self.dad])
        mom = self.socket_client(self.mom, join=conversation.id)

        for index in range(10):
            self.clock_ms[0] = index * 100
            ack = mom.emit('send_message', {'conversationId': conversation.id, 'body': f"msg {index}"},
                           callback=True)
            self.assertTrue(ack['ok'])

        ack = mom.emit('send_message', {'conversationId': conversation.id, 'body': 'one too many'},
                       callback=True)
        self.assertEqual(ack, {'ok': False, 'error': 'RATE_LIMITED'})
        self.assertEqual(Message.query.count(), 10)

        self.clock_ms[0] = 5001
        ack = mom.emit('send_message', {'conversationId': conversation.id, 'body': 'window moved'},
                       callback=True)
        self.assertTrue(ack['ok'])


class BotStreamingTestCase(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.dm = self.make_conversation([self.mom, self.bot])

    def test_dm_with_bot_streams_reply(self):
        mom = self.socket_client(self.mom, join=self.dm.id)

        ack = mom.emit('send_message', {'conversationId': self.dm.id, 'body': 'hello'}, callback=True)

        self.assertTrue(ack['ok'])
        self.assertEqual(ack['message']['body'], 'hello')

        received = mom.get_received()
        names = [event['name'] for event in received]
        self.assertNotIn('new_message', names)
        self.assertNotIn('message_stream_think_chunk', names)
        self.assertEqual(names[0], 'message_stream_start')
        self.assertEqual(names[-1], 'message_stream_end')

        start = self.events(received, 'message_stream_start')[0]
        self.assertEqual(start['conversationId'], self.dm.id)
        self.assertFalse(start['thinkMode'])
        self.assertEqual(start['sender']['id'], self.bot.id)

        chunks = self.events(received, 'message_stream_chunk')
        end = self.events(received, 'message_stream_end')[0]
        self.assertEqual(''.join(chunk['chunk'] for chunk in chunks), end['body'])
        self.assertEqual(end['body'], 'Hello there!')

        db.session.expire_all()
        reply = db.session.get(Message, start['messageId'])
        self.assertEqual(reply.body, 'Hello there!')
        self.assertFalse(reply.is_streaming)
        self.assertEqual(reply.sender_id, self.bot.id)
        self.assertEqual(start['createdAt'], reply.to_dict()['createdAt'])

    def test_prompt_contains_history_and_system_prompt(self):
        mom = self.socket_client(self.mom, join=self.dm.id)

        mom.emit('send_message', {'conversationId': self.dm.id, 'body': 'what is for dinner'},
                 callback=True)

        prompt = self.llm.calls[0]['messages']
        self.assertEqual(prompt[0]['role'], 'system')
        self.assertEqual(prompt[-1], {'role': 'user', 'content': 'Mom: what is for dinner'})
        self.assertFalse(self.llm.calls[0]['think'])
        self.assertEqual(self.llm.calls[0]['model'], self.app.bot_settings.snapshot().model)

    def test_think_mode_forwards_reasoning_but_not_into_body(self):
        self.app.bot_settings.update(think_mode=True)
        self.llm.chunks = [
            StreamChunk(THINKING, 'Considering...'),
            StreamChunk(CONTENT, 'Pasta'),
            StreamChunk(CONTENT, ' tonight'),
        ]
        mom = self.socket_client(self.mom, join=self.dm.id)

        mom.emit('send_message', {'conversationId': self.dm.id, 'body': 'dinner?'}, callback=True)

        received = mom.get_received()
        self.assertTrue(self.events(received, 'message_stream_start')[0]['thinkMode'])
        thinking = self.events(received, 'message_stream_think_chunk')
        self.assertEqual([event['chunk'] for event in thinking], ['Considering...'])
        self.assertEqual(self.events(received, 'message_stream_end')[0]['body'], 'Pasta tonight')
        self.assertTrue(self.llm.calls[0]['think'])

    def test_provider_failure_emits_bot_error_and_keeps_partial_body(self):
        self.llm.fail_after = 1
        mom = self.socket_client(self.mom, join=self.dm.id)

        ack = mom.emit('send_message', {'conversationId': self.dm.id, 'body': 'hello'}, callback=True)

        self.assertTrue(ack['ok'])
        received = mom.get_received()
        errors = self.events(received, 'bot_error')
        self.assertEqual(errors, [{'message': 'AI assistant is unavailable right now.'}])
        self.assertEqual(self.events(received, 'message_stream_end'), [])

        message_id = self.events(received, 'message_stream_start')[0]['messageId']
        db.session.expire_all()
        reply = db.session.get(Message, message_id)
        self.assertTrue(reply.is_streaming)
        self.assertEqual(reply.body, 'Hello')
        self.assertFalse(self.app.bot_responder.is_active(message_id))

    def test_group_requires_mention(self):
        group = self.make_conversation([self.mom, self.dad, self.bot], is_group=True, name='Family')
        mom = self.socket_client(self.mom, join=group.id)

        mom.emit('send_message', {'conversationId': group.id, 'body': 'hey everyone'}, callback=True)
        self.assertEqual(self.llm.calls, [])

        mom.emit('send_message', {'conversationId': group.id, 'body': 'hey @AI Assistant help'},
                 callback=True)
        self.assertEqual(len(self.llm.calls), 1)
        self.assertEqual(len(self.events(mom.get_received(), 'message_stream_end')), 1)


class TypingTestCase(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.conversation = self.make_conversation([self.mom, self.dad])

    def test_typing_is_relayed_to_others(self):
        mom = self.socket_client(self.mom, join=self.conversation.id)
        dad = self.socket_client(self.dad, join=self.conversation.id)

        mom.emit('typing_start', {'conversationId': self.conversation.id})
        mom.emit('typing_stop', {'conversationId': self.conversation.id})

        received = dad.get_received()
        expected = {'userId': self.mom.id, 'displayName': 'Mom', 'conversationId': self.conversation.id}
        self.assertEqual(self.events(received, 'user_typing'), [expected])
        self.assertEqual(self.events(received, 'user_stopped_typing'), [expected])
        self.assertEqual(mom.get_received(), [])

    def test_typing_requires_joined_room(self):
        mom = self.socket_client(self.mom)
        dad = self.socket_client(self.dad, join=self.conversation.id)

        mom.emit('typing_start', {'conversationId': self.conversation.id})

        self.assertEqual(self.events(dad.get_received(), 'user_typing'), [])


class ReactionTestCase(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.conversation = self.make_conversation([self.mom, self.dad])
        self.message = create_message(self.conversation.id, self.dad.id, 'home by six')

    def test_toggle_twice_restores_original_state(self):
        mom = self.socket_client(self.mom, join=self.conversation.id)
        dad = self.socket_client(self.dad, join=self.conversation.id)
        payload = {'messageId': self.message.id, 'emoji': '👍'}

        first = mom.emit('toggle_reaction', payload, callback=True)
        self.assertEqual(first['reactions'], [
            {'messageId': self.message.id, 'userId': self.mom.id, 'emoji': '👍'}
        ])

        second = mom.emit('toggle_reaction', payload, callback=True)
        self.assertEqual(second['reactions'], [])

        # Room broadcast includes the actor
        for client in (mom, dad):
            updates = self.events(client.get_received(), 'reaction_updated')
            self.assertEqual(len(updates), 2)
            self.assertEqual(updates[-1], {'messageId': self.message.id, 'reactions': []})

    def test_non_member_cannot_react(self):
        kid = self.socket_client(self.kid)

        ack = kid.emit('toggle_reaction', {'messageId': self.message.id, 'emoji': '👍'}, callback=True)

        self.assertEqual(ack, {'ok': False, 'error': 'NOT_MEMBER'})
        self.assertEqual(self.message.reactions, [])

    def test_unknown_message(self):
        mom = self.socket_client(self.mom)

        ack = mom.emit('toggle_reaction', {'messageId': 'missing', 'emoji': '👍'}, callback=True)

        self.assertEqual(ack, {'ok': False, 'error': 'NOT_FOUND'})


if __name__ == '__main__':
    unittest.main()
