"""
Realtime Gateway: Socket.IO event handlers for family chat.

Every connection is bound to one authenticated user at handshake time and can
join the rooms of conversations that user belongs to. Sends follow a fixed
protocol: validate, admit, check membership, persist, broadcast to the room
(without the sending connection), acknowledge the sender with the stored
record, then hand push fan-out and the bot off to background tasks.

Client to Server:
    - 'join_room' {conversationId}
    - 'leave_room' {conversationId}
    - 'send_message' {conversationId, body} with ack callback
    - 'typing_start' / 'typing_stop' {conversationId}
    - 'toggle_reaction' {messageId, emoji}

Server to Client:
    - 'new_message' {message}
    - 'message_stream_start' / 'message_stream_think_chunk' /
      'message_stream_chunk' / 'message_stream_end'
    - 'user_typing' / 'user_stopped_typing' {userId, displayName, conversationId}
    - 'reaction_updated' {messageId, reactions}
    - 'error' {code, message}
    - 'bot_error' {message}

Concurrency:
    Handlers may run on several threads. A per-user lock makes one user's
    sends atomic relative to each other, and a per-conversation lock held
    across persist and broadcast keeps broadcast order equal to persistence
    order. Locks are always taken user first, then conversation.
"""

import threading
from typing import Any, Callable, Dict, Optional, Set

from flask import request
from flask_socketio import ConnectionRefusedError, emit, join_room, leave_room

from ...auth import bearer_token_from_header, verify_token
from ...logger import log_error, log_info, log_rejection, log_socket_event, log_warning
from ...models import db, Conversation
from ...services.conversation_service import require_membership
from ...services.message_service import create_message, get_message, toggle_reaction
from ...utils.error_handling import ErrorCode, NotMemberError
from ...utils.locks import KeyedLocks
from .message_processor import (
    build_push_payload, extract_conversation_id, push_recipients,
    validate_reaction_payload, validate_send_payload
)


class ConnectionRegistry:
    """
    Identity and room bookkeeping for live connections, keyed by session id.

    Socket.IO keeps its own room membership; this registry mirrors it so the
    gateway can tell whether a connection has joined a conversation.
    """

    def __init__(self):
        self._identities: Dict[str, Dict[str, str]] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def add_connection(self, sid: str, identity: Dict[str, str]):
        with self._lock:
            self._identities[sid] = identity
            self._rooms[sid] = set()

    def remove_connection(self, sid: str) -> Optional[Dict[str, str]]:
        with self._lock:
            self._rooms.pop(sid, None)
            return self._identities.pop(sid, None)

    def get_identity(self, sid: str) -> Optional[Dict[str, str]]:
        with self._lock:
            return self._identities.get(sid)

    def join(self, sid: str, conversation_id: str):
        with self._lock:
            self._rooms.setdefault(sid, set()).add(conversation_id)

    def leave(self, sid: str, conversation_id: str):
        with self._lock:
            self._rooms.get(sid, set()).discard(conversation_id)

    def in_room(self, sid: str, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._rooms.get(sid, ())

    def connection_count(self) -> int:
        with self._lock:
            return len(self._identities)


def _failure(code: str) -> Dict[str, Any]:
    return {'ok': False, 'error': code}


def register_chat_socketio_handlers(socketio, app, rate_limiter, responder,
                                    push_service=None,
                                    task_runner: Optional[Callable] = None,
                                    should_bot_respond: Optional[Callable] = None):
    """
    Register the gateway handlers on ``socketio``.

    Args:
        socketio: the Flask-SocketIO server
        app: Flask app, pushed as context inside background tasks
        rate_limiter: ``RateLimiter`` consulted for every send
        responder: ``BotResponder`` run in the background when triggered
        push_service: optional ``PushService`` for offline notifications
        task_runner: ``fn(target, *args)`` spawning background work;
            defaults to ``socketio.start_background_task``
        should_bot_respond: trigger policy, defaults to the bot policy

    Returns:
        The ``ConnectionRegistry`` tracking live connections.
    """
    from ...bot.policy import should_bot_respond as default_policy

    registry = ConnectionRegistry()
    user_locks = KeyedLocks()
    conversation_locks = KeyedLocks()
    run_task = task_runner or socketio.start_background_task
    bot_policy = should_bot_respond or default_policy
    max_length = app.config['MAX_MESSAGE_LENGTH']

    def spawn(target, *args):
        """Run ``target`` in the background with an app context and an error boundary"""
        def guarded():
            with app.app_context():
                try:
                    target(*args)
                except Exception as e:
                    db.session.rollback()
                    log_error(f"Background task {target.__name__} failed: {e}", exc_info=True)
        run_task(guarded)

    def notify_members(conversation_id: str, sender_id: str, sender_name: str, body: str):
        if push_service is None:
            return
        conversation = db.session.get(Conversation, conversation_id)
        if conversation is None:
            return
        recipients = push_recipients(conversation, sender_id)
        if not recipients:
            return
        try:
            push_service.send_push_to_users(recipients, build_push_payload(sender_name, conversation, body))
        except Exception as e:
            log_warning(f"Push fan-out failed for conversation {conversation_id}: {e}")

    def maybe_run_bot(conversation_id: str, body: str):
        if bot_policy(conversation_id, body):
            responder.respond(conversation_id)

    def current_identity():
        return registry.get_identity(request.sid)

    def reject_not_member(event: str, user_id: str, error: NotMemberError):
        log_rejection(event, user_id, error.code)
        emit('error', {'code': error.code, 'message': error.message})
        return _failure(error.code)

    @socketio.on('connect')
    def handle_connect(auth=None):
        """Authenticate the handshake; refusing it disconnects the client"""
        token = None
        if isinstance(auth, dict):
            token = auth.get('token')
        if not token:
            token = bearer_token_from_header(request.headers.get('Authorization'))
        if not token:
            log_socket_event('connect refused', request.sid, detail=f"no credentials from {request.remote_addr}")
            raise ConnectionRefusedError('Authentication required')

        user = verify_token(token)
        if user is None:
            log_socket_event('connect refused', request.sid, detail=f"invalid token from {request.remote_addr}")
            raise ConnectionRefusedError('Invalid token')

        registry.add_connection(request.sid, {
            'userId': user.id,
            'username': user.username,
            'displayName': user.display_name,
        })
        log_socket_event('connect', request.sid, user.id, user.display_name)

    @socketio.on('disconnect')
    def handle_disconnect(reason=None):
        identity = registry.remove_connection(request.sid)
        if identity:
            log_socket_event('disconnect', request.sid, identity['userId'], reason)

    @socketio.on('join_room')
    def handle_join_room(data):
        identity = current_identity()
        conversation_id = extract_conversation_id(data)
        if identity is None or conversation_id is None:
            emit('error', {'code': ErrorCode.INVALID_PAYLOAD, 'message': 'conversationId required'})
            return

        try:
            require_membership(identity['userId'], conversation_id)
        except NotMemberError as e:
            reject_not_member('join_room', identity['userId'], e)
            return
        except Exception as e:
            db.session.rollback()
            log_error(f"join_room membership check failed: {e}")
            emit('error', {'code': ErrorCode.INTERNAL_ERROR, 'message': 'Internal server error'})
            return

        join_room(conversation_id)
        registry.join(request.sid, conversation_id)
        log_socket_event('join_room', request.sid, identity['userId'], conversation_id)

    @socketio.on('leave_room')
    def handle_leave_room(data):
        conversation_id = extract_conversation_id(data)
        if conversation_id is None:
            return
        leave_room(conversation_id)
        registry.leave(request.sid, conversation_id)

    @socketio.on('send_message')
    def handle_send_message(data):
        """Persist, broadcast and acknowledge one message; the return value is the ack"""
        identity = current_identity()
        if identity is None:
            return _failure(ErrorCode.UNAUTHORIZED)

        validation = validate_send_payload(data, max_length)
        if not validation['valid']:
            log_rejection('send_message', identity['userId'], validation['code'])
            return _failure(validation['code'])

        user_id = identity['userId']
        conversation_id = validation['conversation_id']
        body = validation['body']

        try:
            with user_locks.hold(user_id):
                if not rate_limiter.admit(user_id):
                    log_rejection('send_message', user_id, ErrorCode.RATE_LIMITED)
                    return _failure(ErrorCode.RATE_LIMITED)

                require_membership(user_id, conversation_id)

                with conversation_locks.hold(conversation_id):
                    message = create_message(conversation_id, user_id, body)
                    record = message.to_dict(include_reactions=False)
                    record['reactions'] = []
                    emit('new_message', {'message': record}, to=conversation_id, include_self=False)
        except NotMemberError as e:
            return reject_not_member('send_message', user_id, e)
        except Exception as e:
            db.session.rollback()
            log_error(f"send_message failed for {user_id} in {conversation_id}: {e}", exc_info=True)
            return _failure(ErrorCode.INTERNAL_ERROR)

        spawn(notify_members, conversation_id, user_id, identity['displayName'], body)
        spawn(maybe_run_bot, conversation_id, body)

        return {'ok': True, 'message': record}

    @socketio.on('typing_start')
    def handle_typing_start(data):
        _relay_typing('user_typing', data)

    @socketio.on('typing_stop')
    def handle_typing_stop(data):
        _relay_typing('user_stopped_typing', data)

    def _relay_typing(event: str, data):
        identity = current_identity()
        conversation_id = extract_conversation_id(data)
        if identity is None or conversation_id is None:
            return
        if not registry.in_room(request.sid, conversation_id):
            return
        emit(event, {
            'userId': identity['userId'],
            'displayName': identity['displayName'],
            'conversationId': conversation_id,
        }, to=conversation_id, include_self=False)

    @socketio.on('toggle_reaction')
    def handle_toggle_reaction(data):
        identity = current_identity()
        if identity is None:
            return _failure(ErrorCode.UNAUTHORIZED)

        validation = validate_reaction_payload(data)
        if not validation['valid']:
            return _failure(validation['code'])

        user_id = identity['userId']
        message_id = validation['message_id']

        try:
            message = get_message(message_id)
            if message is None:
                emit('error', {'code': ErrorCode.NOT_FOUND, 'message': 'Message not found'})
                return _failure(ErrorCode.NOT_FOUND)

            conversation_id = message.conversation_id
            require_membership(user_id, conversation_id)

            with conversation_locks.hold(conversation_id):
                reactions = toggle_reaction(message_id, user_id, validation['emoji'])
                socketio.emit('reaction_updated', {
                    'messageId': message_id,
                    'reactions': reactions,
                }, to=conversation_id)
        except NotMemberError as e:
            return reject_not_member('toggle_reaction', user_id, e)
        except Exception as e:
            db.session.rollback()
            log_error(f"toggle_reaction failed for {user_id} on {message_id}: {e}", exc_info=True)
            return _failure(ErrorCode.INTERNAL_ERROR)

        return {'ok': True, 'reactions': reactions}

    log_info("Chat WebSocket handlers registered")
    return registry


def room_broadcaster(socketio):
    """``broadcast(event, payload, room)`` usable from background threads"""
    def broadcast(event: str, payload: dict, room: str):
        socketio.emit(event, payload, to=room)
    return broadcast
