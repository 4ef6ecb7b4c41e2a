"""
Realtime chat client.

Binds a ``ConversationView`` to the server: the REST API (via requests) for
history, and a python-socketio connection for sends and live events. Each
send arms a timer that fails the optimistic entry when no ack arrives within
``send_timeout`` seconds. Reconnecting rejoins the room and refetches history.

Example:
    >>> client = RealtimeChatClient('http://localhost:3000', token)
    >>> client.connect()
    >>> view = client.open_conversation(conversation_id, me)
    >>> client.send('hello')
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

import requests
import socketio
from socketio.exceptions import SocketIOError

from .reconciliation import ConversationView, SEND_TIMEOUT_MS

logger = logging.getLogger(__name__)

TYPING_IDLE_SECONDS = 2.0
HISTORY_PAGE_SIZE = 50


class TypingNotifier:
    """
    Turns keystrokes into ``typing_start`` / ``typing_stop`` signals.

    ``typing_start`` goes out once when typing begins; ``typing_stop`` after
    ``idle_seconds`` without a keystroke, or immediately on ``stop()``.
    """

    def __init__(self, emit: Callable[[str], None], idle_seconds: float = TYPING_IDLE_SECONDS,
                 timer_factory=threading.Timer):
        self._emit = emit
        self.idle_seconds = idle_seconds
        self._timer_factory = timer_factory
        self._timer = None
        self._typing = False
        self._lock = threading.Lock()

    @property
    def is_typing(self) -> bool:
        return self._typing

    def keystroke(self):
        with self._lock:
            if not self._typing:
                self._typing = True
                self._emit('typing_start')
            if self._timer is not None:
                self._timer.cancel()
            self._timer = self._timer_factory(self.idle_seconds, self.stop)
            self._timer.daemon = True
            self._timer.start()

    def stop(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._typing:
                self._typing = False
                self._emit('typing_stop')


class RealtimeChatClient:
    """
    Client for one user, showing one conversation at a time.

    Args:
        server_url: base URL of the chat server
        token: bearer token from ``/auth/login``
        session: optional ``requests.Session`` for the REST calls
        sio: optional ``socketio.Client``
        send_timeout: seconds before an unacknowledged send is failed
        on_change: called with the view after every applied update
    """

    def __init__(self, server_url: str, token: str, session: Optional[requests.Session] = None,
                 sio: Optional[socketio.Client] = None,
                 send_timeout: float = SEND_TIMEOUT_MS / 1000.0,
                 on_change: Optional[Callable[[ConversationView], None]] = None,
                 timer_factory=threading.Timer):
        self.server_url = server_url.rstrip('/')
        self.token = token
        self.session = session or requests.Session()
        self.session.headers['Authorization'] = f"Bearer {token}"
        self.sio = sio or socketio.Client(reconnection=True)
        self.send_timeout = send_timeout
        self.on_change = on_change
        self._timer_factory = timer_factory
        self._send_timers: Dict[str, Any] = {}
        self._timers_lock = threading.Lock()
        self.view: Optional[ConversationView] = None
        self.typing_users: Dict[str, str] = {}
        self.last_error: Optional[Dict[str, Any]] = None
        self.bot_notice: Optional[str] = None
        self.typing = TypingNotifier(self._emit_typing, timer_factory=timer_factory)
        self._register_handlers()

    # Connection

    def connect(self, wait_timeout: float = 10):
        self.sio.connect(
            self.server_url,
            auth={'token': self.token},
            headers={'Authorization': f"Bearer {self.token}"},
            wait_timeout=wait_timeout,
        )

    def close(self):
        with self._timers_lock:
            for timer in self._send_timers.values():
                timer.cancel()
            self._send_timers.clear()
        self.typing.stop()
        if self.view is not None and self.sio.connected:
            self.sio.emit('leave_room', {'conversationId': self.view.conversation_id})
        self.sio.disconnect()

    def _register_handlers(self):
        self.sio.on('connect', self._on_connect)
        self.sio.on('new_message', self._routed('apply_new_message'))
        self.sio.on('message_stream_start', self._routed('apply_stream_start'))
        self.sio.on('message_stream_think_chunk', self._routed('apply_stream_think_chunk'))
        self.sio.on('message_stream_chunk', self._routed('apply_stream_chunk'))
        self.sio.on('message_stream_end', self._routed('apply_stream_end'))
        self.sio.on('reaction_updated', self._routed('apply_reaction_update'))
        self.sio.on('user_typing', self._on_user_typing)
        self.sio.on('user_stopped_typing', self._on_user_stopped_typing)
        self.sio.on('error', self._on_error)
        self.sio.on('bot_error', self._on_bot_error)

    def _notify(self):
        if self.on_change is not None and self.view is not None:
            self.on_change(self.view)

    def _routed(self, method_name: str):
        def handler(payload):
            if self.view is None:
                return
            if getattr(self.view, method_name)(payload) is not None:
                self._notify()
        return handler

    def _on_connect(self):
        # Also fires on reconnect: rooms are per connection, so rejoin and catch up
        if self.view is None:
            return
        self.sio.emit('join_room', {'conversationId': self.view.conversation_id})
        try:
            self.fetch_history()
        except requests.exceptions.RequestException as e:
            logger.warning(f"History refetch after reconnect failed: {e}")

    def _on_user_typing(self, payload):
        if self.view is None or payload.get('conversationId') != self.view.conversation_id:
            return
        if payload.get('userId') == self.view.current_user.get('id'):
            return
        self.typing_users[payload['userId']] = payload.get('displayName', '')
        self._notify()

    def _on_user_stopped_typing(self, payload):
        if self.view is None or payload.get('conversationId') != self.view.conversation_id:
            return
        if self.typing_users.pop(payload.get('userId'), None) is not None:
            self._notify()

    def _on_error(self, payload):
        self.last_error = payload
        logger.warning(f"Server error event: {payload}")

    def _on_bot_error(self, payload):
        self.bot_notice = payload.get('message')
        self._notify()

    # Conversation

    def open_conversation(self, conversation_id: str, current_user: Dict[str, Any]) -> ConversationView:
        if self.view is not None and self.sio.connected:
            self.sio.emit('leave_room', {'conversationId': self.view.conversation_id})
        self.view = ConversationView(conversation_id, current_user)
        self.typing_users = {}
        if self.sio.connected:
            self.sio.emit('join_room', {'conversationId': conversation_id})
        self.fetch_history()
        return self.view

    def _get_messages(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        params = {'conversationId': self.view.conversation_id, 'limit': HISTORY_PAGE_SIZE}
        if cursor:
            params['cursor'] = cursor
        response = self.session.get(f"{self.server_url}/messages", params=params, timeout=10)
        response.raise_for_status()
        return response.json()

    def fetch_history(self):
        """Refetch the newest page, keeping pending and failed local sends"""
        self.view.replace_history(self._get_messages())
        self._notify()

    def load_more(self) -> bool:
        if self.view is None or not self.view.has_more:
            return False
        self.view.prepend_history(self._get_messages(self.view.next_cursor))
        self._notify()
        return True

    # Sending

    def send(self, body: str):
        """Optimistically show ``body`` and send it; returns the pending entry"""
        self.typing.stop()
        message = self.view.add_optimistic(body)
        self._submit(message)
        return message

    def retry(self, message_id: str):
        message = self.view.retry(message_id)
        if message is not None:
            self._submit(message)
        return message

    def _submit(self, message):
        temp_id = message.id
        timer = self._timer_factory(self.send_timeout, self._on_send_timeout, args=[temp_id])
        timer.daemon = True
        with self._timers_lock:
            self._send_timers[temp_id] = timer
        timer.start()
        self._notify()

        try:
            self.sio.emit(
                'send_message',
                {'conversationId': self.view.conversation_id, 'body': message.body},
                callback=lambda response: self._on_ack(temp_id, response),
            )
        except SocketIOError as e:
            # Disconnected: fail now so the entry can be retried after reconnect
            logger.warning(f"Send of {temp_id} failed: {e}")
            self._cancel_timer(temp_id)
            if self.view.mark_failed(temp_id) is not None:
                self._notify()

    def _cancel_timer(self, temp_id: str):
        with self._timers_lock:
            timer = self._send_timers.pop(temp_id, None)
        if timer is not None:
            timer.cancel()

    def _on_send_timeout(self, temp_id: str):
        with self._timers_lock:
            self._send_timers.pop(temp_id, None)
        if self.view is not None and self.view.mark_failed(temp_id) is not None:
            self._notify()

    def _on_ack(self, temp_id: str, response):
        self._cancel_timer(temp_id)
        if self.view is not None:
            self.view.apply_ack(temp_id, response)
            self._notify()

    def toggle_reaction(self, message_id: str, emoji: str):
        self.sio.emit('toggle_reaction', {'messageId': message_id, 'emoji': emoji})

    def _emit_typing(self, event: str):
        if self.view is not None and self.sio.connected:
            self.sio.emit(event, {'conversationId': self.view.conversation_id})
