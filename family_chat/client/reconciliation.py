"""
Client-side reconciliation of one conversation's message list.

``ConversationView`` is a merge-by-id reducer over an ordered map. Every input
(history pages, optimistic sends, acks, live broadcasts, stream events) is
folded into the map keyed by message id, so a message is never shown twice
and local-only entries (pending or failed sends) survive server refetches.

Optimistic entries carry temporary ids of the form ``pending-<ms>-<random>``.
An ack swaps the temporary entry for the canonical stored record; a send
without an ack inside ``SEND_TIMEOUT_MS`` becomes failed and can be retried.
"""

import random
import string
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

SEND_TIMEOUT_MS = 5000
MAX_BODY_LENGTH = 4000
TEMP_ID_PREFIX = 'pending-'


def parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def make_temp_id(now_ms: int) -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=10))
    return f"{TEMP_ID_PREFIX}{now_ms}-{suffix}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)


@dataclass
class LocalMessage:
    """A message as the client shows it, with transient delivery flags"""
    id: str
    conversation_id: str
    sender_id: str
    body: str
    created_at: datetime
    sender: Optional[Dict[str, Any]] = None
    reactions: List[Dict[str, Any]] = field(default_factory=list)
    is_streaming: bool = False
    is_pending: bool = False
    is_failed: bool = False
    is_thinking: bool = False
    thinking_body: str = ''

    @property
    def is_local_only(self) -> bool:
        return self.is_pending or self.is_failed

    @classmethod
    def from_server(cls, record: Dict[str, Any]) -> 'LocalMessage':
        return cls(
            id=record['id'],
            conversation_id=record['conversationId'],
            sender_id=record['senderId'],
            body=record.get('body') or '',
            created_at=parse_timestamp(record['createdAt']),
            sender=record.get('sender'),
            reactions=list(record.get('reactions') or []),
            is_streaming=bool(record.get('isStreaming', False)),
        )


class ConversationView:
    """
    Ordered, deduplicated message list for one open conversation.

    Thread-safe: socket callbacks and send timers may call in concurrently.

    Args:
        conversation_id: the conversation shown
        current_user: user dict (``id`` plus display fields) authoring sends
        clock: epoch milliseconds, used for temporary ids and send deadlines
    """

    def __init__(self, conversation_id: str, current_user: Dict[str, Any],
                 clock: Optional[Callable[[], float]] = None):
        self.conversation_id = conversation_id
        self.current_user = current_user
        self._clock = clock or (lambda: time.time() * 1000.0)
        self._entries: 'OrderedDict[str, LocalMessage]' = OrderedDict()
        self._deadlines: Dict[str, float] = {}
        self._lock = threading.RLock()
        self.next_cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None

    def messages(self) -> List[LocalMessage]:
        """Snapshot sorted by creation time; ties keep insertion order"""
        with self._lock:
            return sorted(self._entries.values(), key=lambda m: m.created_at)

    def get(self, message_id: str) -> Optional[LocalMessage]:
        with self._lock:
            return self._entries.get(message_id)

    def _upsert_server(self, record: Dict[str, Any]) -> Optional[LocalMessage]:
        if record.get('conversationId') != self.conversation_id:
            return None
        incoming = LocalMessage.from_server(record)
        existing = self._entries.get(incoming.id)
        if existing is not None and existing.is_streaming and incoming.is_streaming:
            # Live stream state is ahead of a snapshot taken mid-stream
            if len(existing.body) >= len(incoming.body):
                incoming.body = existing.body
            incoming.is_thinking = existing.is_thinking
            incoming.thinking_body = existing.thinking_body
        self._entries[incoming.id] = incoming
        return incoming

    # History

    def replace_history(self, page: Dict[str, Any]):
        """
        Replace server-backed history with the newest page.

        Pending and failed local entries are kept, and so are entries with a
        stream still in flight.
        """
        with self._lock:
            kept = OrderedDict(
                (message_id, message) for message_id, message in self._entries.items()
                if message.is_local_only or message.is_streaming
            )
            self._entries = kept
            for record in page.get('messages', []):
                self._upsert_server(record)
            self.next_cursor = page.get('nextCursor')

    def prepend_history(self, page: Dict[str, Any]):
        """Merge an older page fetched with ``next_cursor``"""
        with self._lock:
            for record in page.get('messages', []):
                if record.get('id') not in self._entries:
                    self._upsert_server(record)
            self.next_cursor = page.get('nextCursor')

    # Sending

    def add_optimistic(self, body: str) -> LocalMessage:
        """Insert a pending local copy of a message about to be sent"""
        if not isinstance(body, str) or not body.strip():
            raise ValueError("Message body is empty")
        body = body.strip()
        if len(body) > MAX_BODY_LENGTH:
            raise ValueError(f"Message body exceeds {MAX_BODY_LENGTH} characters")

        with self._lock:
            now = self._clock()
            temp_id = make_temp_id(int(now))
            while temp_id in self._entries:
                temp_id = make_temp_id(int(now))
            message = LocalMessage(
                id=temp_id,
                conversation_id=self.conversation_id,
                sender_id=self.current_user['id'],
                body=body,
                created_at=datetime.fromtimestamp(now / 1000.0, tz=timezone.utc),
                sender=self.current_user,
                is_pending=True,
            )
            self._entries[temp_id] = message
            self._deadlines[temp_id] = now + SEND_TIMEOUT_MS
            return message

    def apply_ack(self, temp_id: str, response: Optional[Dict[str, Any]]) -> Optional[LocalMessage]:
        """
        Resolve a send with the server's ack.

        A successful ack replaces the temporary entry with the canonical
        record. If the temporary entry is gone (a refetch got there first) the
        record is inserted instead; if the record is already present the
        temporary entry is simply dropped. A failed ack marks the entry failed.
        """
        with self._lock:
            self._deadlines.pop(temp_id, None)

            if not response or not response.get('ok') or not response.get('message'):
                return self.mark_failed(temp_id)

            record = response['message']
            self._entries.pop(temp_id, None)
            existing = self._entries.get(record['id'])
            if existing is not None:
                if not existing.reactions and record.get('reactions'):
                    existing.reactions = list(record['reactions'])
                return existing
            return self._upsert_server(record)

    def mark_failed(self, temp_id: str) -> Optional[LocalMessage]:
        with self._lock:
            self._deadlines.pop(temp_id, None)
            message = self._entries.get(temp_id)
            if message is None or not message.is_pending:
                return message
            failed = replace(message, is_pending=False, is_failed=True)
            self._entries[temp_id] = failed
            return failed

    def expire_pending(self, now: Optional[float] = None) -> List[str]:
        """Fail every pending send whose deadline has passed; returns their ids"""
        with self._lock:
            now = self._clock() if now is None else now
            expired = [temp_id for temp_id, deadline in self._deadlines.items() if deadline <= now]
            for temp_id in expired:
                self.mark_failed(temp_id)
            return expired

    def retry(self, message_id: str) -> Optional[LocalMessage]:
        """
        Replace a failed entry with a fresh pending copy of the same body.

        Returns the new entry (with a new temporary id), or None when
        ``message_id`` is not a failed local message.
        """
        with self._lock:
            message = self._entries.get(message_id)
            if message is None or not message.is_failed:
                return None
            del self._entries[message_id]
            return self.add_optimistic(message.body)

    # Live events

    def apply_new_message(self, payload: Dict[str, Any]) -> Optional[LocalMessage]:
        with self._lock:
            record = payload.get('message') or {}
            if record.get('id') in self._entries:
                return self._entries[record['id']]
            return self._upsert_server(record)

    def apply_stream_start(self, payload: Dict[str, Any]) -> Optional[LocalMessage]:
        if payload.get('conversationId') != self.conversation_id:
            return None
        with self._lock:
            message_id = payload['messageId']
            think_mode = bool(payload.get('thinkMode', False))
            existing = self._entries.get(message_id)
            if existing is not None:
                existing.is_streaming = True
                existing.is_thinking = think_mode and not existing.body
                return existing

            sender = payload.get('sender') or {}
            if payload.get('createdAt'):
                created_at = parse_timestamp(payload['createdAt'])
            else:
                created_at = datetime.fromtimestamp(self._clock() / 1000.0, tz=timezone.utc)
            placeholder = LocalMessage(
                id=message_id,
                conversation_id=self.conversation_id,
                sender_id=sender.get('id', ''),
                body='',
                created_at=created_at,
                sender=sender or None,
                is_streaming=True,
                is_thinking=think_mode,
            )
            self._entries[message_id] = placeholder
            return placeholder

    def apply_stream_think_chunk(self, payload: Dict[str, Any]) -> Optional[LocalMessage]:
        with self._lock:
            message = self._entries.get(payload.get('messageId'))
            if message is None or not message.is_streaming:
                return None
            message.thinking_body += payload.get('chunk', '')
            message.is_thinking = True
            return message

    def apply_stream_chunk(self, payload: Dict[str, Any]) -> Optional[LocalMessage]:
        with self._lock:
            message = self._entries.get(payload.get('messageId'))
            if message is None or not message.is_streaming:
                return None
            message.body += payload.get('chunk', '')
            message.is_thinking = False
            return message

    def apply_stream_end(self, payload: Dict[str, Any]) -> Optional[LocalMessage]:
        """Settle on the authoritative final body; reasoning text is discarded"""
        with self._lock:
            message = self._entries.get(payload.get('messageId'))
            if message is None:
                return None
            message.body = payload.get('body', message.body)
            message.is_streaming = False
            message.is_thinking = False
            message.thinking_body = ''
            return message

    def apply_reaction_update(self, payload: Dict[str, Any]) -> Optional[LocalMessage]:
        with self._lock:
            message = self._entries.get(payload.get('messageId'))
            if message is None:
                return None
            message.reactions = list(payload.get('reactions') or [])
            return message
