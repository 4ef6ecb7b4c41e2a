"""
Python client for Family Chat: the message reconciliation engine and a
realtime client built on it.
"""

from .reconciliation import ConversationView, LocalMessage, SEND_TIMEOUT_MS
from .realtime_client import RealtimeChatClient, TypingNotifier

__all__ = ['ConversationView', 'LocalMessage', 'SEND_TIMEOUT_MS',
           'RealtimeChatClient', 'TypingNotifier']
