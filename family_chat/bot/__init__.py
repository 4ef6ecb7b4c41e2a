"""
AI assistant participant: trigger policy, prompt composition, the streaming
responder and the stalled-stream watchdog.
"""

from .policy import should_bot_respond, mentions_bot
from .prompt import build_prompt
from .responder import BotResponder, BOT_UNAVAILABLE_MESSAGE

__all__ = ['should_bot_respond', 'mentions_bot', 'build_prompt', 'BotResponder',
           'BOT_UNAVAILABLE_MESSAGE']
