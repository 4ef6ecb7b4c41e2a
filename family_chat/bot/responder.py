"""
Bot Responder
Runs one streamed assistant reply from history gathering to final persistence.

A run moves through gather, compose, placeholder, stream and finalize. Any
failure ends the run: the partial body is kept with ``isStreaming`` still set,
and the room receives a non-fatal ``bot_error`` notice. The stalled-stream
watchdog later finalizes such messages.

A run that goes quiet for too long can be abandoned by the watchdog while it
is still alive. From then on the watchdog owns the message: the run stops at
its next chunk and never writes or broadcasts again.
"""

import threading
import time
from typing import Callable, Dict, Optional

from ..logger import get_logger
from ..models import db, generate_id, isoformat_utc
from ..services.llm_service import THINKING
from ..services.message_service import create_message, get_recent_messages, update_message
from .prompt import build_prompt

logger = get_logger('bot')

BOT_UNAVAILABLE_MESSAGE = "AI assistant is unavailable right now."

# broadcast(event, payload, room)
Broadcast = Callable[[str, dict, str], None]


class StreamRun:
    """Live state of one reply; ``lock`` orders chunk broadcasts against abandonment"""

    def __init__(self, started_at: float):
        self.last_activity = started_at
        self.body = ''
        self.abandoned = False
        self.completed = False
        self.lock = threading.Lock()


class BotResponder:
    """
    Streams assistant replies into a conversation room.

    Args:
        llm_client: object exposing ``stream_chat(messages, think, model)``
        settings_service: ``BotSettingsService`` read once per run
        broadcast: callable emitting an event to a room
        bot_user_id: id of the bot user that authors replies
        history_limit: number of finished messages used as context
        clock: monotonic seconds, used for run activity tracking
    """

    def __init__(self, llm_client, settings_service, broadcast: Broadcast,
                 bot_user_id: str, history_limit: int = 20,
                 clock: Optional[Callable[[], float]] = None):
        self.llm_client = llm_client
        self.settings_service = settings_service
        self.broadcast = broadcast
        self.bot_user_id = bot_user_id
        self.history_limit = history_limit
        self._clock = clock or time.monotonic
        self._active_runs: Dict[str, StreamRun] = {}
        self._runs_lock = threading.Lock()

    def is_active(self, message_id: str) -> bool:
        with self._runs_lock:
            return message_id in self._active_runs

    def seconds_since_activity(self, message_id: str) -> Optional[float]:
        with self._runs_lock:
            run = self._active_runs.get(message_id)
        return None if run is None else self._clock() - run.last_activity

    def abandon_if_stalled(self, message_id: str, stall_timeout: float) -> Optional[str]:
        """
        Take over a run that has been silent for ``stall_timeout`` seconds.

        Returns the body already streamed to clients, or None when the run is
        gone, finishing, or still producing output.
        """
        with self._runs_lock:
            run = self._active_runs.get(message_id)
        if run is None:
            return None
        with run.lock:
            if run.completed or run.abandoned:
                return None
            if self._clock() - run.last_activity < stall_timeout:
                return None
            run.abandoned = True
            return run.body

    def _start(self, message_id: str) -> StreamRun:
        run = StreamRun(self._clock())
        with self._runs_lock:
            self._active_runs[message_id] = run
        return run

    def _touch(self, message_id: str):
        with self._runs_lock:
            run = self._active_runs.get(message_id)
            if run is None:
                run = self._active_runs[message_id] = StreamRun(self._clock())
        run.last_activity = self._clock()

    def _finish(self, message_id: str):
        with self._runs_lock:
            self._active_runs.pop(message_id, None)

    def respond(self, conversation_id: str) -> Optional[str]:
        """
        Produce one reply in ``conversation_id``.

        Never raises. Returns the bot message id, or None if the run failed
        before the placeholder existed.
        """
        message_id = None
        run = None
        try:
            settings = self.settings_service.snapshot()

            history = list(reversed(get_recent_messages(conversation_id, self.history_limit)))
            prompt = build_prompt(settings.system_prompt, history)

            # Registered before the row exists so the watchdog never sees it as orphaned
            pending_id = generate_id()
            run = self._start(pending_id)
            try:
                placeholder = create_message(conversation_id, self.bot_user_id, '',
                                             is_streaming=True, message_id=pending_id)
            except Exception:
                self._finish(pending_id)
                raise
            message_id = pending_id

            self.broadcast('message_stream_start', {
                'messageId': message_id,
                'conversationId': conversation_id,
                'sender': placeholder.sender.to_dict() if placeholder.sender else None,
                'thinkMode': settings.think_mode,
                'createdAt': isoformat_utc(placeholder.created_at),
            }, conversation_id)

            for chunk in self.llm_client.stream_chat(prompt, think=settings.think_mode,
                                                     model=settings.model):
                with run.lock:
                    if run.abandoned:
                        break
                    run.last_activity = self._clock()
                    if chunk.kind == THINKING:
                        if settings.think_mode:
                            self.broadcast('message_stream_think_chunk', {
                                'messageId': message_id,
                                'chunk': chunk.text,
                            }, conversation_id)
                        continue

                    run.body += chunk.text
                    self.broadcast('message_stream_chunk', {
                        'messageId': message_id,
                        'chunk': chunk.text,
                    }, conversation_id)

            with run.lock:
                if run.abandoned:
                    logger.warning(f"Bot reply {message_id} resumed after the watchdog finalized it; "
                                   f"dropping the rest of the stream")
                    return message_id
                run.completed = True

            update_message(message_id, body=run.body, is_streaming=False)
            self.broadcast('message_stream_end', {
                'messageId': message_id,
                'body': run.body,
            }, conversation_id)
            logger.info(f"Bot reply {message_id} finished in conversation {conversation_id} "
                        f"({len(run.body)} chars)")
            return message_id

        except Exception as e:
            logger.error(f"Bot response failed in conversation {conversation_id}: {e}", exc_info=True)
            db.session.rollback()
            if run is not None:
                with run.lock:
                    if run.abandoned:
                        return message_id
                    run.completed = True
            if message_id is not None and run.body:
                self._save_partial(message_id, run.body)
            self._notify_failure(conversation_id)
            return message_id

        finally:
            if message_id is not None:
                self._finish(message_id)

    def _save_partial(self, message_id: str, body: str):
        try:
            update_message(message_id, body=body)
        except Exception as e:
            logger.error(f"Could not save partial bot reply {message_id}: {e}")

    def _notify_failure(self, conversation_id: str):
        try:
            self.broadcast('bot_error', {'message': BOT_UNAVAILABLE_MESSAGE}, conversation_id)
        except Exception as e:
            logger.error(f"Could not broadcast bot_error to {conversation_id}: {e}")
