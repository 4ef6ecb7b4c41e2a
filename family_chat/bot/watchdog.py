"""
Stalled-stream watchdog.

Finalizes bot messages left with ``isStreaming`` set: either the run that owns
them is gone (provider failure, process restart) or it has produced nothing
for longer than the stall timeout. Clients waiting on such a message receive
``message_stream_end`` with ``failed: true`` and the body they already hold.
A silent run is abandoned first, so a provider that resumes later cannot
write to the finalized message.
"""

import logging
from typing import List

from apscheduler.triggers.interval import IntervalTrigger

from ..models import db
from ..services.message_service import get_streaming_messages

logger = logging.getLogger(__name__)

UNFINISHED_REPLY_BODY = "_(The assistant did not finish this reply.)_"
WATCHDOG_JOB_ID = 'stream_watchdog'


def reconcile_stalled_streams(responder, broadcast, stall_timeout: float) -> List[str]:
    """Finalize stalled streaming messages; returns the finalized ids"""
    finalized = []
    for message in get_streaming_messages():
        if responder is not None and responder.is_active(message.id):
            streamed = responder.abandon_if_stalled(message.id, stall_timeout)
            if streamed is None:
                continue
            # Clients hold exactly what was broadcast; the row has only the placeholder
            message.body = streamed or message.body

        message.is_streaming = False
        if not message.body:
            message.body = UNFINISHED_REPLY_BODY
        db.session.commit()
        finalized.append(message.id)

        broadcast('message_stream_end', {
            'messageId': message.id,
            'body': message.body,
            'failed': True,
        }, message.conversation_id)
        logger.warning(f"Finalized stalled bot reply {message.id} "
                       f"in conversation {message.conversation_id}")
    return finalized


def schedule_stream_watchdog(app, scheduler, responder, broadcast):
    """Register the periodic watchdog job on an APScheduler scheduler"""
    interval = app.config['STREAM_WATCHDOG_INTERVAL']
    stall_timeout = app.config['STREAM_STALL_TIMEOUT']

    def run_watchdog():
        with app.app_context():
            try:
                reconcile_stalled_streams(responder, broadcast, stall_timeout)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Stream watchdog run failed: {e}", exc_info=True)

    scheduler.add_job(
        func=run_watchdog,
        trigger=IntervalTrigger(seconds=interval),
        id=WATCHDOG_JOB_ID,
        name='Finalize stalled bot streams',
        replace_existing=True,
    )
    logger.info(f"Stream watchdog scheduled every {interval}s (stall timeout {stall_timeout}s)")
    return run_watchdog
