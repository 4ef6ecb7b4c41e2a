"""
Entry point for the Family Chat server.

Creates the application and serves HTTP and Socket.IO on one port.

Example:
    $ flask --app run seed        # once: bot user and admin account
    $ python run.py

    Or with environment variables:

    $ FAMILY_CHAT_PORT=3001 OLLAMA_HOST=http://gpu-box:11434 python run.py
"""

import signal
import sys

from family_chat import create_app, scheduler, socketio
from family_chat.config import Config
from family_chat.logger import log_info, log_warning

app = create_app()


def shutdown(signum, frame):
    """Stop the watchdog scheduler and exit; open sockets close with the process"""
    log_info(f"[SIGNAL] Received signal {signum}, shutting down")
    if scheduler.running:
        scheduler.shutdown(wait=False)
    sys.exit(0)


def main():
    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    if not app.llm_client.is_available():  # type: ignore
        log_warning(f"Ollama is not reachable at {Config.OLLAMA_HOST}; "
                    f"the assistant will report itself unavailable until it is")

    log_info(f"[STARTUP] Family Chat listening on http://{Config.HOST}:{Config.PORT}")
    socketio.run(app, debug=Config.DEBUG, host=Config.HOST, port=Config.PORT,
                 allow_unsafe_werkzeug=True, use_reloader=False)


if __name__ == '__main__':
    main()
