"""
Family Chat - Flask Application Factory.

A small private chat service for a family: authenticated users exchange
messages in direct or group conversations over Socket.IO, with an AI
assistant member that streams its replies token by token from a local Ollama
server.

The module provides:
- Application factory (create_app) wiring configuration, database, auth,
  REST blueprints and the realtime gateway
- The shared Flask-SocketIO server (``socketio``)
- The background scheduler running the stalled-stream watchdog

Collaborators (completion provider, push sender, rate limiter, background
task runner) can be injected into ``create_app``; tests use this to run
everything inline against fakes.

Example:
    >>> from family_chat import create_app, socketio
    >>> app = create_app()
    >>> socketio.run(app, host='0.0.0.0', port=3000)
"""

import atexit

from flask import Flask
from flask_cors import CORS
from flask_login import LoginManager
from flask_socketio import SocketIO
from apscheduler.schedulers.background import BackgroundScheduler

from .config import Config
from .logger import logger
from .models import db, User

# Initialize extensions
login_manager = LoginManager()
socketio = SocketIO(async_mode='threading', cors_allowed_origins="*")
scheduler = BackgroundScheduler()


def create_app(config_overrides=None, llm_client=None, push_service=None,
               task_runner=None, rate_limiter=None):
    """
    Create and configure the Flask application.

    Args:
        config_overrides (dict, optional): values applied on top of ``Config``.
        llm_client (optional): completion provider with ``stream_chat``,
            ``list_models`` and ``is_available``; defaults to ``OllamaClient``.
        push_service (optional): push sender; defaults to ``PushService`` when
            ``PUSH_ENABLED`` is set.
        task_runner (callable, optional): ``fn(target)`` spawning background
            work; defaults to ``socketio.start_background_task``.
        rate_limiter (optional): ``RateLimiter`` for inbound sends; defaults to
            the in-memory sliding window.

    Returns:
        Flask: the configured application.
    """
    from .api import api_bp
    from .api.chat import register_chat_socketio_handlers, room_broadcaster
    from .auth import auth_bp, load_user_from_request
    from .bot.responder import BotResponder
    from .bot.watchdog import schedule_stream_watchdog
    from .commands import register_user_commands
    from .services.llm_service import OllamaClient
    from .services.push_service import PushService
    from .services.settings_service import BotSettingsService
    from .utils.error_handling import AuthenticationError, register_error_handlers
    from .utils.rate_limiter import SlidingWindowRateLimiter

    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    db.init_app(app)
    CORS(app, resources={r"/*": {"origins": app.config['ALLOWED_ORIGIN']}})
    register_error_handlers(app)

    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, user_id)

    @login_manager.request_loader
    def load_user_from_bearer(request):
        return load_user_from_request(request)

    @login_manager.unauthorized_handler
    def unauthorized():
        raise AuthenticationError("Unauthorized")

    # Initialize SocketIO before registering handlers
    socketio.init_app(app, async_mode='threading',
                      cors_allowed_origins=app.config['ALLOWED_ORIGIN'],
                      logger=False, engineio_logger=False)

    # Collaborators
    if llm_client is None:
        llm_client = OllamaClient(
            app.config['OLLAMA_HOST'],
            default_model=app.config['OLLAMA_MODEL'],
            connect_timeout=app.config['OLLAMA_CONNECT_TIMEOUT'],
        )
    if push_service is None and app.config['PUSH_ENABLED']:
        push_service = PushService(app.config['VAPID_CLAIM_EMAIL'])
    if rate_limiter is None:
        rate_limiter = SlidingWindowRateLimiter(
            max_events=app.config['SEND_RATE_LIMIT'],
            window_ms=app.config['SEND_RATE_WINDOW_MS'],
        )
    bot_settings = BotSettingsService(
        default_model=app.config['OLLAMA_MODEL'],
        default_system_prompt=app.config['BOT_SYSTEM_PROMPT'],
    )

    with app.app_context():
        db.create_all()
        bot_settings.load()
        if isinstance(push_service, PushService) and not push_service.initialized:
            try:
                push_service.init()
            except Exception as e:
                db.session.rollback()
                logger.warning(f"[WARNING] Push service failed to initialize: {e}")

    broadcast = room_broadcaster(socketio)
    responder = BotResponder(
        llm_client=llm_client,
        settings_service=bot_settings,
        broadcast=broadcast,
        bot_user_id=app.config['BOT_USER_ID'],
        history_limit=app.config['BOT_HISTORY_LIMIT'],
    )

    app.llm_client = llm_client  # type: ignore
    app.push_service = push_service  # type: ignore
    app.bot_settings = bot_settings  # type: ignore
    app.bot_responder = responder  # type: ignore
    app.rate_limiter = rate_limiter  # type: ignore

    app.connection_registry = register_chat_socketio_handlers(  # type: ignore
        socketio, app,
        rate_limiter=rate_limiter,
        responder=responder,
        push_service=push_service,
        task_runner=task_runner,
    )

    # Register blueprints
    app.register_blueprint(auth_bp)
    app.register_blueprint(api_bp)

    register_user_commands(app)

    # Start the stalled-stream watchdog
    if app.config['STREAM_WATCHDOG_ENABLED'] and not app.config['TESTING']:
        try:
            schedule_stream_watchdog(app, scheduler, responder, broadcast)
            if not scheduler.running:
                scheduler.start()
                atexit.register(lambda: scheduler.shutdown() if scheduler.running else None)
            logger.info("[OK] Background scheduler started")
        except Exception as e:
            logger.warning(f"[WARNING] Background scheduler failed to start: {e}")

    logger.info(f"{Config.APP_NAME} {Config.VERSION} application created")
    return app


# Export socketio for use in run.py
__all__ = ['create_app', 'socketio', 'db']
