"""
Starlette-based web server for the wabot WhatsApp bot.

This server provides a REST API with the following endpoints:
- /: Running/connected summary
- /qr: Pending pairing QR code (requires an admin key)
- /status: Connection state and uptime
- /send-message: Send a text message through the live session
- /session, /session/reset: Inspect or reset the persisted session
- /responses: Edit the keyword response table
- /health, /ready, /info: Monitoring

The session manager is created at startup and stored on app.state.
"""

import contextlib
import os
import sys
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route

from wabot.config import Config
from wabot.core.commands import CommandDispatcher
from wabot.core.keepalive import KeepAlivePinger
from wabot.core.session_manager import SessionManager
from wabot.database import ResponseStore, get_response_store, get_session_store
from wabot.logger import get_logger, setup_logging
from wabot.middleware import APIKeyAuthMiddleware, RequestLoggingMiddleware
from wabot.routes.bot_routes import get_qr, get_status, index, send_message
from wabot.routes.health_routes import get_system_info, health_check, readiness_check
from wabot.routes.response_routes import delete_response, list_responses, set_response
from wabot.routes.session_routes import get_session, reset_session
from wabot.session.synchronizer import SessionSynchronizer

# Setup logging
if "--debug" in sys.argv:
    os.environ["LOG_LEVEL"] = "DEBUG"

log_level = os.getenv("LOG_LEVEL", "INFO")
setup_logging(level=log_level, log_file=os.getenv("LOG_FILE"))

logger = get_logger(__name__)


def build_session_manager(response_store: ResponseStore) -> SessionManager:
    """Wire the production session manager from configuration."""
    from wabot.channels.whatsapp import WhatsAppClient

    missing = Config.missing_store_settings()
    if missing:
        logger.warning(
            f"Session store settings missing ({', '.join(missing)}); using {Config.database_url()}"
        )

    store = get_session_store()
    try:
        store.ensure_schema()
    except Exception as e:
        logger.error(f"Failed to prepare session store schema: {e}")

    dispatcher = CommandDispatcher(response_store=response_store)
    manager = SessionManager(
        synchronizer=SessionSynchronizer(store, Config.SESSION_ID),
        client_factory=WhatsAppClient,
        dispatcher=dispatcher,
        auth_dir=Config.AUTH_DIR,
    )
    dispatcher.state_provider = lambda: manager.state
    return manager


def create_app(
    session_manager: Optional[SessionManager] = None,
    response_store: Optional[ResponseStore] = None,
    api_keys: Optional[list] = None,
) -> Starlette:
    """
    Build the application.

    Tests pass a session manager wired to fakes; production builds one from
    the environment on startup.
    """

    keys = Config.ADMIN_API_KEYS if api_keys is None else api_keys
    if not keys:
        logger.warning(
            "ADMIN_API_KEYS is not set; only /, /health and /ready will be served"
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Application startup - initializing services")

        if app.state.response_store is None:
            app.state.response_store = get_response_store()
        if app.state.session_manager is None:
            app.state.session_manager = build_session_manager(app.state.response_store)

        keepalive = None
        if Config.KEEPALIVE_URL:
            keepalive = KeepAlivePinger(Config.KEEPALIVE_URL, Config.KEEPALIVE_INTERVAL)
            await keepalive.start()

        try:
            await app.state.session_manager.start()
        except Exception as e:
            logger.error(f"Failed to start WhatsApp session: {e}")

        yield

        logger.info("Application shutdown - cleaning up services")
        if keepalive:
            await keepalive.stop()
        await app.state.session_manager.stop()

    app = Starlette(
        debug=False,
        routes=[
            Route("/", index, methods=["GET"]),
            Route("/qr", get_qr, methods=["GET"]),
            Route("/status", get_status, methods=["GET"]),
            Route("/send-message", send_message, methods=["POST"]),
            Route("/session", get_session, methods=["GET"]),
            Route("/session/reset", reset_session, methods=["POST"]),
            Route("/responses", list_responses, methods=["GET"]),
            Route("/responses/{keyword}", set_response, methods=["PUT"]),
            Route("/responses/{keyword}", delete_response, methods=["DELETE"]),
            Route("/health", health_check, methods=["GET"]),
            Route("/ready", readiness_check, methods=["GET"]),
            Route("/info", get_system_info, methods=["GET"]),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["*"],
                allow_headers=["*"],
            ),
            Middleware(
                APIKeyAuthMiddleware,
                api_keys=keys,
            ),
            Middleware(RequestLoggingMiddleware),
        ],
        lifespan=lifespan,
    )
    app.state.session_manager = session_manager
    app.state.response_store = response_store
    return app


app = create_app()


def main(host: Optional[str] = None, port: Optional[int] = None):
    """Run the server with uvicorn."""
    import uvicorn

    host = host or Config.HOST
    port = port or Config.PORT
    logger.info(f"Starting wabot server on http://{host}:{port}")
    uvicorn.run(
        app, host=host, port=port, log_level=log_level.lower(), log_config=None
    )


if __name__ == "__main__":
    main()
