# =============================================================================
# Trifecta Overlay - FastAPI Relay Application
# =============================================================================
# Defines the relay's HTTP and WebSocket endpoints.  Edge clients connect to
# /ws, stream compressed frames, and receive merged inference annotations.
# The relay fans each frame out to the configured inference backend under a
# single process-wide concurrency cap.  /config.json hands the client its
# sampling settings; /health reports liveness and limiter pressure.
# =============================================================================

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket

from config import Config, get_config
from server.fanout import InferenceFanout
from server.relay import RelayConnection

logger = logging.getLogger(__name__)


def create_app(config: Optional[Config] = None, fanout: Optional[InferenceFanout] = None) -> FastAPI:
    """
    Build the relay application.

    Args:
        config: Configuration; defaults to the process-wide get_config().
        fanout: Pre-built fan-out (tests); built from config at startup if None.

    Returns:
        FastAPI: The application, ready for uvicorn.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan handler - initializes and tears down resources.

        On startup:
            - Resolves configuration.
            - Creates the shared fan-out (backend client + global limiter).

        On shutdown:
            - Closes the backend HTTP session and worker threads.
        """
        app.state.config = app.state.config or get_config()
        app.state.start_time = time.time()

        owns_fanout = app.state.fanout is None
        if owns_fanout:
            cfg = app.state.config
            logger.info(
                "Starting relay - backend=%s mock=%s cap=%d timeout=%dms",
                cfg.backend_base_url, cfg.use_mock, cfg.max_concurrent_calls, cfg.backend_timeout_ms,
            )
            app.state.fanout = InferenceFanout.from_config(cfg)

        logger.info("Relay ready - accepting connections.")
        yield

        logger.info("Shutting down relay...")
        if owns_fanout:
            app.state.fanout.close()
            app.state.fanout = None

    app = FastAPI(
        title="Trifecta Overlay Relay",
        description=(
            "Receives compressed video frames over WebSocket, fans them out to "
            "face, text and segmentation inference endpoints under a global "
            "concurrency cap, and returns merged, normalized annotations."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.fanout = fanout
    app.state.start_time = 0.0

    @app.get("/health")
    def health_check():
        """
        Health check endpoint.

        Returns relay status, mock mode, uptime and limiter pressure.
        """
        current = app.state.fanout
        uptime = time.time() - app.state.start_time if app.state.start_time > 0 else 0.0
        return {
            "status": "ok" if current is not None else "starting",
            "mock": bool(current is not None and current.use_mock),
            "uptime_seconds": round(uptime, 2),
            "active_calls": current.limiter.active if current is not None else 0,
            "queued_calls": current.limiter.queued if current is not None else 0,
        }

    @app.get("/config.json")
    def client_config():
        """Expose the client section of the configuration."""
        return (app.state.config or get_config()).client_config()

    async def _serve(websocket: WebSocket):
        await websocket.accept()
        cfg = app.state.config or get_config()
        connection = RelayConnection(
            websocket,
            app.state.fanout,
            jitter_ms=(cfg.response_jitter_min_ms, cfg.response_jitter_max_ms),
        )
        client = websocket.client
        logger.info("Client connected: %s", f"{client.host}:{client.port}" if client else "?")
        await connection.serve()

    app.add_api_websocket_route("/ws", _serve)
    app.add_api_websocket_route("/", _serve)

    return app


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = create_app()
