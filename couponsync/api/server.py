"""Control API server built on Starlette and served by uvicorn."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Optional

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route

from .auth import API_KEY_HEADER, APIKeyManager
from .routes import (
    health_handler,
    schedule_handler,
    status_handler,
    trigger_sync_handler,
    user_status_handler,
)

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle
    from ..service import SyncService

logger = logging.getLogger("couponsync.api.server")

UNAUTHENTICATED_PATHS = frozenset({"/health"})


class APIServerState(str, Enum):
    """API server lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Reject requests without a valid ``X-API-Key`` header."""

    def __init__(self, app: Any, key_manager: APIKeyManager):
        super().__init__(app)
        self.key_manager = key_manager

    async def dispatch(self, request, call_next):
        if request.url.path in UNAUTHENTICATED_PATHS:
            return await call_next(request)
        if not self.key_manager.validate_key(request.headers.get(API_KEY_HEADER, "")):
            return JSONResponse({"error": "Invalid or missing API key"}, status_code=401)
        return await call_next(request)


@dataclass
class CouponSyncAPIServer:
    """HTTP control surface over a running :class:`SyncService`."""

    config_bundle: "ConfigurationBundle"
    service: "SyncService"

    _state: APIServerState = field(default=APIServerState.STOPPED, init=False)
    _server: Optional[uvicorn.Server] = field(default=None, init=False)
    _thread: Optional[threading.Thread] = field(default=None, init=False)
    _key_manager: Optional[APIKeyManager] = field(default=None, init=False)

    @property
    def state(self) -> APIServerState:
        return self._state

    @property
    def host(self) -> str:
        return str(self._api_config().get("host", "127.0.0.1"))

    @property
    def port(self) -> int:
        return int(self._api_config().get("port", 8765))

    @property
    def key_manager(self) -> APIKeyManager:
        if self._key_manager is None:
            self._key_manager = APIKeyManager(self.config_bundle.data_dir)
        return self._key_manager

    @property
    def api_key(self) -> str:
        return self.key_manager.get_or_generate_key()

    def _api_config(self) -> Dict[str, Any]:
        return self.config_bundle.section("api")

    def create_app(self) -> Starlette:
        middleware = []
        cors_origins = self._api_config().get("cors_origins") or []
        if cors_origins:
            middleware.append(
                Middleware(
                    CORSMiddleware,
                    allow_origins=cors_origins,
                    allow_methods=["GET", "POST", "DELETE"],
                    allow_headers=[API_KEY_HEADER, "Content-Type"],
                )
            )
        middleware.append(Middleware(APIKeyMiddleware, key_manager=self.key_manager))

        routes = [
            Route("/health", health_handler, methods=["GET"]),
            Route("/api/v1/status", status_handler, methods=["GET"]),
            Route("/api/v1/users/{user_id}/status", user_status_handler, methods=["GET"]),
            Route("/api/v1/users/{user_id}/sync", trigger_sync_handler, methods=["POST"]),
            Route("/api/v1/users/{user_id}/schedule", schedule_handler, methods=["POST", "DELETE"]),
        ]

        app = Starlette(routes=routes, middleware=middleware, lifespan=self._lifespan)
        app.state.couponsync_server = self
        return app

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        logger.info("API server starting on %s:%s", self.host, self.port)
        self._state = APIServerState.RUNNING
        yield
        logger.info("API server shutting down")
        self._state = APIServerState.STOPPED

    def start(self, blocking: bool = False) -> bool:
        """Start serving; in the background unless ``blocking``."""
        if self._state == APIServerState.RUNNING:
            logger.warning("API server is already running")
            return False

        self._state = APIServerState.STARTING
        config = uvicorn.Config(
            self.create_app(),
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        if blocking:
            try:
                asyncio.run(self._server.serve())
            except Exception:
                logger.exception("API server error")
                self._state = APIServerState.ERROR
                return False
            return True

        self._thread = threading.Thread(
            target=self._run_in_thread,
            daemon=True,
            name="couponsync-api-server",
        )
        self._thread.start()

        for _ in range(20):
            time.sleep(0.1)
            if self._state in (APIServerState.RUNNING, APIServerState.ERROR):
                break
        return self._state == APIServerState.RUNNING

    def _run_in_thread(self) -> None:
        try:
            asyncio.run(self._server.serve())
        except Exception:
            logger.exception("API server thread error")
            self._state = APIServerState.ERROR
            return
        self._state = APIServerState.STOPPED

    def stop(self) -> bool:
        if self._state != APIServerState.RUNNING:
            logger.warning("API server is not running")
            return False

        self._state = APIServerState.STOPPING
        if self._server:
            self._server.should_exit = True
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._state = APIServerState.STOPPED
        self._server = None
        self._thread = None
        return True

    def status(self) -> Dict[str, Any]:
        running = self._state == APIServerState.RUNNING
        return {
            "state": self._state.value,
            "host": self.host,
            "port": self.port,
            "url": f"http://{self.host}:{self.port}" if running else None,
            "auth": self.key_manager.describe(),
        }


__all__ = ["CouponSyncAPIServer", "APIServerState", "APIKeyMiddleware"]
