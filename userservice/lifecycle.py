"""Process lifecycle: start the listener, wait for a stop signal, drain, close."""

from __future__ import annotations

import enum
import logging
import signal
import socket
import threading
from typing import Callable, Optional

import uvicorn
from starlette.types import ASGIApp

from .config import ServiceConfig
from .database import Database
from .errors import ConfigurationError, ListenerError, ServiceStartupError, StoreError
from .service import build_application

logger = logging.getLogger("userservice.lifecycle")

# Extra time granted to uvicorn beyond the grace period before forcing exit.
_FORCE_EXIT_MARGIN = 1.0
_STARTUP_POLL_INTERVAL = 0.05


class LifecycleState(str, enum.Enum):
    STARTING = "starting"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


class ServiceLifecycle:
    """Own the database pool and the HTTP listener for one process run.

    The listener runs on a background thread while the caller blocks on
    :meth:`wait`. :meth:`request_stop` (wired to SIGTERM/SIGINT by
    :meth:`install_signal_handlers`) releases the wait, after which
    :meth:`shutdown` drains in-flight requests for at most
    ``config.shutdown_grace_period`` seconds and then closes the pool.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        database: Optional[Database] = None,
        app_factory: Optional[Callable[[Database, ServiceConfig], ASGIApp]] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self._config = config
        self._database = database
        self._app_factory = app_factory or _default_app_factory
        self._stop_event = stop_event or threading.Event()
        self._state = LifecycleState.STARTING
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None
        self._listener_error: Optional[BaseException] = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def database(self) -> Optional[Database]:
        return self._database

    @property
    def bound_port(self) -> Optional[int]:
        """Return the port the listener is bound to, once started."""

        if self._socket is None:
            return None
        return int(self._socket.getsockname()[1])

    def _transition(self, state: LifecycleState) -> None:
        logger.info("Lifecycle %s -> %s", self._state.value, state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Connect to the store and start serving, or raise ServiceStartupError."""

        if self._state is not LifecycleState.STARTING:
            raise RuntimeError(f"Cannot start a lifecycle in state {self._state.value}")

        if self._database is None:
            try:
                self._database = Database.from_config(self._config)
            except ConfigurationError as exc:
                self._abort()
                raise ServiceStartupError(f"Cannot open database: {exc}") from exc

        try:
            self._database.ping()
        except StoreError as exc:
            self._abort()
            raise ServiceStartupError(f"Database not reachable at {self._database.describe()}") from exc
        logger.info("Connected to database at %s", self._database.describe())

        app = self._app_factory(self._database, self._config)
        uvicorn_config = uvicorn.Config(
            app,
            host=self._config.host,
            port=self._config.port,
            log_level=self._config.log_level,
            access_log=False,
            timeout_graceful_shutdown=self._config.shutdown_grace_period,
        )
        server = uvicorn.Server(uvicorn_config)

        try:
            sock = uvicorn_config.bind_socket()
        except (OSError, SystemExit) as exc:
            self._abort()
            raise ServiceStartupError(
                f"Failed to bind listener on {self._config.host}:{self._config.port}"
            ) from exc

        self._server = server
        self._socket = sock
        self._thread = threading.Thread(
            target=self._run_listener,
            name="userservice-listener",
            daemon=True,
        )
        self._thread.start()

        while not server.started:
            if not self._thread.is_alive():
                self._abort()
                raise ServiceStartupError("HTTP listener exited during startup") from self._listener_error
            self._thread.join(_STARTUP_POLL_INTERVAL)

        logger.info("Serving on %s:%s", self._config.host, self.bound_port)
        self._transition(LifecycleState.SERVING)

    def _run_listener(self) -> None:
        assert self._server is not None and self._socket is not None
        try:
            self._server.run(sockets=[self._socket])
        except BaseException as exc:  # uvicorn exits via SystemExit on startup failure
            self._listener_error = exc
            logger.error("HTTP listener stopped unexpectedly: %s", exc)

    def _abort(self) -> None:
        if self._socket is not None:
            self._socket.close()
        if self._database is not None:
            self._database.close()
        self._transition(LifecycleState.STOPPED)

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------
    def request_stop(self) -> None:
        """Signal the serving loop to begin draining."""

        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        """Route SIGTERM and SIGINT to :meth:`request_stop` (main thread only)."""

        def handler(signum: int, frame: object) -> None:
            logger.info("Received %s, shutting down", signal.Signals(signum).name)
            self.request_stop()

        signal.signal(signal.SIGTERM, handler)
        signal.signal(signal.SIGINT, handler)

    def wait(self) -> None:
        """Block until a stop is requested.

        Raises :class:`ListenerError` if the listener exits on its own first.
        """

        while not self._stop_event.wait(0.5):
            if self._thread is not None and not self._thread.is_alive():
                logger.critical("HTTP listener exited without a stop request")
                raise ListenerError("HTTP listener exited unexpectedly") from self._listener_error

    # ------------------------------------------------------------------
    # Draining / Stopped
    # ------------------------------------------------------------------
    def shutdown(self) -> None:
        """Stop accepting connections, drain, then close the pool."""

        if self._state is LifecycleState.STOPPED:
            return

        self._transition(LifecycleState.DRAINING)
        grace = self._config.shutdown_grace_period

        if self._server is not None and self._thread is not None:
            self._server.should_exit = True
            self._thread.join(grace + _FORCE_EXIT_MARGIN)
            if self._thread.is_alive():
                logger.warning("Drain exceeded %.1fs; forcing listener exit", grace)
                self._server.force_exit = True
                self._thread.join(_FORCE_EXIT_MARGIN)

        if self._database is not None:
            self._database.close()
            logger.info("Database pool closed")

        self._transition(LifecycleState.STOPPED)
        logger.info("Server exited cleanly")

    def run(self) -> None:
        """Start, serve until stopped, then shut down."""

        self.start()
        try:
            self.wait()
        finally:
            self.shutdown()


def _default_app_factory(database: Database, config: ServiceConfig) -> ASGIApp:
    return build_application(database=database, config=config)


__all__ = ["LifecycleState", "ServiceLifecycle"]
