"""Ephemeral listener lifecycle.

Implements the server state machine:
  stopped -> starting -> running -> stopping -> stopped

And the bind-failure transition:
  starting -> failed   (terminal; never retried automatically)

The listener socket is bound here, before uvicorn sees it, so a port that is
already taken fails synchronously with ``BindFailure`` instead of killing
the serving thread. uvicorn then serves the app on that socket from a
dedicated thread, and ``start`` returns only once uvicorn reports it is
accepting connections.

Usage::

    lifecycle = ServerLifecycle(app)
    lifecycle.start(ServerConfig(port=8765))
    try:
        ...
    finally:
        lifecycle.stop()
"""

from __future__ import annotations

import socket
import threading
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

import uvicorn
from fastapi import FastAPI

from .errors import BindFailure, InvalidStateTransition
from .observability import get_logger
from .settings import DEFAULT_PORT, HarnessSettings

logger = get_logger(__name__)

_STARTUP_POLL_SECONDS = 0.01


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


ALLOWED_TRANSITIONS = MappingProxyType(
    {
        ServerState.STOPPED: frozenset({ServerState.STARTING}),
        ServerState.STARTING: frozenset({ServerState.RUNNING, ServerState.FAILED}),
        ServerState.RUNNING: frozenset({ServerState.STOPPING}),
        ServerState.STOPPING: frozenset({ServerState.STOPPED}),
        ServerState.FAILED: frozenset(),
    }
)


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Listener configuration.

    ``port=0`` binds any free port; suites use their fixed reserved port.
    """

    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    startup_timeout: float = 10.0
    shutdown_timeout: float = 5.0

    @classmethod
    def from_settings(cls, settings: HarnessSettings) -> ServerConfig:
        return cls(
            host=settings.host,
            port=settings.port,
            startup_timeout=settings.startup_timeout,
            shutdown_timeout=settings.shutdown_timeout,
        )


@dataclass(slots=True)
class ServerHandle:
    """The live listener. Exists only between ``start`` and ``stop``."""

    sock: socket.socket
    server: uvicorn.Server
    thread: threading.Thread
    host: str
    port: int

    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"


def _bind(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        # Lets a restarted suite reuse a port in TIME_WAIT; a live listener
        # on the same port still fails the bind.
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    return sock


class ServerLifecycle:
    """Owns the ephemeral listener that routes test traffic into the app."""

    def __init__(self, app: FastAPI) -> None:
        self._app = app
        self._state = ServerState.STOPPED
        self._handle: ServerHandle | None = None
        self._shutdown_timeout = ServerConfig().shutdown_timeout
        self._lock = threading.Lock()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def handle(self) -> ServerHandle | None:
        return self._handle

    @property
    def base_url(self) -> str:
        if self._handle is None:
            raise RuntimeError("server is not running")
        return self._handle.base_url

    def _transition(self, to_state: ServerState) -> None:
        if to_state not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidStateTransition(self._state.value, to_state.value)
        logger.debug("server_state", from_state=self._state.value, to_state=to_state.value)
        self._state = to_state

    def start(self, config: ServerConfig | None = None) -> ServerHandle:
        """Bind, serve, and return once the listener accepts connections.

        Raises:
            BindFailure: Port unavailable, or the server did not come up
                within ``startup_timeout``. The lifecycle is then ``FAILED``.
            InvalidStateTransition: If not currently stopped.
        """
        config = config or ServerConfig()
        with self._lock:
            self._transition(ServerState.STARTING)

            try:
                sock = _bind(config.host, config.port)
            except OSError as exc:
                self._transition(ServerState.FAILED)
                logger.error(
                    "server_bind_failed", host=config.host, port=config.port, error=str(exc),
                )
                raise BindFailure(config.host, config.port, str(exc)) from exc

            port = sock.getsockname()[1]
            server = uvicorn.Server(
                uvicorn.Config(
                    self._app,
                    log_config=None,
                    access_log=False,
                    lifespan="on",
                )
            )
            thread = threading.Thread(
                target=server.run,
                kwargs={"sockets": [sock]},
                name=f"harness-server-{port}",
                daemon=True,
            )
            handle = ServerHandle(
                sock=sock, server=server, thread=thread, host=config.host, port=port,
            )
            self._handle = handle
            thread.start()

            deadline = time.monotonic() + config.startup_timeout
            while not server.started:
                if not thread.is_alive():
                    reason = "server exited during startup"
                elif time.monotonic() >= deadline:
                    reason = f"not accepting connections after {config.startup_timeout}s"
                else:
                    time.sleep(_STARTUP_POLL_SECONDS)
                    continue
                self._release(handle, config.shutdown_timeout)
                self._handle = None
                self._transition(ServerState.FAILED)
                logger.error("server_start_failed", port=port, reason=reason)
                raise BindFailure(config.host, port, reason)

            self._transition(ServerState.RUNNING)
            self._shutdown_timeout = config.shutdown_timeout
            logger.info("server_started", url=handle.base_url)
            return handle

    def stop(self) -> None:
        """Stop serving and release the port.

        Safe without a prior successful ``start`` and safe to call twice.
        """
        with self._lock:
            if self._state is not ServerState.RUNNING:
                logger.debug("server_stop_noop", state=self._state.value)
                return
            self._transition(ServerState.STOPPING)
            handle = self._handle
            try:
                if handle is not None:
                    self._release(handle, self._shutdown_timeout)
            finally:
                self._handle = None
                self._transition(ServerState.STOPPED)
            logger.info("server_stopped")

    @staticmethod
    def _release(handle: ServerHandle, timeout: float) -> None:
        try:
            handle.server.should_exit = True
            if handle.thread.is_alive():
                handle.thread.join(timeout)
            if handle.thread.is_alive():
                handle.server.force_exit = True
                handle.thread.join(timeout)
            if handle.thread.is_alive():
                logger.error("server_thread_stuck", port=handle.port)
        finally:
            handle.sock.close()
