"""
Listener supervisor for esmd.

Runs the plaintext and TLS listeners as two uvicorn servers on the current
event loop. Both sockets are bound before either server starts, so a port
conflict surfaces as a ListenerStartError instead of a half-started process.
Signal handling is left to the shutdown coordinator; the supervisor only
observes the shutdown event.
"""

import asyncio
import contextlib
import socket
import ssl
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

import uvicorn

from core import constants
from core.logger import UnifiedLogger
from .config import ListenerConfig
from .errors import ListenerStartError


class ListenerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that does not install its own signal handlers."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def bind_socket(host: str, port: int) -> socket.socket:
    """
    Bind a listening TCP socket.

    Raises:
        OSError: If the address is unavailable
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


@dataclass
class Listener:
    """One bound socket and the server accepting on it."""

    name: str
    port: int
    sock: socket.socket
    server: EmbeddedServer
    task: Optional[asyncio.Task] = None

    @property
    def started(self) -> bool:
        return self.server.started


class ListenerSupervisor:
    """
    Start, watch and stop the plaintext and TLS listeners.

    Args:
        config: Listener configuration
        app: ASGI application served over TLS
        ssl_context: Context used by the TLS listener
        plaintext_app: Application for the plaintext listener (defaults to app)
        logger: Operational logger
    """

    def __init__(
        self,
        config: ListenerConfig,
        app: Any,
        ssl_context: ssl.SSLContext,
        *,
        plaintext_app: Any = None,
        logger: Optional[UnifiedLogger] = None,
    ):
        self.config = config
        self.app = app
        self.plaintext_app = plaintext_app if plaintext_app is not None else app
        self.ssl_context = ssl_context
        self.logger = logger or UnifiedLogger(tag="listeners")
        self.listeners: List[Listener] = []
        self._state = ListenerState.IDLE

    @property
    def state(self) -> ListenerState:
        return self._state

    def _build_server(self, app: Any, port: int, ssl_context: Optional[ssl.SSLContext]) -> EmbeddedServer:
        config = uvicorn.Config(
            app,
            host=self.config.host,
            port=port,
            lifespan="off",
            log_config=None,
            access_log=False,
            server_header=False,
            timeout_graceful_shutdown=constants.LISTENER_SHUTDOWN_TIMEOUT,
        )
        config.load()
        # uvicorn only builds contexts from files; the TLS listener needs the
        # SNI-aware context from the certificate manager instead.
        config.ssl = ssl_context
        return EmbeddedServer(config)

    def _bind_all(self) -> None:
        plan = [
            ("http", self.config.port, self.plaintext_app, None),
            ("https", self.config.https_port, self.app, self.ssl_context),
        ]
        for name, port, app, context in plan:
            try:
                sock = bind_socket(self.config.host, port)
            except OSError as e:
                self._close_sockets()
                raise ListenerStartError(f"{name} listener cannot bind {self.config.host}:{port}: {e}") from e
            self.listeners.append(Listener(name, port, sock, self._build_server(app, port, context)))

    def _close_sockets(self) -> None:
        for listener in self.listeners:
            listener.sock.close()

    async def _serve(self, listener: Listener) -> None:
        try:
            await listener.server.serve(sockets=[listener.sock])
        except SystemExit as e:
            raise ListenerStartError(f"{listener.name} listener exited with status {e.code}") from None

    async def start(
        self,
        timeout: float = constants.LISTENER_STARTUP_TIMEOUT,
        poll_interval: float = constants.LISTENER_STARTUP_POLL,
    ) -> None:
        """
        Bind both ports and wait until both servers accept connections.

        Raises:
            ListenerStartError: If a port cannot be bound, a server exits
                during startup, or startup exceeds the timeout
        """
        if self._state is not ListenerState.IDLE:
            raise RuntimeError(f"listeners already {self._state.value}")
        self._state = ListenerState.STARTING

        try:
            self._bind_all()
        except ListenerStartError:
            self.listeners.clear()
            self._state = ListenerState.STOPPED
            raise

        for listener in self.listeners:
            listener.task = asyncio.create_task(self._serve(listener), name=f"listener-{listener.name}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not all(listener.started for listener in self.listeners):
            failed = next((item for item in self.listeners if item.task.done()), None)
            if failed is not None:
                error = self._task_error(failed)
                await self.stop()
                raise ListenerStartError(error)
            if loop.time() >= deadline:
                await self.stop()
                raise ListenerStartError(f"listeners did not start within {timeout:g}s")
            await asyncio.sleep(poll_interval)

        self._state = ListenerState.RUNNING
        for listener in self.listeners:
            self.logger.info(f"{listener.name} listener running", host=self.config.host, port=listener.port)

    @staticmethod
    def _task_error(listener: Listener) -> str:
        if listener.task.cancelled():
            return f"{listener.name} listener cancelled during startup"
        error = listener.task.exception()
        if error is not None:
            return str(error)
        return f"{listener.name} listener exited during startup"

    async def run_until(self, event: asyncio.Event) -> Optional[str]:
        """
        Wait for the shutdown event or for a listener to exit on its own.

        Returns:
            None when the event fired, otherwise the name of the listener
            that exited
        """
        waiter = asyncio.create_task(event.wait())
        tasks = {listener.task: listener for listener in self.listeners}
        try:
            done, _ = await asyncio.wait({waiter, *tasks}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()

        if waiter in done:
            return None
        listener = tasks[next(iter(done - {waiter}))]
        self.logger.error(f"{listener.name} listener exited unexpectedly", port=listener.port)
        return listener.name

    async def stop(self) -> None:
        """Stop accepting connections and wait for both servers to finish."""
        if self._state in (ListenerState.STOPPING, ListenerState.STOPPED):
            return
        self._state = ListenerState.STOPPING

        for listener in self.listeners:
            listener.server.should_exit = True
        tasks = [listener.task for listener in self.listeners if listener.task is not None]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for listener, result in zip(self.listeners, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                self.logger.warning(f"{listener.name} listener stopped with error: {result}")

        self._close_sockets()
        self._state = ListenerState.STOPPED
        self.logger.info("Listeners stopped")
