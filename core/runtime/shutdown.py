"""
Shutdown coordination for esmd.

Owns the termination-signal handlers. The first qualifying signal (or an
explicit shutdown request from another failure path) runs the ordered
cleanup sequence exactly once and sets the shutdown event observed by the
main task and the listener supervisor.
"""

import asyncio
import signal
from threading import Lock
from typing import Any, Callable, List, Optional, Sequence, Tuple

from core.logger import UnifiedLogger
from .errors import ShutdownCleanupError


DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)

Cleanup = Tuple[str, Callable[[], Any]]


class ShutdownCoordinator:
    """
    Run cleanup actions once on termination.

    Args:
        cleanups: Ordered (name, action) pairs
        logger: Operational logger; cleanup failures are logged here
        event: Event set once cleanup has run (created if omitted)
        signals: Signals that trigger shutdown
    """

    def __init__(
        self,
        cleanups: Sequence[Cleanup],
        logger: UnifiedLogger,
        event: Optional[asyncio.Event] = None,
        signals: Sequence[signal.Signals] = DEFAULT_SIGNALS,
    ):
        self._cleanups: List[Cleanup] = list(cleanups)
        self.logger = logger
        self.event = event if event is not None else asyncio.Event()
        self.signals = tuple(signals)
        self.errors: List[ShutdownCleanupError] = []
        self.reason: Optional[str] = None
        self._lock = Lock()
        self._started = False
        self._finished = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def exit_code(self) -> int:
        """0 after a clean shutdown, 1 when any cleanup action failed."""
        return 1 if self.errors else 0

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Register signal handlers on the event loop."""
        self._loop = loop or asyncio.get_running_loop()
        for sig in self.signals:
            self._loop.add_signal_handler(sig, self.handle_signal, sig)

    def uninstall(self) -> None:
        """Remove the signal handlers, restoring default behavior."""
        if self._loop is None:
            return
        for sig in self.signals:
            self._loop.remove_signal_handler(sig)
        self._loop = None

    def handle_signal(self, sig: signal.Signals) -> bool:
        """
        Handle a termination signal.

        Returns:
            True when cleanup has completed and the process may exit
        """
        name = signal.Signals(sig).name
        self.logger.info("Received termination signal", signal=name)
        return self.shutdown(reason=name)

    def shutdown(self, reason: str) -> bool:
        """
        Run the cleanup sequence if it has not run yet.

        A second call never re-enters cleanup; it reports whether the first
        run has finished.
        """
        with self._lock:
            if self._started:
                self.logger.debug("Shutdown already in progress", reason=reason)
                return self._finished
            self._started = True
            self.reason = reason

        for name, action in self._cleanups:
            try:
                action()
            except Exception as e:
                error = ShutdownCleanupError(name, e)
                self.errors.append(error)
                self.logger.error(f"Shutdown cleanup failed: {error}")

        with self._lock:
            self._finished = True
        self.event.set()
        return True

    async def wait(self) -> Optional[str]:
        """Suspend until shutdown has run; return its reason."""
        await self.event.wait()
        return self.reason
