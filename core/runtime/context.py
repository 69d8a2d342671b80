"""
Runtime context for esmd.

The single dependency struct built once during bootstrap and passed by
reference to every component and request handler (as app.state.runtime).
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from core.database import Store
from core.logger import LogSinks, UnifiedLogger
from core.nodejs import RuntimeInfo
from .config import RuntimeConfig


@dataclass
class RuntimeContext:
    """
    Central runtime context for esmd services.

    Attributes:
        config: Resolved runtime configuration
        runtime_info: Node.js runtime detected at startup (read-only)
        store: Shared persistent store handle
        sinks: Operational and access log sinks
        logger: Unified logger bound to the operational sink
        started_at: When bootstrap completed
        shutdown_event: Set once a termination signal has been handled
    """

    config: RuntimeConfig
    runtime_info: RuntimeInfo
    store: Store
    sinks: LogSinks
    logger: UnifiedLogger
    started_at: datetime
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()

    def close_store(self) -> None:
        """Close the store handle. Later calls are no-ops."""
        if self.store.close():
            self.logger.info("Store closed", path=str(self.store.path))

    def close(self) -> None:
        """Release every resource owned by the context, logs last."""
        if self._closed:
            return
        self._closed = True
        self.store.close()
        self.sinks.close()

