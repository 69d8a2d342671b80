"""
Runtime bootstrap for esmd.

Provides the single entry point that turns a resolved RuntimeConfig into a
RuntimeContext. Steps run strictly in order and any failure aborts the
whole sequence:

1. Probe the Node.js runtime (no side effects, so a missing runtime leaves
   the filesystem untouched)
2. Create the working directories
3. Open the operational and access log sinks
4. Open the persistent store
"""

from datetime import datetime, timezone
from typing import Callable

from core import constants
from core.database import Store, open_store
from core.logger import UnifiedLogger, init_observability
from core.nodejs import RuntimeInfo, probe_node_runtime
from .config import RuntimeConfig
from .context import RuntimeContext
from .errors import RuntimeBootstrapError, RuntimeStartupError, StoreOpenError
from .paths import prepare_filesystem


def bootstrap_runtime(
    config: RuntimeConfig,
    *,
    prober: Callable[[], RuntimeInfo] = probe_node_runtime,
    store_opener: Callable[..., Store] = open_store,
) -> RuntimeContext:
    """
    Bootstrap esmd runtime services.

    Args:
        config: Resolved runtime configuration
        prober: Node.js runtime probe (injectable for tests)
        store_opener: Store factory (injectable for tests)

    Returns:
        RuntimeContext with every service initialized

    Raises:
        DependencyMissingError: If the Node.js runtime is unusable
        FilesystemError: If a required directory cannot be created
        ObservabilityError: If a log sink cannot be opened
        StoreOpenError: If the persistent store cannot be opened
        RuntimeStartupError: For any other initialization failure
    """
    logger = UnifiedLogger(tag="runtime-bootstrap")
    sinks = None

    try:
        runtime_info = prober()

        created = prepare_filesystem(config)

        sinks = init_observability(config)
        sinks.main.capture("uvicorn.error")
        logger = UnifiedLogger(tag="runtime-bootstrap", sink=sinks.main)
        logger.info("Starting runtime bootstrap", **config.summary())
        if created:
            logger.debug("Created directories", paths=[str(p) for p in created])
        logger.debug("Node.js runtime", version=runtime_info.version, registry=runtime_info.registry)

        try:
            store = store_opener(config.store_path, constants.STORE_FILE_MODE)
        except StoreOpenError as e:
            logger.error(f"Failed to open {config.store_path.name}: {e}")
            raise

        context = RuntimeContext(
            config=config,
            runtime_info=runtime_info,
            store=store,
            sinks=sinks,
            logger=UnifiedLogger(tag="esmd", sink=sinks.main),
            started_at=datetime.now(timezone.utc),
        )

        logger.info(
            "Runtime bootstrap completed",
            mode=config.mode.value,
            node=runtime_info.version,
            store=str(config.store_path),
        )
        return context

    except RuntimeBootstrapError:
        if sinks is not None:
            sinks.close()
        raise

    except Exception as e:
        logger.error(f"Runtime bootstrap failed: {e}")
        if sinks is not None:
            sinks.close()
        raise RuntimeStartupError(f"Failed to bootstrap runtime: {e}") from e
