"""
Process entry point for esmd.

Wires the bootstrapped runtime to the HTTP pipeline, the listener
supervisor and the shutdown coordinator, and maps fatal errors to exit
codes.
"""

import asyncio
import ssl
import sys
from typing import Callable, Iterable, Optional, Sequence

from fastapi import APIRouter

from api.pipeline import create_app, create_redirect_app
from core.database import Store, open_store
from core.logger import UnifiedLogger, report_fatal
from core.nodejs import RuntimeInfo, probe_node_runtime
from core.settings import resolve_settings
from core.tls import CertificateManager
from .bootstrap import bootstrap_runtime
from .config import RuntimeConfig
from .errors import (
    ConfigurationError,
    DependencyMissingError,
    FilesystemError,
    ListenerStartError,
    ObservabilityError,
    RuntimeBootstrapError,
    StoreOpenError,
)
from .listeners import ListenerSupervisor
from .shutdown import ShutdownCoordinator


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

_FATAL_CONTEXT = (
    (DependencyMissingError, "nodejs"),
    (FilesystemError, "filesystem"),
    (ObservabilityError, "observability"),
    (StoreOpenError, "initiate esmd.db"),
    (ListenerStartError, "listen"),
)


def describe_fatal(error: RuntimeBootstrapError) -> str:
    """Short category label used when reporting a fatal error on stderr."""
    for error_type, label in _FATAL_CONTEXT:
        if isinstance(error, error_type):
            return label
    return "bootstrap"


async def serve(
    config: RuntimeConfig,
    *,
    prober: Callable[[], RuntimeInfo] = probe_node_runtime,
    store_opener: Callable[..., Store] = open_store,
    routers: Optional[Iterable[APIRouter]] = None,
) -> int:
    """
    Bootstrap the runtime and serve until a termination signal.

    Returns:
        Process exit code (0 after a clean shutdown)

    Raises:
        RuntimeBootstrapError: If any startup step fails
    """
    context = bootstrap_runtime(config, prober=prober, store_opener=store_opener)
    logger = context.logger
    listener_config = config.listener_config()
    certificates = CertificateManager.for_listener(
        listener_config, logger=UnifiedLogger(tag="autotls", sink=context.sinks.main)
    )
    coordinator = ShutdownCoordinator(
        [("close store", context.close_store)],
        logger=UnifiedLogger(tag="shutdown", sink=context.sinks.main),
        event=context.shutdown_event,
    )

    try:
        app = create_app(context, routers)
        if listener_config.auto_redirect:
            plaintext_app = create_redirect_app(listener_config.https_port, listener_config.webroot)
        else:
            plaintext_app = app

        try:
            ssl_context = certificates.build_context()
        except (OSError, ssl.SSLError, ValueError) as e:
            raise ListenerStartError(f"cannot prepare TLS context: {e}") from e

        supervisor = ListenerSupervisor(
            listener_config,
            app,
            ssl_context,
            plaintext_app=plaintext_app,
            logger=UnifiedLogger(tag="listeners", sink=context.sinks.main),
        )

        coordinator.install()
        try:
            await supervisor.start()
        except ListenerStartError as e:
            logger.error(f"Listener startup failed: {e}")
            coordinator.shutdown(reason="listener startup failed")
            raise

        if listener_config.accept_tos:
            certificates.warm(listener_config.domains)
        logger.info(
            "esmd ready",
            mode=config.mode.value,
            port=listener_config.port,
            https_port=listener_config.https_port,
        )

        exited = await supervisor.run_until(coordinator.event)
        if exited is not None:
            coordinator.shutdown(reason=f"{exited} listener exited")
        await supervisor.stop()

        logger.info("Shutdown complete", reason=coordinator.reason, exit_code=coordinator.exit_code)
        if exited is not None:
            return EXIT_FAILURE
        return coordinator.exit_code

    finally:
        coordinator.uninstall()
        certificates.close()
        context.close()


def run(argv: Optional[Sequence[str]] = None, exe_name: Optional[str] = None) -> int:
    """
    Resolve settings, serve, and return the process exit code.

    Exit codes: 0 on clean shutdown, 1 on a fatal startup error or a
    failed cleanup, 2 on invalid configuration.
    """
    try:
        config = resolve_settings(argv, exe_name)
    except ConfigurationError as e:
        report_fatal("invalid configuration", e)
        return EXIT_USAGE

    try:
        return asyncio.run(serve(config))
    except RuntimeBootstrapError as e:
        report_fatal(describe_fatal(e), e)
        return EXIT_FAILURE


def main() -> None:
    """Console script entry point."""
    sys.exit(run())
