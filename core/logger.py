"""Unified logger providing technical instrumentation and file-backed log sinks."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Any, Dict, Optional

import logfire

from core import constants
from core.runtime.errors import ObservabilityError

if TYPE_CHECKING:
    from core.runtime.config import RuntimeConfig


_logfire_config_state: Optional[bool] = None
_logfire_config_lock = Lock()

_MAIN_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
_ACCESS_FORMAT = "%(message)s"


def configure_logfire(debug: bool = False, force: bool = False) -> None:
    """
    Configure the process-wide Logfire client.

    Console output is only enabled in debug mode; records are shipped to
    Logfire only when a LOGFIRE_TOKEN is present in the environment.

    Args:
        debug: Enable console output down to debug level.
        force: Reapply configuration even if nothing changed.
    """
    global _logfire_config_state

    with _logfire_config_lock:
        if not force and _logfire_config_state == debug:
            return

        console = logfire.ConsoleOptions(min_log_level="debug") if debug else False
        logfire.configure(
            service_name="esmd",
            send_to_logfire="if-token-present",
            console=console,
            scrubbing=False,
        )
        _logfire_config_state = debug


def report_fatal(message: str, error: Optional[BaseException] = None) -> None:
    """
    Report a fatal error on the baseline channel (stderr).

    Used before the operational log exists, or in addition to it when the
    process is about to exit.
    """
    line = f"esmd: fatal: {message}"
    if error is not None:
        line = f"{line}: {error}"
    print(line, file=sys.stderr, flush=True)


class BufferedFileHandler(logging.FileHandler):
    """
    Append-only file handler with a fixed write buffer.

    Unlike logging.FileHandler it does not flush after every record; each
    record is written with a single call while the handler lock is held, so
    concurrent emitters never interleave partial records.
    """

    def __init__(self, filename, buffer_size: int = constants.LOG_BUFFER_SIZE, encoding: str = "utf-8"):
        self.buffer_size = buffer_size
        self._sink_closed = False
        super().__init__(filename, mode="a", encoding=encoding, delay=False)

    def _open(self):
        return open(
            self.baseFilename,
            self.mode,
            buffering=self.buffer_size,
            encoding=self.encoding,
            errors=self.errors,
        )

    def emit(self, record: logging.LogRecord) -> None:
        if self._sink_closed:
            return
        try:
            msg = self.format(record)
            if self.stream is None:
                self.stream = self._open()
            self.stream.write(msg + self.terminator)
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self._sink_closed = True
        super().close()


class LogSink:
    """
    Named, buffered, file-backed log target.

    Created once at startup. A quiet sink never echoes anywhere but its
    file; a verbose sink also mirrors records to Logfire (and from there to
    the console in debug mode).
    """

    def __init__(
        self,
        name: str,
        path: Path,
        *,
        level: int = logging.INFO,
        quiet: bool = True,
        buffer_size: int = constants.LOG_BUFFER_SIZE,
        fmt: str = _MAIN_FORMAT,
    ):
        self.name = name
        self.path = Path(path)
        self.quiet = quiet
        self._closed = False
        self._captured: list = []

        # Raises OSError when the file cannot be opened
        self._handler = BufferedFileHandler(self.path, buffer_size=buffer_size)
        self._handler.setFormatter(logging.Formatter(fmt))

        logger = logging.getLogger(f"esmd.{name}")
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(level)
        logger.propagate = False
        logger.addHandler(self._handler)
        if not quiet:
            logger.addHandler(logfire.LogfireLoggingHandler())
        self.logger = logger

    @property
    def level(self) -> int:
        return self.logger.level

    @property
    def closed(self) -> bool:
        return self._closed

    def debug(self, message: str, *args: Any) -> None:
        self.logger.debug(message, *args)

    def info(self, message: str, *args: Any) -> None:
        self.logger.info(message, *args)

    def warning(self, message: str, *args: Any) -> None:
        self.logger.warning(message, *args)

    def error(self, message: str, *args: Any) -> None:
        self.logger.error(message, *args)

    def exception(self, message: str, *args: Any) -> None:
        self.logger.exception(message, *args)

    def capture(self, logger_name: str) -> None:
        """Route records of another stdlib logger (e.g. uvicorn.error) into this sink."""
        other = logging.getLogger(logger_name)
        if self._handler not in other.handlers:
            other.addHandler(self._handler)
            other.propagate = False
            self._captured.append(other)

    def record(self, payload: Dict[str, Any]) -> None:
        """Write one structured record as a single JSON line."""
        self.logger.info(json.dumps(payload, ensure_ascii=False, default=str))

    def flush(self) -> None:
        if not self._closed:
            self._handler.flush()

    def close(self) -> None:
        """Flush and close the sink. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for other in self._captured:
            other.removeHandler(self._handler)
        self._captured.clear()
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()


def open_log_sink(
    name: str,
    path: Path,
    *,
    level: int = logging.INFO,
    quiet: bool = True,
    buffer_size: int = constants.LOG_BUFFER_SIZE,
    fmt: str = _MAIN_FORMAT,
) -> LogSink:
    """
    Open a log sink, translating file errors.

    Raises:
        ObservabilityError: If the backing file cannot be opened
    """
    try:
        return LogSink(name, path, level=level, quiet=quiet, buffer_size=buffer_size, fmt=fmt)
    except OSError as e:
        raise ObservabilityError(f"initiate {name} logger ({path}): {e}") from e


@dataclass
class LogSinks:
    """The operational and access log sinks."""

    main: LogSink
    access: LogSink

    def close(self) -> None:
        self.access.close()
        self.main.close()


class UnifiedLogger:
    """Logger for a module or component, writing to the operational sink when bound."""

    def __init__(self, tag: str, sink: Optional[LogSink] = None):
        """
        Initialize unified logger for a module or component.

        Args:
            tag: Module or component identifier
            sink: Operational sink; without one records only go to Logfire
        """
        self.tag = tag
        self.sink = sink
        self._logfire_instance = None  # Lazy initialization

    @property
    def _logfire(self):
        """Lazy-loaded Logfire instance."""
        if self._logfire_instance is None:
            # keep whatever mode init_observability already chose
            if _logfire_config_state is None:
                configure_logfire()
            self._logfire_instance = logfire
        return self._logfire_instance

    def bind(self, sink: LogSink) -> "UnifiedLogger":
        """Return a logger with the same tag writing to the given sink."""
        return UnifiedLogger(self.tag, sink=sink)

    def _format(self, message: str, extra: Dict[str, Any]) -> str:
        text = f"[{self.tag}] {message}"
        if extra:
            text = f"{text} {json.dumps(extra, ensure_ascii=False, default=str)}"
        return text

    def _emit(self, level: str, message: str, extra: Dict[str, Any]) -> None:
        if self.sink is not None and not self.sink.closed:
            getattr(self.sink, level)(self._format(message, extra))
        else:
            getattr(self._logfire, level)(message, tag=self.tag, **extra)

    # Technical Instrumentation Methods

    def info(self, message: str, **extra: Any) -> None:
        """Technical info logging."""
        self._emit("info", message, extra)

    def warning(self, message: str, **extra: Any) -> None:
        """Technical warning logging."""
        self._emit("warning", message, extra)

    def error(self, message: str, **extra: Any) -> None:
        """Technical error logging."""
        self._emit("error", message, extra)

    def debug(self, message: str, **extra: Any) -> None:
        """Technical debug logging."""
        self._emit("debug", message, extra)


def init_observability(config: "RuntimeConfig") -> LogSinks:
    """
    Open the operational and access log sinks for a resolved configuration.

    The operational sink logs at INFO and stays quiet in production, and at
    DEBUG with console mirroring in debug mode. The access sink is always
    quiet and only persists structured request records.

    Raises:
        ObservabilityError: If either sink cannot be opened
    """
    configure_logfire(debug=config.debug)

    main = open_log_sink(
        "main",
        config.main_log_path,
        level=logging.DEBUG if config.debug else logging.INFO,
        quiet=not config.debug,
    )

    try:
        access = open_log_sink(
            "access",
            config.access_log_path,
            level=logging.INFO,
            quiet=True,
            fmt=_ACCESS_FORMAT,
        )
    except ObservabilityError as e:
        main.error(str(e))
        main.close()
        raise

    return LogSinks(main=main, access=access)


def utc_timestamp() -> str:
    """Return the current UTC time in the format used by structured records."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
