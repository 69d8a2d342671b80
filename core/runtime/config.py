"""
Runtime configuration for esmd bootstrap.

Provides the immutable settings value object resolved once at startup,
the development-mode override step, and the listener configuration
derived from it.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Tuple

from core import constants
from .errors import ConfigurationError


class RunMode(str, Enum):
    """How the process was launched."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


@dataclass(frozen=True)
class ListenerConfig:
    """
    Listener settings consumed once by the listener supervisor.

    Attributes:
        port: Plaintext HTTP port
        https_port: TLS port
        cache_dir: Directory holding issued certificates
        auto_redirect: Redirect plaintext traffic to the TLS listener
        accept_tos: Consent to automatic certificate issuance
        host: Bind address for both listeners
        domains: Hostnames allowed for automatic issuance (empty means any)
    """

    port: int
    https_port: int
    cache_dir: Path
    auto_redirect: bool
    accept_tos: bool
    host: str = constants.DEFAULT_BIND_HOST
    domains: Tuple[str, ...] = ()

    @property
    def webroot(self) -> Path:
        """Directory served at /.well-known/acme-challenge/ by the plaintext listener."""
        return self.cache_dir / constants.ACME_WEBROOT_DIR


@dataclass(frozen=True)
class RuntimeConfig:
    """
    Configuration for esmd runtime bootstrap.

    Immutable after resolution. All filesystem locations are derived from
    etc_dir and log_dir so the development override only has to rebase
    those two roots.

    Attributes:
        port: Plaintext HTTP port
        https_port: TLS port
        etc_dir: Configuration and data root
        cdn_domain: Public domain used for CDN links (empty in development)
        debug: Verbose logging and debug middleware
        log_dir: Root directory for main.log and access.log
        mode: Development or production profile
    """

    port: int = constants.DEFAULT_PORT
    https_port: int = constants.DEFAULT_HTTPS_PORT
    etc_dir: Path = Path(constants.DEFAULT_ETC_DIR)
    cdn_domain: str = constants.DEFAULT_CDN_DOMAIN
    debug: bool = False
    log_dir: Path = Path(constants.DEFAULT_LOG_DIR)
    mode: RunMode = RunMode.PRODUCTION
    host: str = field(default=constants.DEFAULT_BIND_HOST, compare=False)

    def __post_init__(self):
        """Validate configuration after initialization."""
        # Frozen dataclass: normalise through object.__setattr__
        if isinstance(self.etc_dir, str):
            object.__setattr__(self, "etc_dir", Path(self.etc_dir))
        if isinstance(self.log_dir, str):
            object.__setattr__(self, "log_dir", Path(self.log_dir))
        if isinstance(self.mode, str):
            object.__setattr__(self, "mode", RunMode(self.mode))

        for name in ("port", "https_port"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
            if not 1 <= value <= 65535:
                raise ConfigurationError(f"{name} must be between 1 and 65535, got {value}")
        if self.port == self.https_port:
            raise ConfigurationError(f"port and https_port must differ (both {self.port})")

        if not str(self.etc_dir).strip():
            raise ConfigurationError("etc_dir must not be empty")
        if not str(self.log_dir).strip():
            raise ConfigurationError("log_dir must not be empty")

    @property
    def is_development(self) -> bool:
        return self.mode is RunMode.DEVELOPMENT

    @property
    def builds_dir(self) -> Path:
        return self.etc_dir / constants.BUILDS_DIR

    @property
    def store_path(self) -> Path:
        return self.etc_dir / constants.STORE_FILE

    @property
    def autotls_dir(self) -> Path:
        return self.etc_dir / constants.AUTOTLS_CACHE_DIR

    @property
    def main_log_path(self) -> Path:
        return self.log_dir / constants.MAIN_LOG_FILE

    @property
    def access_log_path(self) -> Path:
        return self.log_dir / constants.ACCESS_LOG_FILE

    def listener_config(self) -> ListenerConfig:
        """Derive the listener configuration from these settings."""
        return ListenerConfig(
            port=self.port,
            https_port=self.https_port,
            cache_dir=self.autotls_dir,
            auto_redirect=not self.debug,
            accept_tos=not self.debug,
            host=self.host,
            domains=(self.cdn_domain,) if self.cdn_domain else (),
        )

    def summary(self) -> dict:
        """Return a loggable view of the resolved settings."""
        return {
            "mode": self.mode.value,
            "port": self.port,
            "https_port": self.https_port,
            "etc_dir": str(self.etc_dir),
            "log_dir": str(self.log_dir),
            "cdn_domain": self.cdn_domain,
            "debug": self.debug,
        }


def is_development_entry(exe_name: str) -> bool:
    """Return True when the process was launched through a development entry point."""
    if not exe_name:
        return False
    return Path(exe_name).name in constants.DEV_ENTRY_NAMES


def apply_dev_overrides(config: RuntimeConfig, cwd: Path) -> RuntimeConfig:
    """
    Rebase a resolved configuration onto the local development sandbox.

    The override is unconditional: explicit values for cdn_domain, debug,
    etc_dir and log_dir are replaced regardless of where they came from.
    Ports are left as resolved.
    """
    etc_dir = Path(cwd).resolve() / constants.DEV_ROOT_DIR
    return dataclasses.replace(
        config,
        cdn_domain="",
        debug=True,
        etc_dir=etc_dir,
        log_dir=etc_dir / "log",
        mode=RunMode.DEVELOPMENT,
    )
