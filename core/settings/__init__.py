"""
Application settings resolution.

Reads environment variables through a typed settings model, layers Go-style
command-line flags on top, and produces the immutable RuntimeConfig used by
bootstrap. Development launches are detected from the executable name and
rebased through apply_dev_overrides after parsing.
"""

import argparse
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core import constants
from core.runtime.config import (
    RunMode,
    RuntimeConfig,
    apply_dev_overrides,
    is_development_entry,
)
from core.runtime.errors import ConfigurationError


_TRUE_VALUES = {"1", "t", "true"}
_FALSE_VALUES = {"0", "f", "false"}


class AppSettings(BaseSettings):
    """
    Infrastructure settings loaded from environment variables.

    These only provide defaults; explicit command-line flags win.
    """

    model_config = SettingsConfigDict(env_prefix="ESMD_", env_file=None, extra="ignore")

    port: int = Field(default=constants.DEFAULT_PORT)
    https_port: int = Field(default=constants.DEFAULT_HTTPS_PORT)
    etc_dir: Path = Field(default=Path(constants.DEFAULT_ETC_DIR))
    cdn_domain: str = Field(default=constants.DEFAULT_CDN_DOMAIN)
    debug: bool = Field(default=False)
    log_dir: Path = Field(default=Path(constants.DEFAULT_LOG_DIR))

    @field_validator("etc_dir", "log_dir", mode="before")
    @classmethod
    def _expand_path(cls, value):
        """Expand user paths to Path instances."""
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str) and value:
            return Path(value).expanduser()
        return value


def parse_bool(value: str) -> bool:
    """Parse a boolean flag value the way Go's flag package does."""
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {value!r}")


class FlagParser(argparse.ArgumentParser):
    """Argument parser that raises ConfigurationError instead of exiting."""

    def error(self, message):
        raise ConfigurationError(message)


def build_flag_parser(defaults: AppSettings) -> FlagParser:
    """Create the esmd flag parser seeded with environment defaults."""
    parser = FlagParser(
        prog="esmd",
        description="esm.sh CDN server",
        allow_abbrev=False,
    )
    parser.add_argument("-port", "--port", dest="port", type=int,
                        default=defaults.port, help="http server port")
    parser.add_argument("-https-port", "--https-port", dest="https_port", type=int,
                        default=defaults.https_port, help="https server port")
    parser.add_argument("-etc-dir", "--etc-dir", dest="etc_dir",
                        default=str(defaults.etc_dir), help="etc dir")
    parser.add_argument("-cdn-domain", "--cdn-domain", dest="cdn_domain",
                        default=defaults.cdn_domain, help="cdn domain")
    parser.add_argument("-debug", "--debug", dest="debug", type=parse_bool,
                        nargs="?", const=True, default=defaults.debug,
                        help="run server in debug mode")
    return parser


def load_environment_settings() -> AppSettings:
    """Load environment defaults, translating validation failures."""
    try:
        return AppSettings()
    except ValidationError as exc:
        problems = "; ".join(
            f"ESMD_{str(err['loc'][0]).upper()}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"invalid environment configuration: {problems}") from exc


def resolve_settings(
    argv: Optional[Sequence[str]] = None,
    exe_name: Optional[str] = None,
    cwd: Optional[Path] = None,
) -> RuntimeConfig:
    """
    Resolve the runtime configuration for this process.

    Args:
        argv: Command-line arguments without the program name (defaults to sys.argv[1:])
        exe_name: Name the process was launched with (defaults to sys.argv[0])
        cwd: Working directory used for the development sandbox

    Returns:
        Validated RuntimeConfig

    Raises:
        ConfigurationError: On unknown flags, malformed values or invalid settings
    """
    if argv is None:
        argv = sys.argv[1:]
    if exe_name is None:
        exe_name = sys.argv[0] if sys.argv else ""

    env = load_environment_settings()
    args = build_flag_parser(env).parse_args(list(argv))
    if not args.etc_dir or not args.etc_dir.strip():
        raise ConfigurationError("-etc-dir must not be empty")

    config = RuntimeConfig(
        port=args.port,
        https_port=args.https_port,
        etc_dir=Path(args.etc_dir).expanduser(),
        cdn_domain=args.cdn_domain,
        debug=args.debug,
        log_dir=env.log_dir,
        mode=RunMode.PRODUCTION,
    )

    if is_development_entry(exe_name):
        config = apply_dev_overrides(config, cwd or Path(os.getcwd()))

    return config
