"""
Node.js runtime detection.

The build service needs a working Node.js + npm toolchain. The probe runs
once at startup, before anything is written to disk, and returns the
version and registry the request handlers use to select build variants.
"""

import re
import subprocess
from dataclasses import dataclass
from typing import Callable, Sequence

from core import constants
from core.runtime.errors import DependencyMissingError


_VERSION_PATTERN = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")

# runner(args, timeout) -> CompletedProcess; injectable for tests
Runner = Callable[[Sequence[str], float], subprocess.CompletedProcess]


@dataclass(frozen=True)
class RuntimeInfo:
    """Version and package registry of the Node.js runtime."""

    version: str
    registry: str

    @property
    def major(self) -> int:
        return int(self.version.split(".", 1)[0])


def _run(args: Sequence[str], timeout: float) -> subprocess.CompletedProcess:
    return subprocess.run(
        list(args),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def _invoke(runner: Runner, args: Sequence[str], timeout: float) -> str:
    binary = args[0]
    try:
        result = runner(args, timeout)
    except FileNotFoundError as e:
        raise DependencyMissingError(binary, "not found in PATH") from e
    except PermissionError as e:
        raise DependencyMissingError(binary, f"not executable: {e}") from e
    except subprocess.TimeoutExpired as e:
        raise DependencyMissingError(binary, f"timed out after {timeout:g}s") from e

    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        raise DependencyMissingError(
            binary,
            f"`{' '.join(args)}` exited with status {result.returncode}"
            + (f": {detail}" if detail else ""),
        )
    return (result.stdout or "").strip()


def parse_node_version(output: str) -> str:
    """Extract `major.minor.patch` from `node --version` output."""
    match = _VERSION_PATTERN.match(output.strip())
    if not match:
        raise DependencyMissingError(constants.NODE_BINARY, f"unrecognized version output {output!r}")
    return ".".join(match.groups())


def normalize_registry(output: str) -> str:
    """Return the registry URL with exactly one trailing slash."""
    registry = output.strip()
    if not registry or registry == "undefined":
        return constants.DEFAULT_NPM_REGISTRY
    return registry.rstrip("/") + "/"


def probe_node_runtime(
    node: str = constants.NODE_BINARY,
    npm: str = constants.NPM_BINARY,
    min_major: int = constants.NODE_MIN_MAJOR_VERSION,
    runner: Runner = _run,
    timeout: float = constants.RUNTIME_PROBE_TIMEOUT,
) -> RuntimeInfo:
    """
    Check that Node.js and npm are installed and usable.

    Args:
        node: Node.js executable
        npm: npm executable
        min_major: Lowest supported Node.js major version
        runner: Subprocess runner
        timeout: Seconds allowed per command

    Returns:
        RuntimeInfo with the Node.js version and npm registry

    Raises:
        DependencyMissingError: If either tool is missing, fails or is too old
    """
    version = parse_node_version(_invoke(runner, [node, "--version"], timeout))
    info_major = int(version.split(".", 1)[0])
    if info_major < min_major:
        raise DependencyMissingError(
            node, f"version {version} is too old, need >= {min_major}.0.0"
        )

    registry = normalize_registry(_invoke(runner, [npm, "config", "get", "registry"], timeout))
    return RuntimeInfo(version=version, registry=registry)
