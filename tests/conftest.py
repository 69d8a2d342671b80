"""Shared pytest fixtures."""

import socket
import subprocess
from datetime import datetime, timezone

import pytest

from core.database import open_store
from core.logger import UnifiedLogger, init_observability
from core.nodejs import RuntimeInfo
from core.runtime.config import RuntimeConfig
from core.runtime.context import RuntimeContext
from core.runtime.paths import prepare_filesystem


def free_ports(count=2):
    """Reserve distinct ephemeral ports on 127.0.0.1 and release them."""
    socks = []
    try:
        for _ in range(count):
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.bind(("127.0.0.1", 0))
            socks.append(sock)
        return [sock.getsockname()[1] for sock in socks]
    finally:
        for sock in socks:
            sock.close()


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class FakeRunner:
    """Subprocess runner returning canned results keyed by executable."""

    def __init__(self, **responses):
        self.responses = responses
        self.calls = []

    def __call__(self, args, timeout):
        self.calls.append(list(args))
        outcome = self.responses[args[0]]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def runtime_info():
    return RuntimeInfo(version="20.11.1", registry="https://registry.npmjs.org/")


@pytest.fixture
def make_config(tmp_path):
    """Factory for configs rooted in the test's temporary directory."""

    def _make(**overrides):
        port, https_port = free_ports(2)
        values = dict(
            port=port,
            https_port=https_port,
            etc_dir=tmp_path / "etc",
            log_dir=tmp_path / "log",
            cdn_domain="",
            debug=False,
            host="127.0.0.1",
        )
        values.update(overrides)
        return RuntimeConfig(**values)

    return _make


@pytest.fixture
def make_runtime_context(make_config, runtime_info):
    """Factory for fully initialized runtime contexts backed by real files."""
    contexts = []

    def _make(**overrides):
        config = make_config(**overrides)
        prepare_filesystem(config)
        sinks = init_observability(config)
        store = open_store(config.store_path)
        context = RuntimeContext(
            config=config,
            runtime_info=runtime_info,
            store=store,
            sinks=sinks,
            logger=UnifiedLogger(tag="test", sink=sinks.main),
            started_at=datetime.now(timezone.utc),
        )
        contexts.append(context)
        return context

    yield _make
    for context in contexts:
        context.close()


@pytest.fixture
def runtime_context(make_runtime_context):
    """A production-mode runtime context."""
    return make_runtime_context()
