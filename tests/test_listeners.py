"""Listener supervisor on ephemeral ports"""

import asyncio
import socket

import httpx
import pytest
from fastapi import FastAPI

from conftest import free_ports
from core.runtime.config import ListenerConfig
from core.runtime.errors import ListenerStartError
from core.runtime.listeners import ListenerState, ListenerSupervisor, bind_socket
from core.tls import CertificateCache, CertificateManager, SelfSignedIssuer


def make_app(label):
    app = FastAPI()

    @app.get("/ping")
    async def ping():
        return {"listener": label}

    return app


@pytest.fixture
def tls_context(tmp_path):
    manager = CertificateManager(CertificateCache(tmp_path / "autotls"), SelfSignedIssuer(), accept_tos=False)
    yield manager.build_context()
    manager.close()


@pytest.fixture
def listener_config(tmp_path):
    port, https_port = free_ports(2)
    return ListenerConfig(
        port=port,
        https_port=https_port,
        cache_dir=tmp_path / "autotls",
        auto_redirect=False,
        accept_tos=False,
        host="127.0.0.1",
    )


class TestBindSocket:

    def test_conflict_raises_oserror(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
            holder.bind(("127.0.0.1", 0))
            holder.listen()
            port = holder.getsockname()[1]

            with pytest.raises(OSError):
                bind_socket("127.0.0.1", port)


class TestListenerSupervisor:

    @pytest.mark.asyncio
    async def test_serves_plaintext_and_tls(self, listener_config, tls_context):
        supervisor = ListenerSupervisor(
            listener_config, make_app("tls"), tls_context, plaintext_app=make_app("plain"),
        )
        await supervisor.start()
        try:
            assert supervisor.state is ListenerState.RUNNING
            async with httpx.AsyncClient() as client:
                plain = await client.get(f"http://127.0.0.1:{listener_config.port}/ping")
            async with httpx.AsyncClient(verify=False) as client:
                secure = await client.get(f"https://127.0.0.1:{listener_config.https_port}/ping")
        finally:
            await supervisor.stop()

        assert plain.json() == {"listener": "plain"}
        assert secure.json() == {"listener": "tls"}
        assert "server" not in secure.headers
        assert supervisor.state is ListenerState.STOPPED

    @pytest.mark.asyncio
    async def test_port_conflict(self, listener_config, tls_context):
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(("127.0.0.1", listener_config.https_port))
        holder.listen()
        try:
            supervisor = ListenerSupervisor(listener_config, make_app("tls"), tls_context)
            with pytest.raises(ListenerStartError, match="https listener cannot bind"):
                await supervisor.start()
        finally:
            holder.close()

        assert supervisor.state is ListenerState.STOPPED
        # the plaintext socket bound before the failure was released
        bind_socket("127.0.0.1", listener_config.port).close()

    @pytest.mark.asyncio
    async def test_run_until_event(self, listener_config, tls_context):
        supervisor = ListenerSupervisor(listener_config, make_app("tls"), tls_context)
        event = asyncio.Event()
        await supervisor.start()
        try:
            asyncio.get_running_loop().call_later(0.1, event.set)
            exited = await asyncio.wait_for(supervisor.run_until(event), timeout=5)
        finally:
            await supervisor.stop()

        assert exited is None

    @pytest.mark.asyncio
    async def test_start_twice(self, listener_config, tls_context):
        supervisor = ListenerSupervisor(listener_config, make_app("tls"), tls_context)
        await supervisor.start()
        try:
            with pytest.raises(RuntimeError):
                await supervisor.start()
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, listener_config, tls_context):
        supervisor = ListenerSupervisor(listener_config, make_app("tls"), tls_context)
        await supervisor.start()

        await supervisor.stop()
        await supervisor.stop()

        assert supervisor.state is ListenerState.STOPPED
