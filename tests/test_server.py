"""End-to-end serving and exit codes"""

import asyncio
import os
import signal

import httpx
import pytest

from core.runtime.errors import (
    DependencyMissingError,
    ListenerStartError,
    RuntimeStartupError,
    StorePathError,
)
from core.runtime.server import EXIT_USAGE, describe_fatal, run, serve


async def wait_until_serving(task, url, **client_kwargs):
    """Poll url until it answers; surface the serve() error if it died first."""
    async with httpx.AsyncClient(**client_kwargs) as client:
        for _ in range(200):
            if task.done():
                task.result()
                pytest.fail("serve() returned before listening")
            try:
                return await client.get(url, follow_redirects=False)
            except httpx.TransportError:
                await asyncio.sleep(0.05)
    pytest.fail(f"{url} never answered")


class TestServe:

    @pytest.mark.asyncio
    async def test_debug_serves_app_on_both_listeners(self, make_config, runtime_info):
        config = make_config(debug=True)
        task = asyncio.create_task(serve(config, prober=lambda: runtime_info))

        plain = await wait_until_serving(task, f"http://127.0.0.1:{config.port}/api/health")
        secure = await wait_until_serving(
            task, f"https://127.0.0.1:{config.https_port}/api/health", verify=False
        )
        os.kill(os.getpid(), signal.SIGTERM)
        exit_code = await asyncio.wait_for(task, timeout=15)

        assert plain.status_code == 200
        assert plain.headers["server"] == "esm.sh"
        assert "x-debug-duration" in plain.headers
        assert secure.status_code == 200
        assert exit_code == 0
        log = config.main_log_path.read_text()
        assert "Received termination signal" in log
        assert "Store closed" in log

    @pytest.mark.asyncio
    async def test_production_redirects_plaintext(self, make_config, runtime_info):
        config = make_config(debug=False)
        task = asyncio.create_task(serve(config, prober=lambda: runtime_info))

        plain = await wait_until_serving(task, f"http://127.0.0.1:{config.port}/api/health")
        secure = await wait_until_serving(
            task, f"https://127.0.0.1:{config.https_port}/api/health", verify=False
        )
        os.kill(os.getpid(), signal.SIGINT)
        exit_code = await asyncio.wait_for(task, timeout=15)

        assert plain.status_code == 308
        assert plain.headers["location"] == f"https://127.0.0.1:{config.https_port}/api/health"
        # no SNI for an IP literal: served with the fallback certificate
        assert secure.status_code == 200
        assert exit_code == 0

    @pytest.mark.asyncio
    async def test_missing_runtime(self, make_config):
        config = make_config()

        def missing_node():
            raise DependencyMissingError("node", "not found in PATH")

        with pytest.raises(DependencyMissingError):
            await serve(config, prober=missing_node)

        assert not config.etc_dir.exists()

    @pytest.mark.asyncio
    async def test_listener_conflict_closes_store(self, make_config, runtime_info):
        import socket

        config = make_config()
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(("127.0.0.1", config.port))
        holder.listen()
        try:
            with pytest.raises(ListenerStartError):
                await serve(config, prober=lambda: runtime_info)
        finally:
            holder.close()

        log = config.main_log_path.read_text()
        assert "Listener startup failed" in log
        assert "Store closed" in log


class TestRun:

    def test_invalid_flags_exit_with_usage(self, capsys):
        assert run(["-port", "not-a-number"], exe_name="esmd") == EXIT_USAGE
        assert "invalid configuration" in capsys.readouterr().err

    @pytest.mark.parametrize("error,label", [
        (DependencyMissingError("node", "missing"), "nodejs"),
        (StorePathError("/x/esmd.db", "missing"), "initiate esmd.db"),
        (ListenerStartError("busy"), "listen"),
        (RuntimeStartupError("odd"), "bootstrap"),
    ])
    def test_describe_fatal(self, error, label):
        assert describe_fatal(error) == label
