"""Runtime bootstrap ordering and failure handling"""

import pytest

from core.database import open_store
from core.runtime.bootstrap import bootstrap_runtime
from core.runtime.errors import (
    DependencyMissingError,
    FilesystemError,
    ObservabilityError,
    RuntimeStartupError,
    StoreCorruptError,
    StoreOpenError,
)


def missing_node():
    raise DependencyMissingError("node", "not found in PATH")


class TestBootstrapRuntime:

    def test_builds_context(self, make_config, runtime_info):
        config = make_config()

        context = bootstrap_runtime(config, prober=lambda: runtime_info)
        try:
            assert context.runtime_info == runtime_info
            assert not context.store.closed
            assert config.builds_dir.is_dir()
            assert config.autotls_dir.is_dir()
            assert config.store_path.is_file()
        finally:
            context.close()

        assert context.store.closed
        assert context.sinks.main.closed
        assert "Runtime bootstrap completed" in config.main_log_path.read_text()

    def test_missing_runtime_touches_nothing(self, make_config):
        config = make_config()

        with pytest.raises(DependencyMissingError):
            bootstrap_runtime(config, prober=missing_node)

        assert not config.etc_dir.exists()
        assert not config.log_dir.exists()

    def test_filesystem_failure(self, make_config, runtime_info, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        config = make_config(etc_dir=blocker / "etc")

        with pytest.raises(FilesystemError):
            bootstrap_runtime(config, prober=lambda: runtime_info)

    def test_observability_failure(self, make_config, runtime_info):
        config = make_config()
        config.log_dir.mkdir(parents=True)
        config.main_log_path.mkdir()

        with pytest.raises(ObservabilityError):
            bootstrap_runtime(config, prober=lambda: runtime_info)

    def test_store_failure_is_logged(self, make_config, runtime_info):
        config = make_config()
        config.etc_dir.mkdir(parents=True)
        config.store_path.write_bytes(b"not a database at all " * 300)

        with pytest.raises(StoreCorruptError):
            bootstrap_runtime(config, prober=lambda: runtime_info)

        assert "Failed to open esmd.db" in config.main_log_path.read_text()

    def test_store_opener_receives_configured_permissions(self, make_config, runtime_info):
        config = make_config()
        seen = {}

        def opener(path, permissions):
            seen["args"] = (path, permissions)
            return open_store(path, permissions)

        context = bootstrap_runtime(config, prober=lambda: runtime_info, store_opener=opener)
        context.close()

        assert seen["args"] == (config.store_path, 0o666)

    def test_unexpected_error_is_wrapped(self, make_config, runtime_info):
        config = make_config()

        def opener(path, permissions):
            raise KeyError("surprise")

        with pytest.raises(RuntimeStartupError) as exc_info:
            bootstrap_runtime(config, prober=lambda: runtime_info, store_opener=opener)

        assert not isinstance(exc_info.value, StoreOpenError)
        assert "Runtime bootstrap failed" in config.main_log_path.read_text()
