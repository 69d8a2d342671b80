"""Filesystem preparation"""

import os

import pytest

from core.runtime.errors import FilesystemError
from core.runtime.paths import ensure_directory, prepare_filesystem, required_directories


class TestEnsureDirectory:

    def test_creates_missing_ancestors(self, tmp_path):
        target = tmp_path / "a" / "b" / "c"

        assert ensure_directory(target) is True
        assert target.is_dir()

    def test_existing_directory_is_untouched(self, tmp_path):
        target = tmp_path / "existing"
        target.mkdir()
        marker = target / "keep.txt"
        marker.write_text("data")

        assert ensure_directory(target) is False
        assert marker.read_text() == "data"

    def test_file_in_the_way(self, tmp_path):
        target = tmp_path / "blocker"
        target.write_text("")

        with pytest.raises(FilesystemError, match="not a directory"):
            ensure_directory(target)

    def test_file_as_ancestor(self, tmp_path):
        (tmp_path / "blocker").write_text("")

        with pytest.raises(FilesystemError):
            ensure_directory(tmp_path / "blocker" / "child")

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    def test_unwritable_parent(self, tmp_path):
        parent = tmp_path / "locked"
        parent.mkdir(mode=0o500)
        try:
            with pytest.raises(FilesystemError):
                ensure_directory(parent / "child")
        finally:
            parent.chmod(0o700)


class TestPrepareFilesystem:

    def test_creates_every_required_directory(self, make_config):
        config = make_config()

        created = prepare_filesystem(config)

        # the store parent is the etc dir, already created with builds/
        assert created == [config.builds_dir, config.log_dir, config.autotls_dir]
        for directory in required_directories(config):
            assert directory.is_dir()

    def test_is_idempotent(self, make_config):
        config = make_config()
        prepare_filesystem(config)
        (config.builds_dir / "artifact.js").write_text("export {}")

        assert prepare_filesystem(config) == []
        assert (config.builds_dir / "artifact.js").read_text() == "export {}"
