#tests\test_host_filesystem.py

"""Local host filesystem collaborator, against a temporary directory."""

import asyncio
import os

from deploy_engine.infrastructure.host.filesystem import LocalHostFilesystem


def _owner():
    return f"{os.getuid()}:{os.getgid()}"


class TestLocalHostFilesystem:
    def test_write_then_read(self, tmp_path):
        fs = LocalHostFilesystem()
        path = str(tmp_path / "docker-compose.yml")

        asyncio.run(fs.write_text(path, "services: {}\n"))

        assert asyncio.run(fs.read_text(path)) == "services: {}\n"
        assert not os.path.exists(path + ".tmp")

    def test_read_missing_file(self, tmp_path):
        assert asyncio.run(LocalHostFilesystem().read_text(str(tmp_path / "missing"))) is None

    def test_ensure_directory_and_chown(self, tmp_path):
        fs = LocalHostFilesystem()
        path = str(tmp_path / "app" / "config")

        asyncio.run(fs.ensure_directory(path, _owner(), mode=0o750))
        asyncio.run(fs.chown_tree(str(tmp_path / "app"), _owner()))

        assert os.path.isdir(path)
        assert os.stat(path).st_mode & 0o777 == 0o750

    def test_remove_tree(self, tmp_path):
        fs = LocalHostFilesystem()
        (tmp_path / "app" / "data").mkdir(parents=True)
        (tmp_path / "app" / "data" / "file").write_text("x")

        asyncio.run(fs.remove_tree(str(tmp_path / "app")))
        asyncio.run(fs.remove_tree(str(tmp_path / "never-existed")))

        assert not (tmp_path / "app").exists()
