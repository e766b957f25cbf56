# deploy_engine/infrastructure/host/filesystem.py

import asyncio
import os
import shutil
from typing import Optional, Tuple

from deploy_engine.orchestrator.collaborators import HostFilesystem


def _parse_owner(owner: str) -> Tuple[int, int]:
    uid, _, gid = owner.partition(":")
    return int(uid), int(gid or uid)


class LocalHostFilesystem(HostFilesystem):
    """Host paths on the local machine; blocking calls run in worker threads."""

    # -------------------------
    # SYNC HELPERS
    # -------------------------

    @staticmethod
    def _ensure_directory(path: str, owner: str, mode: int) -> None:
        uid, gid = _parse_owner(owner)
        os.makedirs(path, mode=mode, exist_ok=True)
        os.chmod(path, mode)
        os.chown(path, uid, gid)

    @staticmethod
    def _chown_tree(path: str, owner: str) -> None:
        uid, gid = _parse_owner(owner)
        if not os.path.exists(path):
            return
        os.chown(path, uid, gid)
        for root, dirs, files in os.walk(path):
            for name in dirs + files:
                os.chown(os.path.join(root, name), uid, gid, follow_symlinks=False)

    @staticmethod
    def _remove_tree(path: str) -> None:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)

    @staticmethod
    def _write_text(path: str, content: str) -> None:
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)

    @staticmethod
    def _read_text(path: str) -> Optional[str]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None

    # -------------------------
    # ASYNC API
    # -------------------------

    async def ensure_directory(self, path: str, owner: str, mode: int = 0o755) -> None:
        await asyncio.to_thread(self._ensure_directory, path, owner, mode)

    async def chown_tree(self, path: str, owner: str) -> None:
        await asyncio.to_thread(self._chown_tree, path, owner)

    async def remove_tree(self, path: str) -> None:
        await asyncio.to_thread(self._remove_tree, path)

    async def write_text(self, path: str, content: str) -> None:
        await asyncio.to_thread(self._write_text, path, content)

    async def read_text(self, path: str) -> Optional[str]:
        return await asyncio.to_thread(self._read_text, path)
