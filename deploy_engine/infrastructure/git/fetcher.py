# deploy_engine/infrastructure/git/fetcher.py
"""
Git source fetcher - clones or pulls application repositories into
`<repos_root>/<application_id>`.
"""

import asyncio
import logging
import os
from typing import List, Optional, Tuple

from deploy_engine.core.errors import FetchError
from deploy_engine.orchestrator.collaborators import FetchResult, SourceFetcher, UpdateCheck
from deploy_engine.orchestrator.config import PipelineSettings

logger = logging.getLogger(__name__)


_AUTH_HINTS = (
    "Authentication failed",
    "Permission denied",
    "could not read Username",
    "repository not found",
)


class GitSourceFetcher(SourceFetcher):
    def __init__(self, settings: PipelineSettings, git_binary: str = "git"):
        self._settings = settings
        self._git = git_binary
        self._env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}

    def tree_path(self, application_id: str) -> str:
        return os.path.join(self._settings.repos_root, application_id)

    # -------------------------
    # SUBPROCESS
    # -------------------------

    async def _git(self, args: List[str], timeout: Optional[float] = None) -> Tuple[int, str]:
        timeout = timeout or self._settings.fetch_timeout_seconds
        try:
            proc = await asyncio.create_subprocess_exec(
                self._git, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._env,
            )
        except OSError as e:
            raise FetchError(f"Could not run git: {e}") from e

        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise FetchError(f"git {args[0]} timed out after {timeout:.0f}s")

        return proc.returncode, out.decode("utf-8", errors="replace").strip()

    async def _git_checked(self, args: List[str]) -> str:
        code, output = await self._git(args)
        if code != 0:
            message = f"git {' '.join(args[:3])} failed ({code}): {output}"
            if any(hint in output for hint in _AUTH_HINTS):
                message += " (private repositories need a token in the URL)"
            raise FetchError(message)
        return output

    async def _revision(self, repo_dir: str, ref: str = "HEAD") -> str:
        return await self._git_checked(["-C", repo_dir, "rev-parse", ref])

    # -------------------------
    # FETCH
    # -------------------------

    async def fetch(self, application_id: str, source_location: str) -> FetchResult:
        repo_dir = self.tree_path(application_id)

        if not os.path.isdir(os.path.join(repo_dir, ".git")):
            logger.info(f"[git] 🔀 cloning {source_location} -> {repo_dir}")
            os.makedirs(self._settings.repos_root, exist_ok=True)
            await self._git_checked(["clone", source_location, repo_dir])
        else:
            logger.info(f"[git] ↻ pulling latest in {repo_dir}")
            await self._git_checked(["-C", repo_dir, "pull"])

        revision = await self._revision(repo_dir)
        logger.info(f"[git] {application_id} at {revision[:12]}")
        return FetchResult(path=repo_dir, revision=revision)

    async def check_for_updates(self, application_id: str, source_location: str) -> UpdateCheck:
        repo_dir = self.tree_path(application_id)

        # No local tree yet: the next fetch clones whatever is latest
        if not os.path.isdir(os.path.join(repo_dir, ".git")):
            return UpdateCheck(current_version=None, latest_version="unknown")

        await self._git_checked(["-C", repo_dir, "fetch", "origin"])
        current = await self._revision(repo_dir)
        latest = await self._revision(repo_dir, "origin/HEAD")
        return UpdateCheck(current_version=current, latest_version=latest)
