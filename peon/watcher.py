"""
Polling watcher for repositories that cannot send webhooks.

Each watcher periodically lists the branch heads of a remote repository
with ``git ls-remote`` and reports branches whose head changed since the
previous poll. Every watched branch is reported on the first poll.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from git import Git
from git.exc import GitCommandError
from starlette.concurrency import run_in_threadpool

from .dispatcher import BRANCH_PREFIX, extract_repo_name
from .models import WatchedRepository

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, str], None]


def parse_ls_remote(output: str) -> Dict[str, str]:
    """Parse ``git ls-remote --heads`` output into {branch: sha}."""
    heads = {}
    for line in output.splitlines():
        sha, _, ref = line.strip().partition("\t")
        if ref.startswith(BRANCH_PREFIX):
            heads[ref[len(BRANCH_PREFIX):]] = sha
    return heads


class Watcher:
    def __init__(
        self,
        repository: WatchedRepository,
        interval: float,
        on_change: ChangeCallback,
        git_env: Optional[Dict[str, str]] = None,
    ):
        self.repository = repository
        self.repo_name = extract_repo_name(repository.url)
        self.interval = interval
        self.on_change = on_change
        self.git_env = git_env or {}
        self.known_shas: Dict[str, str] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def _props(self) -> dict:
        return {"props": {"module": f"watcher/{self.repo_name}"}}

    def _ls_remote(self) -> str:
        git = Git()
        git.update_environment(**self.git_env)
        return git.ls_remote("--heads", self.repository.url)

    async def poll(self) -> List[Tuple[str, str]]:
        """
        Check the remote once and report changed branches.

        Returns:
            (ref, sha) pairs reported to the change callback
        """
        heads = parse_ls_remote(await run_in_threadpool(self._ls_remote))
        branches = self.repository.branches
        if branches is None:
            branches = sorted(heads)

        changes = []
        for branch in branches:
            sha = heads.get(branch)
            if sha is None:
                logger.debug(f"branch {branch} not found on remote", extra=self._props)
                continue
            if self.known_shas.get(branch) != sha:
                logger.info(f"branch {branch} changed, new SHA is {sha}", extra=self._props)
                self.known_shas[branch] = sha
                changes.append((f"{BRANCH_PREFIX}{branch}", sha))

        for ref, sha in changes:
            self.on_change(ref, sha)
        return changes

    async def _loop(self) -> None:
        while True:
            try:
                await self.poll()
            except GitCommandError as e:
                logger.warning(f"could not poll {self.repository.url}: {e}", extra=self._props)
            except Exception:
                logger.exception(f"error while polling {self.repository.url}", extra=self._props)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        branches = ", ".join(self.repository.branches or ["all branches"])
        logger.info(f"starting watcher for {self.repository.url} on {branches}", extra=self._props)
        self._task = asyncio.ensure_future(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
