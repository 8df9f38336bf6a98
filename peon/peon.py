"""
Peon service wiring.

Builds every component from the settings and connects them explicitly:

    Watcher / webhooks -> Dispatcher -> BuildPipeline -> StatusStore
                                                      -> GitHubStatus
                                                      -> RenderCoordinator

Tests pass their own settings (and optionally datastore) to get an
isolated instance.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .cache import CacheManager
from .cleanup import CleanupManager
from .config import Settings
from .dispatcher import Dispatcher
from .gh import GitHubClient, GitHubStatus
from .models import Build, BuildStatus, RepoConfig
from .pipeline_runner import BuildPipeline
from .render import RenderCoordinator
from .status import StatusStore
from .storage import Database
from .watcher import Watcher

logger = logging.getLogger("peon")


class Peon:
    def __init__(
        self,
        settings: Settings,
        db: Optional[Database] = None,
        github_client: Optional[GitHubClient] = None,
    ):
        self.settings = settings
        self.db = db or Database(settings.database_location)
        self.renderer = RenderCoordinator(settings, self.db)
        self.github = GitHubStatus(settings, self.db, client=github_client)
        self.status = StatusStore(self.db, self.github, self.renderer)
        self.cache = CacheManager(
            settings.cache_directory,
            settings.cache_validity,
            max_size=settings.cache_max_size,
            atomic_writes=settings.cache_atomic_writes,
        )
        self.cleanup = CleanupManager(settings.cleanup_directory, self.status)
        self.dispatcher = Dispatcher(settings, self.status, self.run_build, self.run_cleanup)
        self.watchers: List[Watcher] = []
        self.started = False

    @property
    def git_env(self) -> Dict[str, str]:
        if self.settings.git_ssh_command:
            return {"GIT_SSH_COMMAND": self.settings.git_ssh_command}
        return {}

    async def run_build(self, build: Build, repo_config: RepoConfig) -> BuildStatus:
        pipeline = BuildPipeline(
            build,
            repo_config,
            self.settings,
            self.status,
            self.cache,
            cleanup=self.cleanup,
        )
        return await pipeline.run()

    async def run_cleanup(self, repo_config: RepoConfig) -> bool:
        return await self.cleanup.cleanup(repo_config.name, repo_config.ref_mode, repo_config.ref)

    def dispatch(self, event_type: str, payload: Dict[str, Any]) -> Optional[Build]:
        return self.dispatcher.dispatch(event_type, payload)

    def _on_watcher_change(self, url: str):
        def on_change(ref: str, sha: str) -> None:
            self.dispatch("push", {
                "ref": ref,
                "head_commit": {"id": sha},
                "repository": {"ssh_url": url},
            })

        return on_change

    async def start(self) -> None:
        """Abort stale builds, render the status pages and start watchers."""
        logger.info("Starting peon...", extra={"props": {"module": "peon"}})
        self.settings.validate_environment_specific_rules()

        self.status.abort_stale_builds()
        self.renderer.render()

        if self.settings.watcher_enabled:
            for repository in self.settings.watcher_repositories:
                watcher = Watcher(
                    repository,
                    self.settings.watcher_interval,
                    self._on_watcher_change(repository.url),
                    git_env=self.git_env,
                )
                watcher.start()
                self.watchers.append(watcher)

        self.started = True
        logger.info("Peon is ready", extra={"props": {"module": "peon"}})

    async def stop(self) -> None:
        logger.info("Stopping peon...", extra={"props": {"module": "peon"}})
        while self.watchers:
            await self.watchers.pop().stop()
        self.started = False
        logger.info("Stopped peon", extra={"props": {"module": "peon"}})

    async def join(self) -> None:
        """Wait until queued builds, status updates and renders are done."""
        await self.dispatcher.join()
        await self.github.join()
        await self.renderer.join()
