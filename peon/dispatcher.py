"""
Change event dispatcher.

Turns push events, received through webhooks or emitted by the watcher,
into builds. Builds of a repository run one at a time, in the order their
events were received; builds of different repositories run concurrently.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from .config import Settings
from .models import Build, PushEvent, RefMode, RepoConfig
from .queue import SerialQueue
from .status import StatusStore

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "refs/heads/"
TAG_PREFIX = "refs/tags/"

BuildRunner = Callable[[Build, RepoConfig], Any]
CleanupRunner = Callable[[RepoConfig], Any]


def extract_repo_name(url: str) -> str:
    """Return the last path item of a repository URL, without .git."""
    name = url.rstrip("/").split("/")[-1]
    # scp-like URLs without a path separator (host:repo.git)
    name = name.split(":")[-1]
    return name[:-4] if name.endswith(".git") else name


def parse_ref(ref: str) -> Optional[tuple]:
    if ref.startswith(BRANCH_PREFIX):
        return RefMode.branch, ref[len(BRANCH_PREFIX):]
    if ref.startswith(TAG_PREFIX):
        return RefMode.tag, ref[len(TAG_PREFIX):]
    return None


class Dispatcher:
    """
    Route events to per-repository serial queues.

    Args:
        settings: Application settings (watched repositories, webhooks)
        status: Status store used to create build records
        run_build: Coroutine function running a build
        run_cleanup: Coroutine function removing the deployed output of a ref
    """

    def __init__(
        self,
        settings: Settings,
        status: StatusStore,
        run_build: BuildRunner,
        run_cleanup: Optional[CleanupRunner] = None,
    ):
        self.settings = settings
        self.status = status
        self.run_build = run_build
        self.run_cleanup = run_cleanup
        self.queues: Dict[str, SerialQueue] = {}

    def queue_for(self, repo_name: str) -> SerialQueue:
        if repo_name not in self.queues:
            self.queues[repo_name] = SerialQueue(f"dispatcher/{repo_name}")
        return self.queues[repo_name]

    def find_repository(self, event_type: str, payload: Dict[str, Any]) -> Optional[RepoConfig]:
        """
        Resolve the repository configuration an event applies to.

        Returns None for events that must be ignored: non-push events, refs
        that are neither branches nor tags, unknown repositories and
        branches excluded by the watched repository configuration.
        """
        if event_type != "push":
            logger.debug(f"unhandled event {event_type}", extra={"props": {"module": "dispatcher"}})
            return None

        try:
            event = PushEvent.model_validate(payload)
        except ValidationError:
            logger.debug("ignoring invalid push payload", extra={"props": {"module": "dispatcher"}})
            return None

        parsed = parse_ref(event.ref)
        if parsed is None:
            logger.debug(f"will not handle ref {event.ref}", extra={"props": {"module": "dispatcher"}})
            return None
        ref_mode, ref = parsed

        url = event.url
        if not url:
            logger.debug("push payload has no repository URL", extra={"props": {"module": "dispatcher"}})
            return None
        repo_name = extract_repo_name(url)

        branches = None
        known = False
        if self.settings.watcher_enabled:
            for watched in self.settings.watcher_repositories:
                if watched.url == url:
                    branches, known = watched.branches, True
                    break
        if not known and not self.settings.webhooks_enabled:
            logger.debug(
                f"cannot find configured repo with URL {url}",
                extra={"props": {"module": "dispatcher"}},
            )
            return None

        if ref_mode == RefMode.branch and branches is not None and ref not in branches:
            logger.debug(f"will not handle ref {event.ref}", extra={"props": {"module": f"dispatcher/{repo_name}"}})
            return None

        return RepoConfig(name=repo_name, url=url, ref_mode=ref_mode, ref=ref, branches=branches)

    def dispatch(self, event_type: str, payload: Dict[str, Any]) -> Optional[Build]:
        """
        Enqueue the build (or cleanup) an event calls for.

        Returns:
            The created build, or None when no build was enqueued
        """
        repo_config = self.find_repository(event_type, payload)
        if repo_config is None:
            return None

        queue = self.queue_for(repo_config.name)
        module = f"dispatcher/{repo_config.name}"

        if payload.get("deleted"):
            if self.run_cleanup is not None:
                logger.debug(
                    f"enqueuing cleanup of {repo_config.ref_mode.value} {repo_config.ref}",
                    extra={"props": {"module": module}},
                )
                queue.run(lambda: self.run_cleanup(repo_config))
            return None

        sha = (payload.get("head_commit") or {}).get("id")
        if not sha:
            logger.debug("push payload has no head commit", extra={"props": {"module": module}})
            return None

        build = self.status.start_build(
            repo_config.url, repo_config.name, repo_config.ref_mode, repo_config.ref, sha
        )
        logger.debug(f"enqueuing build {build.id}", extra={"props": {"module": module}})
        queue.run(lambda: self.run_build(build, repo_config))
        return build

    async def join(self) -> None:
        """Wait for every queued build to finish."""
        for queue in list(self.queues.values()):
            await queue.join()
