"""
Build status reporting.

StatusStore is the single entry point used by the build engine to record
progress. Every change is written to the datastore, forwarded to the
commit-status sink and triggers a (coalesced) render of the status pages.
The sink hears about step transitions only, not about streamed output.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from .models import Build, BuildStatus, RefMode, StepStatus
from .storage import Database

logger = logging.getLogger(__name__)

STALE_STEP_INFO = "(stale build was aborted)"


class StatusSink(Protocol):
    def update(self, build_id: int, state: str, description: str) -> None: ...


class Renderer(Protocol):
    def render(self) -> None: ...


def finish_description(status: BuildStatus) -> str:
    if status == BuildStatus.success:
        return "Peon build is finished"
    if status == BuildStatus.cancelled:
        return "Peon build was cancelled"
    return "Peon build has failed"


class StatusStore:
    """Record build and step transitions."""

    def __init__(self, db: Database, sink: StatusSink, renderer: Renderer):
        self.db = db
        self.sink = sink
        self.renderer = renderer

    def abort_stale_builds(self) -> int:
        """
        Cancel builds left pending or running by a previous process.

        Running steps of those builds are marked failed. Returns the number
        of aborted builds.
        """
        stale = self.db.get_stale_builds()
        for build in stale:
            for step in self.db.get_steps(build.id):
                if step.status != StepStatus.running:
                    continue
                output = f"{step.output}\n{STALE_STEP_INFO}" if step.output else STALE_STEP_INFO
                self.db.update_step(build.id, step.description, StepStatus.failed, output)

            self.db.update_build(build.id, BuildStatus.cancelled)
            logger.info(
                f"aborted stale build {build.id}",
                extra={"props": {"module": "status", "repo": build.repo_name}},
            )
            self.sink.update(build.id, "error", "Peon stale build was aborted")

        if stale:
            self.renderer.render()
        return len(stale)

    def start_build(
        self,
        repo_url: str,
        repo_name: str,
        ref_mode: RefMode,
        ref: str,
        sha: str,
    ) -> Build:
        """Create a pending build record."""
        repo = self.db.get_or_create_repo(repo_name, repo_url)
        build = self.db.create_build(repo.id, ref_mode, ref, sha)

        self.sink.update(build.id, "pending", "Peon build is queued")
        self.renderer.render()
        return build

    def update_build_step(
        self,
        build_id: int,
        description: str,
        status: StepStatus,
        output: Optional[str] = None,
    ) -> None:
        self.db.update_step(build_id, description, status, output)
        self.sink.update(build_id, "pending", f"Peon build is running '{description}'")
        self.renderer.render()

    def update_build_step_output(self, build_id: int, description: str, output: str) -> None:
        """Record partial output of a running step; the sink is not notified."""
        self.db.update_step(build_id, description, StepStatus.running, output)
        self.renderer.render()

    def finish_build(
        self,
        build_id: int,
        status: BuildStatus,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.db.update_build(build_id, status, extra)
        self.sink.update(
            build_id,
            "success" if status == BuildStatus.success else "failure",
            finish_description(status),
        )
        self.renderer.render()

    def mark_cleaned(self, build_id: int) -> None:
        """Mark a successful build whose output was removed."""
        build = self.db.get_build(build_id)
        if build is None or build.status != BuildStatus.success:
            return
        self.db.update_build(build_id, BuildStatus.cleaned)
        self.renderer.render()
