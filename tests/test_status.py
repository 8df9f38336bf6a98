from unittest.mock import Mock

import pytest

from peon.models import BuildStatus, RefMode, StepStatus
from peon.status import STALE_STEP_INFO, StatusStore, finish_description
from peon.storage import Database


class TestStatusStore:
    """Test that status changes reach the datastore, the sink and the renderer."""

    def setup_method(self):
        self.db = Database()
        self.sink = Mock()
        self.renderer = Mock()
        self.status = StatusStore(self.db, self.sink, self.renderer)

    def start(self, ref="main"):
        return self.status.start_build(
            "git@github.com:org/site.git", "site", RefMode.branch, ref, "abc123"
        )

    def test_start_build(self):
        build = self.start()

        assert build.status == BuildStatus.pending
        assert self.db.get_repo_by_name("site") is not None
        self.sink.update.assert_called_once_with(build.id, "pending", "Peon build is queued")
        self.renderer.render.assert_called_once()

    def test_update_build_step(self):
        build = self.start()
        self.status.update_build_step(build.id, "run command", StepStatus.running, "hello")

        assert self.db.get_build(build.id).status == BuildStatus.running
        assert self.db.get_steps(build.id)[0].output == "hello"
        self.sink.update.assert_called_with(
            build.id, "pending", "Peon build is running 'run command'"
        )
        assert self.renderer.render.call_count == 2

    def test_update_build_step_output_skips_sink(self):
        build = self.start()
        self.status.update_build_step(build.id, "run command", StepStatus.running)
        self.sink.reset_mock()

        for output in ("line 1\n", "line 1\nline 2\n"):
            self.status.update_build_step_output(build.id, "run command", output)

        step = self.db.get_steps(build.id)[0]
        assert step.status == StepStatus.running
        assert step.output == "line 1\nline 2\n"
        self.sink.update.assert_not_called()
        assert self.renderer.render.call_count == 4

    @pytest.mark.parametrize(
        "status,state,description",
        [
            (BuildStatus.success, "success", "Peon build is finished"),
            (BuildStatus.failed, "failure", "Peon build has failed"),
            (BuildStatus.cancelled, "failure", "Peon build was cancelled"),
        ],
    )
    def test_finish_build(self, status, state, description):
        build = self.start()
        self.status.update_build_step(build.id, "clone repository", StepStatus.success)
        self.status.finish_build(build.id, status, {"output_url": "http://x"})

        assert self.db.get_build(build.id).status == status
        self.sink.update.assert_called_with(build.id, state, description)
        assert finish_description(status) == description

    def test_mark_cleaned(self):
        build = self.start()
        self.status.update_build_step(build.id, "deploy", StepStatus.success)
        self.status.finish_build(build.id, BuildStatus.success)
        renders = self.renderer.render.call_count

        self.status.mark_cleaned(build.id)

        assert self.db.get_build(build.id).status == BuildStatus.cleaned
        assert self.renderer.render.call_count == renders + 1

    def test_mark_cleaned_ignores_unsuccessful_builds(self):
        build = self.start()
        self.status.update_build_step(build.id, "deploy", StepStatus.failed)
        self.status.finish_build(build.id, BuildStatus.failed)

        self.status.mark_cleaned(build.id)
        self.status.mark_cleaned(999)

        assert self.db.get_build(build.id).status == BuildStatus.failed

    def test_abort_stale_builds(self):
        pending = self.start()
        running = self.start("dev")
        self.status.update_build_step(running.id, "clone repository", StepStatus.success)
        self.status.update_build_step(running.id, "run command", StepStatus.running, "partial")
        self.sink.reset_mock()
        self.renderer.reset_mock()

        assert self.status.abort_stale_builds() == 2

        assert self.db.get_build(pending.id).status == BuildStatus.cancelled
        assert self.db.get_build(running.id).status == BuildStatus.cancelled
        steps = {s.description: s for s in self.db.get_steps(running.id)}
        assert steps["clone repository"].status == StepStatus.success
        assert steps["run command"].status == StepStatus.failed
        assert steps["run command"].output == f"partial\n{STALE_STEP_INFO}"
        self.sink.update.assert_any_call(pending.id, "error", "Peon stale build was aborted")
        self.renderer.render.assert_called_once()

    def test_abort_stale_builds_without_stale_builds(self):
        assert self.status.abort_stale_builds() == 0
        self.renderer.render.assert_not_called()
