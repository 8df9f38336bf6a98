import asyncio
import hashlib
import hmac
import json

import pytest

from peon.models import BuildStatus, RefMode, StepStatus
from peon.render import (
    STATE_FILE,
    RenderCoordinator,
    format_duration,
    retrigger_data,
    shortsha,
)
from peon.storage import Database


class TestFormatting:
    @pytest.mark.parametrize(
        "seconds,expected",
        [(None, ""), (0.25, "250ms"), (12.46, "12.5s"), (187, "3m07s"), (3600, "60m00s")],
    )
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_shortsha(self):
        assert shortsha("0123456789abcdef") == "01234567"
        assert shortsha("") == ""


class TestRetriggerData:
    def test_signed_push_event(self):
        db = Database()
        repo = db.get_or_create_repo("site", "git@github.com:org/site.git")
        build = db.create_build(repo.id, RefMode.tag, "v1.0", "abc123")

        data = retrigger_data(build, "http://peon.test/webhooks", "secret")

        payload = json.loads(data["payload"])
        assert payload["ref"] == "refs/tags/v1.0"
        assert payload["head_commit"] == {"id": "abc123"}
        assert payload["repository"]["ssh_url"] == "git@github.com:org/site.git"

        headers = json.loads(data["headers"])
        expected = hmac.new(b"secret", data["payload"].encode(), hashlib.sha1).hexdigest()
        assert headers["x-hub-signature"] == f"sha1={expected}"
        assert headers["x-github-event"] == "push"
        assert data["url"] == "http://peon.test/webhooks"


class TestRenderCoordinator:
    """Test status page rendering and render coalescing."""

    @pytest.fixture(autouse=True)
    def setup(self, make_settings):
        self.settings = make_settings(webhooks_url="http://peon.test/webhooks")
        self.db = Database()
        self.repo = self.db.get_or_create_repo("site", "git@github.com:org/site.git")
        self.status_dir = self.settings.status_directory

    def make_renderer(self):
        return RenderCoordinator(self.settings, self.db)

    def finished_build(self, status=BuildStatus.success, extra=None):
        build = self.db.create_build(self.repo.id, RefMode.branch, "main", "abc123")
        self.db.update_step(build.id, "run command", StepStatus.success, "<b>built</b>")
        return self.db.update_build(build.id, status, extra)

    @pytest.mark.asyncio
    async def test_empty_database_renders_index(self):
        renderer = self.make_renderer()
        renderer.render()
        await renderer.join()

        assert (self.status_dir / "index.html").is_file()
        assert renderer.last_render is not None

    @pytest.mark.asyncio
    async def test_renders_all_pages(self):
        build = self.finished_build()
        renderer = self.make_renderer()
        renderer.render()
        await renderer.join()

        build_page = (self.status_dir / f"{build.id}.html").read_text()
        assert "run command" in build_page
        assert "&lt;b&gt;built&lt;/b&gt;" in build_page
        assert "manual-peon-retrigger" in build_page
        assert "site" in (self.status_dir / "site.html").read_text()
        assert "site" in (self.status_dir / "index.html").read_text()

    @pytest.mark.asyncio
    async def test_running_build_has_no_retrigger(self):
        build = self.db.create_build(self.repo.id, RefMode.branch, "main", "abc123")
        self.db.update_step(build.id, "clone repository", StepStatus.running)
        renderer = self.make_renderer()
        renderer.render()
        await renderer.join()

        assert "manual-peon-retrigger" not in (self.status_dir / f"{build.id}.html").read_text()

    @pytest.mark.asyncio
    async def test_requests_before_a_pass_starts_share_it(self):
        self.finished_build()
        renderer = self.make_renderer()

        for _ in range(10):
            renderer.render()
        await renderer.join()

        assert renderer.passes == 1

    @pytest.mark.asyncio
    async def test_requests_during_a_pass_cause_one_more_pass(self):
        self.finished_build()
        renderer = self.make_renderer()

        renderer.render()
        await asyncio.sleep(0)
        assert renderer.rendering
        for _ in range(10):
            renderer.render()
        await renderer.join()

        assert renderer.passes == 2

    @pytest.mark.asyncio
    async def test_last_pass_shows_changes_made_during_a_pass(self):
        build = self.db.create_build(self.repo.id, RefMode.branch, "main", "abc123")
        self.db.update_step(build.id, "run command", StepStatus.running, "first line")
        renderer = self.make_renderer()

        renderer.render()
        await asyncio.sleep(0)
        assert renderer.rendering
        self.db.update_step(build.id, "run command", StepStatus.success, "first line\nlast line")
        self.db.update_build(build.id, BuildStatus.success)
        renderer.render()
        await renderer.join()

        page = (self.status_dir / f"{build.id}.html").read_text()
        assert "last line" in page
        assert "manual-peon-retrigger" in page
        assert renderer.passes == 2

    @pytest.mark.asyncio
    async def test_only_updated_pages_are_rewritten(self):
        first = self.finished_build()
        renderer = self.make_renderer()
        renderer.render()
        await renderer.join()

        (self.status_dir / f"{first.id}.html").write_text("untouched")
        (self.status_dir / "index.html").write_text("untouched")
        renderer.render()
        await renderer.join()

        assert (self.status_dir / f"{first.id}.html").read_text() == "untouched"
        assert (self.status_dir / "index.html").read_text() == "untouched"

        second = self.finished_build()
        renderer.render()
        await renderer.join()

        assert (self.status_dir / f"{first.id}.html").read_text() == "untouched"
        assert (self.status_dir / f"{second.id}.html").is_file()
        assert (self.status_dir / "index.html").read_text() != "untouched"

    @pytest.mark.asyncio
    async def test_redirect_page_for_old_build_id(self):
        build = self.finished_build(extra={"old_build_id": "site#12"})
        renderer = self.make_renderer()
        renderer.render()
        await renderer.join()

        redirect = (self.status_dir / "site" / "12.html").read_text()
        assert f"{build.id}.html" in redirect

    @pytest.mark.asyncio
    async def test_watermark_is_persisted(self):
        self.finished_build()
        renderer = self.make_renderer()
        renderer.render()
        await renderer.join()

        assert (self.status_dir / STATE_FILE).is_file()
        assert self.make_renderer().last_render == renderer.last_render

    def test_invalid_state_is_ignored(self):
        self.status_dir.mkdir(parents=True)
        (self.status_dir / STATE_FILE).write_text("{not json")
        assert self.make_renderer().last_render is None
