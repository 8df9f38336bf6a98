"""
Status page rendering.

RenderCoordinator regenerates the static HTML status pages from the
datastore. Render requests are coalesced: at most one pass runs at a time,
and any number of requests made during a pass result in exactly one more
pass once it finishes.

A pass only rewrites what changed since the previous one (the watermark):
- <repo>.html for repositories with updated builds
- <id>.html for each updated build
- index.html when any of the last builds changed

The watermark is persisted in render-state.json in the status directory so
a restarted process does not rewrite every page.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from starlette.concurrency import run_in_threadpool

from .config import Settings
from .models import Build, BuildStatus, RefMode, Repo, Step, utcnow
from .storage import Database

logger = logging.getLogger(__name__)

TEMPLATE_DIRECTORY = Path(__file__).parent / "templates"
STATE_FILE = "render-state.json"


def format_date(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def shortsha(sha: str) -> str:
    return (sha or "")[:8]


def format_duration(seconds: Optional[float]) -> str:
    """Format a duration as 250ms, 12.5s or 3m07s."""
    if seconds is None:
        return ""
    milliseconds = int(round(seconds * 1000))
    if milliseconds < 1000:
        return f"{milliseconds}ms"
    if milliseconds < 60000:
        return f"{milliseconds / 1000:.1f}s"
    total = milliseconds // 1000
    return f"{total // 60}m{total % 60:02d}s"


def retrigger_data(build: Build, url: str, secret: Optional[str]) -> Dict[str, str]:
    """Build the data needed to replay the push event of a build."""
    ref_prefix = "heads" if build.ref_mode == RefMode.branch else "tags"
    payload = json.dumps({
        "head_commit": {"id": build.sha},
        "ref": f"refs/{ref_prefix}/{build.ref}",
        "repository": {"name": build.repo_name, "ssh_url": build.repo_url},
    })
    digest = hmac.new((secret or "").encode(), payload.encode(), hashlib.sha1).hexdigest()
    return {
        "url": url,
        "headers": json.dumps({
            "Content-Type": "application/json",
            "x-github-delivery": "manual-peon-retrigger",
            "x-github-event": "push",
            "x-hub-signature": f"sha1={digest}",
        }),
        "payload": payload,
    }


class RenderCoordinator:
    """
    Coalescing renderer for the status pages.

    Attributes:
        last_render (Optional[datetime]): Start time of the last successful pass
        passes (int): Number of passes run so far
    """

    def __init__(self, settings: Settings, db: Database):
        self.settings = settings
        self.db = db
        self.status_directory = Path(settings.status_directory)
        self.last_render: Optional[datetime] = None
        self.passes = 0
        self._task: Optional[asyncio.Future] = None
        self._refresh = False
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIRECTORY)),
            autoescape=select_autoescape(["html"]),
        )
        self.env.filters["date"] = format_date
        self.env.filters["shortsha"] = shortsha
        self.env.filters["duration"] = format_duration
        self.env.filters["fromjson"] = json.loads
        self._load_state()

    @property
    def rendering(self) -> bool:
        return self._task is not None and not self._task.done()

    def render(self) -> None:
        """Request a render; must be called from within the event loop."""
        if self.rendering:
            self._refresh = True
            return
        self._task = asyncio.ensure_future(self._run())

    async def join(self) -> None:
        """Wait for the in-flight pass and its follow-up, if any."""
        while self.rendering:
            await asyncio.wait([self._task])

    async def _run(self) -> None:
        while True:
            self._refresh = False
            await self._render_pass()
            if not self._refresh:
                break

    async def _render_pass(self) -> None:
        self.passes += 1
        now = utcnow()
        logger.debug("rendering status pages", extra={"props": {"module": "status/render"}})
        try:
            await run_in_threadpool(self._render_all, now)
        except Exception:
            logger.exception("error rendering status pages", extra={"props": {"module": "status/render"}})
            return
        self.last_render = now
        self._save_state()
        logger.debug("finished rendering status pages", extra={"props": {"module": "status/render"}})

    def _is_updated(self, build: Build) -> bool:
        return self.last_render is None or build.updated_at > self.last_render

    def _write(self, filename: str, template: str, **context: Any) -> None:
        path = self.status_directory / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.env.get_template(template).render(**context), encoding="utf-8")

    def _render_all(self, now: datetime) -> None:
        self.status_directory.mkdir(parents=True, exist_ok=True)
        for repo in self.db.get_repos():
            self._render_repo(now, repo)
        self._render_index(now)

    def _render_repo(self, now: datetime, repo: Repo) -> None:
        builds = self.db.get_builds(repo.id)
        updated = [b for b in builds if self._is_updated(b)]
        if not updated:
            return

        logger.debug(f"rendering repo page for {repo.name}", extra={"props": {"module": "status/render"}})
        self._write(f"{repo.name}.html", "repo.html", now=now, repo_name=repo.name, builds=builds)

        for build in updated:
            self._render_build(build)

    def _render_build(self, build: Build) -> None:
        steps: List[Step] = self.db.get_steps(build.id)
        is_running = not build.status.is_finished

        retrigger = None
        if self.settings.webhooks_url and not is_running:
            retrigger = retrigger_data(build, self.settings.webhooks_url, self.settings.webhooks_secret)

        self._write(
            f"{build.id}.html",
            "build.html",
            build=build,
            steps=steps,
            is_running=is_running,
            is_cleaned=build.status == BuildStatus.cleaned,
            retrigger=retrigger,
        )

        old_build_id = (build.extra or {}).get("old_build_id")
        if old_build_id:
            self._write(f"{str(old_build_id).replace('#', '/')}.html", "buildredir.html", id=build.id)

    def _render_index(self, now: datetime) -> None:
        count = self.settings.index_build_count
        builds = self.db.get_last_updated_builds(count)
        if builds and not any(self._is_updated(b) for b in builds):
            return

        logger.debug("rendering index", extra={"props": {"module": "status/render"}})
        self._write("index.html", "index.html", now=now, build_count=count, builds=builds)

    def _load_state(self) -> None:
        path = self.status_directory / STATE_FILE
        if not path.is_file():
            return
        try:
            state = json.loads(path.read_text(encoding="utf-8"))
            self.last_render = datetime.fromisoformat(state["last_render"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"ignoring invalid render state: {e}", extra={"props": {"module": "status/render"}})

    def _save_state(self) -> None:
        path = self.status_directory / STATE_FILE
        path.write_text(json.dumps({"last_render": self.last_render.isoformat()}), encoding="utf-8")
