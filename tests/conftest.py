import shutil
from pathlib import Path
from typing import Dict, Optional

import pytest
from git import Repo as GitRepo

from peon.config import Settings
from peon.models import Destination


class OriginRepo:
    """Upstream repository that tests commit to."""

    def __init__(self, path: Path):
        self.path = path
        self.repo = GitRepo.init(path)
        with self.repo.config_writer() as writer:
            writer.set_value("user", "name", "Peon Tests")
            writer.set_value("user", "email", "peon@example.com")
        self._branch_renamed = False

    @property
    def url(self) -> str:
        return str(self.path)

    def commit(self, files: Dict[str, str], message: str = "update") -> str:
        for name, content in files.items():
            target = self.path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        self.repo.index.add(list(files))
        sha = self.repo.index.commit(message).hexsha
        if not self._branch_renamed:
            self.repo.git.branch("-M", "main")
            self._branch_renamed = True
        return sha

    def tag(self, name: str, sha: Optional[str] = None) -> None:
        self.repo.create_tag(name, ref=sha or "HEAD")


@pytest.fixture
def make_settings(tmp_path):
    def factory(**overrides) -> Settings:
        values = {
            "working_directory": tmp_path / "work",
            "status_directory": tmp_path / "status",
            "status_url": "http://peon.test/status",
            "webhooks_enabled": True,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return factory


@pytest.fixture
def local_destination(tmp_path):
    path = tmp_path / "www"
    path.mkdir()
    return Destination(
        destination=str(path),
        root_url="/root/url",
        absolute_url="http://www.test/root/url",
    )


@pytest.fixture
def origin(tmp_path):
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    return OriginRepo(tmp_path / "origin")
