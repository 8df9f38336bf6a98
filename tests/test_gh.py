from unittest.mock import Mock

import pytest
import requests

from peon.gh import (
    GitHubAPIError,
    GitHubClient,
    GitHubNotFoundError,
    GitHubPermissionError,
    GitHubStatus,
    HTTPClient,
    extract_github_repo,
)
from peon.models import RefMode
from peon.storage import Database


def make_response(status_code=201, json_data=None, text=""):
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = json_data or {}
    response.text = text
    return response


class TestExtractGitHubRepo:
    @pytest.mark.parametrize(
        "url",
        [
            "git@github.com:org/site.git",
            "git@github.com:org/site",
            "ssh://git@github.com/org/site.git",
            "https://github.com/org/site",
            "https://github.com/org/site.git/",
        ],
    )
    def test_github_urls(self, url):
        assert extract_github_repo(url) == ("org", "site")

    @pytest.mark.parametrize("url", ["git@gitlab.com:org/site.git", "/srv/git/site", ""])
    def test_other_urls(self, url):
        assert extract_github_repo(url) is None


class TestGitHubClient:
    """Test GitHubClient with a mock HTTP client."""

    def setup_method(self):
        self.http_client = Mock(spec=HTTPClient)
        self.client = GitHubClient("test-token", http_client=self.http_client)

    def test_headers(self):
        assert self.client._headers["Authorization"] == "Bearer test-token"
        assert self.client._headers["User-Agent"] == "peon"

    def test_create_commit_status(self):
        self.http_client.post.return_value = make_response(201, {"id": 1, "state": "success"})

        result = self.client.create_commit_status(
            "org", "site", "abc123", "success", "http://peon.test/1.html", "Peon build is finished"
        )

        assert result == {"id": 1, "state": "success"}
        self.http_client.post.assert_called_once_with(
            "https://api.github.com/repos/org/site/statuses/abc123",
            headers=self.client._headers,
            json_data={
                "state": "success",
                "target_url": "http://peon.test/1.html",
                "description": "Peon build is finished",
                "context": "peon",
            },
        )

    @pytest.mark.parametrize(
        "status_code,error",
        [(401, GitHubAPIError), (403, GitHubPermissionError), (404, GitHubNotFoundError), (422, GitHubAPIError)],
    )
    def test_error_responses(self, status_code, error):
        self.http_client.post.return_value = make_response(status_code, text="nope")

        with pytest.raises(error) as exc_info:
            self.client.create_commit_status("org", "site", "abc", "pending", "url", "desc")

        assert exc_info.value.status_code == status_code
        assert self.http_client.post.call_count == 1


class TestGitHubStatus:
    """Test the commit-status sink."""

    @pytest.fixture(autouse=True)
    def setup(self, make_settings):
        self.db = Database()
        self.client = Mock(spec=GitHubClient)
        self.settings = make_settings(github_token="test-token")

    def create_build(self, url="git@github.com:org/site.git"):
        repo = self.db.get_or_create_repo("site", url)
        return self.db.create_build(repo.id, RefMode.branch, "main", "abc123")

    def test_target_url(self, make_settings):
        status = GitHubStatus(make_settings(status_url="http://peon.test/status/"), self.db, self.client)
        assert status.target_url(3) == "http://peon.test/status/3.html"

    def test_client_created_from_token(self, make_settings):
        assert isinstance(GitHubStatus(self.settings, self.db).client, GitHubClient)
        assert GitHubStatus(make_settings(), self.db).client is None

    @pytest.mark.asyncio
    async def test_update_posts_commit_status(self):
        build = self.create_build()
        status = GitHubStatus(self.settings, self.db, self.client)

        status.update(build.id, "pending", "Peon build is queued")
        status.update(build.id, "success", "Peon build is finished")
        await status.join()

        assert [c.args for c in self.client.create_commit_status.call_args_list] == [
            ("org", "site", "abc123", "pending", "http://peon.test/status/1.html", "Peon build is queued"),
            ("org", "site", "abc123", "success", "http://peon.test/status/1.html", "Peon build is finished"),
        ]

    @pytest.mark.asyncio
    async def test_update_ignores_other_hosts(self):
        build = self.create_build("/srv/git/site")
        status = GitHubStatus(self.settings, self.db, self.client)

        status.update(build.id, "pending", "Peon build is queued")
        status.update(999, "pending", "Peon build is queued")
        await status.join()

        self.client.create_commit_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_without_client_is_a_noop(self, make_settings):
        build = self.create_build()
        status = GitHubStatus(make_settings(), self.db)

        status.update(build.id, "pending", "Peon build is queued")
        await status.join()

        assert status.queue.idle

    @pytest.mark.asyncio
    async def test_api_errors_are_logged(self, caplog):
        build = self.create_build()
        self.client.create_commit_status.side_effect = GitHubAPIError("Authentication failed", 401)
        status = GitHubStatus(self.settings, self.db, self.client)

        status.update(build.id, "pending", "Peon build is queued")
        status.update(build.id, "success", "Peon build is finished")
        await status.join()

        assert self.client.create_commit_status.call_count == 2
        assert "could not update GitHub status" in caplog.text
