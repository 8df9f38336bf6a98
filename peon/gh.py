"""
GitHub Commit Status Integration for Peon.

This module publishes build progress to GitHub as commit statuses, so pull
requests and commits link back to the Peon status pages. It uses the GitHub
REST API with a personal access token.

The integration:
- Maps builds to (owner, repo, sha) using the datastore
- Publishes one status per step transition and one final status
- Serializes requests so statuses reach GitHub in the order they were sent
- Retries transient failures and logs, but never raises, on final failure

Classes:
    GitHubClient: Low-level client for GitHub API calls
    GitHubStatus: Commit-status sink used by the status store

Dependencies:
    - requests: For HTTP API calls to GitHub
    - tenacity: For retry logic
    - GitHub token: Personal access token with repo:status permission
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urljoin

import requests
from starlette.concurrency import run_in_threadpool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .queue import SerialQueue
from .storage import Database

logger = logging.getLogger(__name__)

STATUS_CONTEXT = "peon"
GITHUB_REPO_RE = re.compile(r"github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?/?$")


class GitHubAPIError(Exception):
    """GitHub API call failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(self.message)


class GitHubRateLimitError(GitHubAPIError):
    """The token ran out of API quota."""


class GitHubNotFoundError(GitHubAPIError):
    """Repository or commit unknown to GitHub (or hidden from the token)."""


class GitHubPermissionError(GitHubAPIError):
    """The token lacks the repo:status scope."""


def extract_github_repo(url: str) -> Optional[Tuple[str, str]]:
    """
    Extract (owner, repo) from a GitHub repository URL.

    Supports ssh (git@github.com:owner/repo.git), ssh:// and https URLs.
    Returns None for repositories not hosted on GitHub.
    """
    match = GITHUB_REPO_RE.search(url or "")
    if not match:
        return None
    return match.group(1), match.group(2)


class HTTPClient(ABC):
    """Transport used by GitHubClient; replaced by a mock in tests."""

    @abstractmethod
    def post(
        self,
        url: str,
        headers: Dict[str, str],
        json_data: Optional[Dict[str, Any]] = None,
        timeout: int = 15
    ) -> requests.Response:
        """Make a POST request."""


class RequestsHTTPClient(HTTPClient):
    """Transport backed by requests."""

    def post(
        self,
        url: str,
        headers: Dict[str, str],
        json_data: Optional[Dict[str, Any]] = None,
        timeout: int = 15
    ) -> requests.Response:
        return requests.post(url, headers=headers, json=json_data, timeout=timeout)


class GitHubClient:
    """Low-level client for GitHub API operations."""

    BASE_URL = "https://api.github.com"
    API_VERSION = "2022-11-28"
    USER_AGENT = "peon"

    def __init__(self, token: str, http_client: Optional[HTTPClient] = None):
        """
        Initialize GitHub client.

        Args:
            token: GitHub personal access token
            http_client: HTTP client implementation (defaults to RequestsHTTPClient)
        """
        self.token = token
        self.http_client = http_client or RequestsHTTPClient()
        self._headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
            "X-GitHub-Api-Version": self.API_VERSION,
            "User-Agent": self.USER_AGENT,
        }

    def _make_request(self, endpoint: str, json_data: Dict[str, Any]) -> requests.Response:
        """
        POST to the GitHub API with retry logic.

        Raises:
            GitHubAPIError: For API errors
            GitHubRateLimitError: When rate limited after all retries
        """
        url = urljoin(self.BASE_URL, endpoint)

        @retry(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=4, max=10),
            retry=retry_if_exception_type((requests.RequestException, GitHubRateLimitError)),
            reraise=True,
        )
        def _retry_request():
            logger.debug(f"Making POST request to {url}")
            response = self.http_client.post(url, headers=self._headers, json_data=json_data)

            if response.status_code == 403 and "rate limit" in response.text.lower():
                logger.warning("GitHub API rate limit exceeded")
                raise GitHubRateLimitError("Rate limit exceeded", response.status_code, response.text)

            if response.status_code == 401:
                raise GitHubAPIError("Authentication failed", response.status_code, response.text)
            elif response.status_code == 403:
                raise GitHubPermissionError("Insufficient permissions", response.status_code, response.text)
            elif response.status_code == 404:
                raise GitHubNotFoundError("Resource not found", response.status_code, response.text)
            elif response.status_code >= 400:
                raise GitHubAPIError(
                    f"GitHub API error: {response.status_code}", response.status_code, response.text
                )
            return response

        try:
            return _retry_request()
        except GitHubAPIError:
            raise
        except requests.RequestException as e:
            raise GitHubAPIError(f"Request failed: {e}") from e

    def create_commit_status(
        self,
        owner: str,
        repo: str,
        sha: str,
        state: str,
        target_url: str,
        description: str,
        context: str = STATUS_CONTEXT,
    ) -> Dict[str, Any]:
        """
        Create a commit status.

        Args:
            state: One of pending, success, failure, error
        """
        endpoint = f"/repos/{owner}/{repo}/statuses/{sha}"
        payload = {
            "state": state,
            "target_url": target_url,
            "description": description,
            "context": context,
        }
        response = self._make_request(endpoint, payload)
        return response.json()


class GitHubStatus:
    """
    Commit-status sink.

    update() never blocks nor raises: requests are appended to a serial
    queue and run in the threadpool; failures are logged as warnings.
    Builds of repositories not hosted on GitHub are ignored, as is
    everything when no token is configured.
    """

    def __init__(
        self,
        settings: Settings,
        db: Database,
        client: Optional[GitHubClient] = None,
    ):
        self.settings = settings
        self.db = db
        self.client = client
        if self.client is None and settings.github_status_enabled:
            self.client = GitHubClient(settings.github_token)
        self.queue = SerialQueue("github-status")

    def target_url(self, build_id: int) -> str:
        status_url = self.settings.status_url
        separator = "" if status_url.endswith("/") else "/"
        return f"{status_url}{separator}{build_id}.html"

    def update(self, build_id: int, state: str, description: str) -> None:
        if self.client is None:
            return

        info = self.db.get_git_build_info(build_id)
        if info is None:
            return
        url, sha = info

        github_repo = extract_github_repo(url)
        if github_repo is None:
            return
        owner, repo = github_repo
        target_url = self.target_url(build_id)

        async def send() -> None:
            try:
                await run_in_threadpool(
                    self.client.create_commit_status,
                    owner, repo, sha, state, target_url, description,
                )
            except GitHubAPIError as e:
                logger.warning(
                    "could not update GitHub status",
                    extra={"props": {"module": "status/github", "build_id": build_id, "error": str(e)}},
                )

        self.queue.run(send)

    async def join(self) -> None:
        await self.queue.join()
