"""
CLI for running and querying Peon.

This module provides a command-line interface to start the Peon server and
to inspect builds or trigger them through a running instance.

Commands:
    serve: Start the Peon server (webhooks, watchers, build API)
    status: Check server health status
    builds: List builds, for all repositories or a single one
    build: Show a build and its steps
    trigger: Send a signed push event to the webhook endpoint
"""

import hashlib
import hmac
import json
import logging
import os
from typing import Any, Dict, Optional

import requests
import typer
from rich import box
from rich.console import Console
from rich.table import Table

app = typer.Typer(help="Peon continuous build and deploy")
console = Console()

# Configuration
DEFAULT_BASE = os.getenv("PEON_API_URL", "http://localhost:8080")
DEFAULT_TIMEOUT = int(os.getenv("PEON_API_TIMEOUT", "10"))

STATUS_STYLES = {
    "pending": "yellow",
    "running": "yellow",
    "success": "green",
    "failed": "red",
    "cancelled": "dim",
    "cleaned": "dim",
}


def _base_url(base: Optional[str]) -> str:
    """Get the base URL for API requests."""
    return base or DEFAULT_BASE


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class APIClient:
    """Centralized API client for handling HTTP requests."""

    def __init__(self, base_url: str, timeout: int = DEFAULT_TIMEOUT):
        self.base_url = base_url
        self.timeout = timeout
        self.session = requests.Session()

    def _make_request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        """
        Make an HTTP request to the API.

        Raises:
            requests.RequestException: For HTTP errors
        """
        url = f"{self.base_url}{endpoint}"
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method.upper(), url, **kwargs)
            response.raise_for_status()
            return response
        except requests.RequestException as e:
            logging.debug(f"API request failed: {e}", exc_info=True)
            raise

    def get(self, endpoint: str, **kwargs) -> requests.Response:
        """Make a GET request."""
        return self._make_request("GET", endpoint, **kwargs)

    def post(self, endpoint: str, **kwargs) -> requests.Response:
        """Make a POST request."""
        return self._make_request("POST", endpoint, **kwargs)


def _handle_api_error(error: requests.RequestException, operation: str) -> None:
    """Handle API errors consistently."""
    if getattr(error, "response", None) is not None:
        console.print(f"[red]API Error ({operation}):[/red] {error.response.status_code} - {error}")
    else:
        console.print(f"[red]API Error ({operation}):[/red] {error}")
    logging.debug(f"API error during {operation}", exc_info=True)


def _status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def build_push_payload(url: str, ref: str, sha: str) -> Dict[str, Any]:
    """Build a push event payload; bare branch names are expanded to refs/heads/."""
    if not ref.startswith("refs/"):
        ref = f"refs/heads/{ref}"
    return {
        "ref": ref,
        "head_commit": {"id": sha},
        "repository": {"ssh_url": url},
    }


def sign_payload(secret: str, body: bytes) -> str:
    return "sha1=" + hmac.new(secret.encode(), body, hashlib.sha1).hexdigest()


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Address to listen on"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on"),
) -> None:
    """Start the Peon server."""
    import uvicorn

    from peon.config import settings

    uvicorn.run(
        "peon.main:create_app",
        factory=True,
        host=host or settings.webhooks_host,
        port=port or settings.webhooks_port,
        log_level=settings.log_level.value.lower(),
    )


@app.command("status")
def status(
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Check the health status of a Peon server."""
    _setup_logging(verbose)
    try:
        api_client = APIClient(_base_url(base), timeout=5)
        health_data = api_client.get("/health").json()
        console.print("[green]Peon is running[/green]")
        console.print(f"[blue]Base URL:[/blue] {_base_url(base)}")
        console.print(f"[blue]Version:[/blue] {health_data.get('version', 'unknown')}")
    except requests.RequestException as e:
        console.print(f"[red]Cannot connect to Peon:[/red] {e}")
        console.print(f"[blue]Attempted URL:[/blue] {_base_url(base)}")
        raise typer.Exit(1)


@app.command("builds")
def list_builds(
    repo: Optional[str] = typer.Argument(None, help="Repository name"),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """List builds, most recently updated first."""
    _setup_logging(verbose)
    try:
        api_client = APIClient(_base_url(base))
        if repo:
            builds = api_client.get(f"/repos/{repo}/builds").json()
        else:
            builds = []
            for item in api_client.get("/repos").json():
                builds.extend(api_client.get(f"/repos/{item['name']}/builds").json())
            builds.sort(key=lambda b: b["updated_at"], reverse=True)
    except requests.RequestException as e:
        _handle_api_error(e, "listing builds")
        raise typer.Exit(1)

    if not builds:
        console.print("[yellow]No builds found[/yellow]")
        return

    table = Table(title="Builds", box=box.SIMPLE_HEAVY)
    table.add_column("ID", style="bold cyan")
    table.add_column("Repository", style="bold")
    table.add_column("Ref", style="blue")
    table.add_column("Commit")
    table.add_column("Status")
    table.add_column("Updated")
    for build in builds:
        table.add_row(
            str(build["id"]),
            build["repo_name"],
            f"{build['ref_mode']} {build['ref']}",
            build["sha"][:8],
            _status(build["status"]),
            build["updated_at"],
        )
    console.print(table)


@app.command("build")
def show_build(
    build_id: int = typer.Argument(..., help="Build ID"),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show a build and its steps."""
    _setup_logging(verbose)
    try:
        data = APIClient(_base_url(base)).get(f"/builds/{build_id}").json()
    except requests.RequestException as e:
        _handle_api_error(e, f"retrieving build {build_id}")
        raise typer.Exit(1)

    build = data["build"]
    console.print(
        f"[bold]{build['repo_name']} #{build['id']}[/bold] "
        f"{build['ref_mode']} {build['ref']} ({build['sha'][:8]}) {_status(build['status'])}"
    )
    output_url = (build.get("extra") or {}).get("output_url")
    if output_url:
        console.print(f"[blue]Output:[/blue] {output_url}")

    for step in data["steps"]:
        console.print(f"\n{_status(step['status'])} [bold]{step['description']}[/bold]")
        if step.get("output") and verbose:
            console.print(step["output"], markup=False, highlight=False)


@app.command("trigger")
def trigger(
    url: str = typer.Argument(..., help="Repository URL, as configured in Peon"),
    ref: str = typer.Argument(..., help="Branch name or full ref (refs/tags/v1.0)"),
    sha: str = typer.Argument(..., help="Commit SHA to build"),
    secret: Optional[str] = typer.Option(
        None, "--secret", "-s", envvar="PEON_WEBHOOKS_SECRET", help="Webhook secret"
    ),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Send a push event to a running Peon server."""
    _setup_logging(verbose)
    body = json.dumps(build_push_payload(url, ref, sha)).encode()
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Event": "push",
        "X-GitHub-Delivery": "manual-peon-trigger",
    }
    if secret:
        headers["X-Hub-Signature"] = sign_payload(secret, body)

    try:
        result = APIClient(_base_url(base)).post("/webhooks", data=body, headers=headers).json()
    except requests.RequestException as e:
        _handle_api_error(e, "triggering build")
        raise typer.Exit(1)

    if result.get("build_id"):
        console.print(f"[green]Enqueued build[/green] {result['build_id']}")
    else:
        console.print("[yellow]Event accepted, no build was enqueued[/yellow]")


if __name__ == "__main__":
    app()
