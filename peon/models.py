"""
Data Models for Peon.

This module defines the Pydantic models used throughout Peon for data
validation and serialization: repository and build records, build steps,
the project manifest (.peon.yml), operator-registered destinations and the
exceptions raised by the build engine.

Classes:
    RefMode: Whether a build was triggered by a branch or a tag
    BuildStatus: Lifecycle states of a build
    StepStatus: Lifecycle states of a build step
    RepoConfig: Repository configuration resolved for one event
    Build: A build record
    Step: A build step record
    Destination: Operator-registered deployment target
    ManifestDestination: Destination entry of a manifest
    CacheEntry: Cached path keyed by the content of a source file
    BuildManifest: Validated content of .peon.yml
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

MANIFEST_FILE = ".peon.yml"
DEFAULT_DESTINATION_PATH = "$PEON_REPO_NAME/$PEON_REF"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _compile(pattern: str) -> "re.Pattern[str]":
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ValueError(f"invalid regular expression '{pattern}': {e}") from e


class PeonError(Exception):
    """Base exception for errors raised by the build engine."""


class ConfigurationError(PeonError):
    """Invalid manifest or destination configuration."""


class EvaluationCycleError(PeonError):
    """Raised when environment evaluation re-enters a variable."""

    def __init__(self, chain: List[str]):
        self.chain = chain
        super().__init__(f"Evaluation loop: {' => '.join(chain)}")


class CommandError(PeonError):
    """Raised when a build command exits with a non-zero code."""

    def __init__(self, command: str, returncode: int, output: str = ""):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(f"command '{command}' exited with error code {returncode}")


class DeployError(PeonError):
    """Raised when the build output cannot be deployed."""


class InvalidTransitionError(PeonError):
    """Raised when a build status change violates the build lifecycle."""


class RefMode(str, Enum):
    """Kind of git reference that triggered a build."""

    branch = "branch"
    tag = "tag"


class BuildStatus(str, Enum):
    """
    Enumeration of possible build states.

    Note:
        State transitions follow: pending -> running -> (success|failed|cancelled),
        optionally followed by success -> cleaned once the deployed output is
        removed. A pending build may also be cancelled directly when it is
        found stale at startup.
    """

    pending = "pending"
    running = "running"
    success = "success"
    failed = "failed"
    cancelled = "cancelled"
    cleaned = "cleaned"

    @property
    def is_finished(self) -> bool:
        return self not in (BuildStatus.pending, BuildStatus.running)


BUILD_TRANSITIONS = {
    BuildStatus.pending: {BuildStatus.running, BuildStatus.cancelled},
    BuildStatus.running: {BuildStatus.success, BuildStatus.failed, BuildStatus.cancelled},
    BuildStatus.success: {BuildStatus.cleaned},
    BuildStatus.failed: set(),
    BuildStatus.cancelled: set(),
    BuildStatus.cleaned: set(),
}


def can_transition(current: BuildStatus, new: BuildStatus) -> bool:
    """Check whether a build may move from ``current`` to ``new``."""
    return current == new or new in BUILD_TRANSITIONS[current]


class StepStatus(str, Enum):
    """Enumeration of build step states."""

    running = "running"
    success = "success"
    failed = "failed"

    @property
    def is_finished(self) -> bool:
        return self != StepStatus.running


class Destination(BaseModel):
    """
    Operator-registered deployment target.

    Attributes:
        destination (str): Local directory, or rsync remote target when it
            contains a colon (eg. ``user@host:/var/www``)
        root_url (str): URL (or URL path) under which the destination is served
        absolute_url (str): Absolute URL of the destination, used for output links
        shell (Optional[str]): Remote shell passed to rsync with ``-e``
    """

    destination: str
    root_url: str = ""
    absolute_url: str = ""
    shell: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return ":" in self.destination


class WatchedRepository(BaseModel):
    """Repository polled by the watcher."""

    url: str
    branches: Optional[List[str]] = None


class RepoConfig(BaseModel):
    """Repository configuration resolved for a single change event."""

    model_config = {"frozen": True}

    name: str
    url: str
    ref_mode: RefMode
    ref: str
    branches: Optional[List[str]] = None

    @property
    def branch(self) -> str:
        return self.ref if self.ref_mode == RefMode.branch else ""

    @property
    def tag(self) -> str:
        return self.ref if self.ref_mode == RefMode.tag else ""


class Repo(BaseModel):
    id: int
    name: str
    url: str


class Build(BaseModel):
    """
    A build record.

    Lifecycle:
        1. Created as 'pending' when an event is dispatched
        2. Becomes 'running' with its first step
        3. Ends as 'success', 'failed' or 'cancelled'
        4. A successful build becomes 'cleaned' when its output is removed

    Timestamps:
        started_at is set on the first transition that is neither 'failed'
        nor 'cancelled', ended_at when the build succeeds or fails.
    """

    id: int
    repo_id: int
    repo_name: str
    repo_url: str
    ref_mode: RefMode
    ref: str
    sha: str
    status: BuildStatus = BuildStatus.pending
    enqueued_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    extra: Optional[Dict[str, Any]] = None

    @property
    def queue_time(self) -> Optional[float]:
        if self.started_at is None:
            return None
        return (self.started_at - self.enqueued_at).total_seconds()

    @property
    def run_time(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class Step(BaseModel):
    """A build step, keyed by (build_id, description)."""

    build_id: int
    description: str
    status: StepStatus = StepStatus.running
    output: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class ManifestDestination(BaseModel):
    """Destination entry of a manifest; patterns are regular expressions."""

    name: str
    branch: Optional[str] = None
    tag: Optional[str] = None
    path: Optional[str] = None

    @field_validator("branch", "tag")
    @classmethod
    def _check_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            _compile(v)
        return v

    def matches(self, ref_mode: RefMode, ref: str) -> bool:
        """
        Check whether this entry applies to a ref.

        An entry declaring neither a branch nor a tag pattern matches any ref.
        Otherwise the pattern for the ref mode must be present and match.
        """
        if self.branch is None and self.tag is None:
            return True
        pattern = self.branch if ref_mode == RefMode.branch else self.tag
        return pattern is not None and re.search(pattern, ref) is not None


class CacheEntry(BaseModel):
    """
    Cached path keyed by the content of a source file.

    Attributes:
        path (str): Directory to persist, relative to the workspace
        source (str): Key file whose content hash identifies the archive
        digest (Optional[str]): Memoized sha256 of the key file
    """

    path: str
    source: str
    digest: Optional[str] = None


class BuildManifest(BaseModel):
    """
    Validated content of a project's .peon.yml.

    Validation:
        - `output` must be a string
        - `commands` must be a non-empty list of strings
        - pattern lists and destination patterns must be valid regexps
    """

    output: str
    commands: List[str]
    branches: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    destinations: List[ManifestDestination] = Field(default_factory=list)
    cache: List[CacheEntry] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _check_mandatory(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError(f"{MANIFEST_FILE} must contain a mapping")
        if not isinstance(data.get("output"), str):
            raise ValueError(f"missing output parameter in {MANIFEST_FILE}")
        commands = data.get("commands")
        if not isinstance(commands, list) or not commands:
            raise ValueError(f"no build commands in {MANIFEST_FILE}")
        # Empty YAML keys ("cache:") parse as None
        return {key: value for key, value in data.items() if value is not None}

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(key): "" if value is None else str(value) for key, value in v.items()}
        return v

    @field_validator("branches", "tags")
    @classmethod
    def _check_patterns(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        for pattern in v or []:
            _compile(pattern)
        return v

    @classmethod
    def parse(cls, data: Any) -> "BuildManifest":
        """Validate parsed YAML, reporting every violation as one ConfigurationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            messages = []
            for error in e.errors():
                message = str(error.get("msg", "")).removeprefix("Value error, ")
                location = ".".join(str(part) for part in error.get("loc", ()))
                messages.append(f"{location}: {message}" if location else message)
            raise ConfigurationError("; ".join(messages)) from e

    def ref_allowed(self, ref_mode: RefMode, ref: str) -> bool:
        """Tags must match `tags`; branches must match `branches` when present."""
        if ref_mode == RefMode.tag:
            return any(re.search(p, ref) for p in self.tags or [])
        if self.branches is None:
            return True
        return any(re.search(p, ref) for p in self.branches)


class PushEvent(BaseModel):
    """Build-triggering push event, as sent by GitHub or emitted by the watcher."""

    ref: str
    head_commit: Optional[Dict[str, Any]] = None
    repository: Dict[str, Any]
    deleted: bool = False

    @property
    def sha(self) -> Optional[str]:
        return (self.head_commit or {}).get("id")

    @property
    def url(self) -> Optional[str]:
        return self.repository.get("ssh_url")
