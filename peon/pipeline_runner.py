"""
Build Execution Engine for Peon.

This module runs the build of a single commit. A build is a fixed sequence of
steps, each reported to the status store as it starts and ends:

    update repository -> create workspace -> read .peon.yml ->
    [restore cache] -> run <command>... -> [save cache] -> deploy

Every stage returns an outcome that tells the step wrapper how to proceed:
- Completed: the step succeeded, continue
- StageWarning: the step failed but the build continues
- Cancelled: the build is cancelled (eg. branch not configured for builds)
- Fatal: the build failed

Step updates of a build, including the output streamed while a command
runs, go through a single serial queue so they are recorded in order.

Classes:
    BuildPipeline: Runs the build of one commit
    StandardLogger: Logger wrapper tagging records with the build module
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import posixpath
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from pathlib import Path, PurePosixPath
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import yaml
from git import Repo as GitRepo
from git.exc import InvalidGitRepositoryError, NoSuchPathError
from starlette.concurrency import run_in_threadpool

from .cache import CacheManager
from .cleanup import CleanupManager
from .config import Settings
from .environment import Environment
from .models import (
    DEFAULT_DESTINATION_PATH,
    MANIFEST_FILE,
    Build,
    BuildManifest,
    BuildStatus,
    CommandError,
    ConfigurationError,
    DeployError,
    Destination,
    RepoConfig,
    StepStatus,
    utcnow,
)
from .queue import SerialQueue
from .status import StatusStore

WORKSPACE_BRANCH = "peon-build"
READ_CHUNK_SIZE = 64 * 1024


class LoggerInterface(ABC):
    """Abstract logger interface for dependency injection."""

    @abstractmethod
    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message."""

    @abstractmethod
    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message."""

    @abstractmethod
    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message."""

    @abstractmethod
    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message."""


class StandardLogger(LoggerInterface):
    """Standard logger implementation tagging records with a module name."""

    def __init__(self, module: str, logger_name: str = "peon.build"):
        self.logger = logging.getLogger(logger_name)
        self.module = module

    def _extra(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return {"props": {"module": self.module, **kwargs}}

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=self._extra(kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=self._extra(kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self.logger.error(message, extra=self._extra(kwargs))

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=self._extra(kwargs))


@dataclass
class Completed:
    output: Optional[str] = None


@dataclass
class StageWarning:
    output: str


@dataclass
class Cancelled:
    reason: str


@dataclass
class Fatal:
    error: BaseException
    output: Optional[str] = None

    @property
    def step_output(self) -> str:
        if not self.output:
            return str(self.error)
        separator = "" if self.output.endswith("\n") else "\n"
        return f"{self.output}{separator}{self.error}"


StageOutcome = Union[Completed, StageWarning, Cancelled, Fatal]
OutputSink = Callable[[str], None]
Stage = Callable[[OutputSink], Awaitable[StageOutcome]]


def escapes_root(path: str) -> bool:
    """Check whether a relative path could reach outside of its root."""
    pure = PurePosixPath(path)
    return pure.is_absolute() or ".." in pure.parts


def merge_env(env: Mapping[str, str]) -> Dict[str, str]:
    merged = os.environ.copy()
    merged.update(env)
    return merged


class BuildPipeline:
    """
    Build of a single commit.

    Attributes:
        build (Build): The build record, created by the dispatcher
        repo_config (RepoConfig): Repository and ref being built
        workspace (Optional[Path]): Temporary checkout, removed after the build
        manifest (Optional[BuildManifest]): Parsed .peon.yml
        destination (Optional[Destination]): Resolved deploy target
        path_in_destination (Optional[str]): Evaluated relative deploy path
    """

    def __init__(
        self,
        build: Build,
        repo_config: RepoConfig,
        settings: Settings,
        status: StatusStore,
        cache: CacheManager,
        cleanup: Optional[CleanupManager] = None,
        logger: Optional[LoggerInterface] = None,
    ):
        self.build = build
        self.repo_config = repo_config
        self.settings = settings
        self.status = status
        self.cache = cache
        self.cleanup = cleanup
        self.logger = logger or StandardLogger(f"build/{build.id}")

        self.repo_path = Path(settings.repos_directory) / repo_config.name
        self.updates = SerialQueue(f"build/{build.id}")
        self.start = utcnow()

        self.workspace: Optional[Path] = None
        self.manifest: Optional[BuildManifest] = None
        self.environment: Optional[Environment] = None
        self.destination: Optional[Destination] = None
        self.path_in_destination: Optional[str] = None
        self.local_directory: Optional[Path] = None

    @property
    def git_env(self) -> Dict[str, str]:
        if self.settings.git_ssh_command:
            return {"GIT_SSH_COMMAND": self.settings.git_ssh_command}
        return {}

    async def run(self) -> BuildStatus:
        """Run every stage, record the final build status and return it."""
        self.start = utcnow()
        self.logger.info(f"building commit {self.build.sha}")

        try:
            result = await self._run_stages()
        except Exception as e:
            self.logger.error(f"unexpected error while building {self.build.sha}: {e}")
            result = BuildStatus.failed
        finally:
            await self.updates.join()
            await self._remove_workspace()

        extra = self._success_extra() if result == BuildStatus.success else None
        self.status.finish_build(self.build.id, result, extra)
        return result

    def _stages(self) -> Iterator[Tuple[str, Stage]]:
        yield "update repository", self.update_repository
        yield "create workspace", self.create_workspace
        yield "read .peon.yml", self.read_config

        # Evaluated lazily, once .peon.yml has been read
        manifest = self.manifest
        if manifest.cache:
            yield "restore cache", self.restore_cache
        for command in manifest.commands:
            yield f"run {command}", partial(self.run_command, command)
        if manifest.cache:
            yield "save cache", self.save_cache
        yield "deploy", self.deploy

    async def _run_stages(self) -> BuildStatus:
        for description, stage in self._stages():
            outcome = await self._run_step(description, stage)
            if isinstance(outcome, Cancelled):
                return BuildStatus.cancelled
            if isinstance(outcome, Fatal):
                return BuildStatus.failed
        return BuildStatus.success

    def _update_step(self, description: str, status: StepStatus, output: Optional[str] = None) -> asyncio.Future:
        async def job() -> None:
            self.status.update_build_step(self.build.id, description, status, output)

        return self.updates.run(job)

    def _update_step_output(self, description: str, output: str) -> asyncio.Future:
        async def job() -> None:
            self.status.update_build_step_output(self.build.id, description, output)

        return self.updates.run(job)

    async def _run_step(self, description: str, stage: Stage) -> StageOutcome:
        self.logger.debug(f"running step: {description}")
        await self._update_step(description, StepStatus.running)

        def update_output(output: str) -> None:
            self._update_step_output(description, output)

        try:
            outcome = await stage(update_output)
        except Exception as e:
            outcome = Fatal(e, getattr(e, "output", None))

        await self.updates.join()

        if isinstance(outcome, Completed):
            status, output = StepStatus.success, outcome.output
        elif isinstance(outcome, StageWarning):
            self.logger.warning(f"error during step '{description}': {outcome.output}")
            status, output = StepStatus.failed, outcome.output
        elif isinstance(outcome, Cancelled):
            self.logger.info(f"cancelled build, {outcome.reason}")
            status, output = StepStatus.failed, outcome.reason
        else:
            self.logger.error(f"error during step '{description}': {outcome.error}")
            status, output = StepStatus.failed, outcome.step_output

        await self._update_step(description, status, output)
        return outcome

    async def _remove_workspace(self) -> None:
        if self.workspace is not None and self.workspace.is_dir():
            await run_in_threadpool(shutil.rmtree, self.workspace, ignore_errors=True)

    def _success_extra(self) -> Dict[str, Any]:
        absolute_url = self.destination.absolute_url
        if not absolute_url.endswith("/"):
            absolute_url = f"{absolute_url}/"
        extra: Dict[str, Any] = {"output_url": f"{absolute_url}{self.path_in_destination}"}
        if self.local_directory is not None:
            extra["local_directory"] = str(self.local_directory)
        return extra

    def _update_repository(self) -> None:
        try:
            repo = GitRepo(self.repo_path)
        except (NoSuchPathError, InvalidGitRepositoryError):
            self.repo_path.parent.mkdir(parents=True, exist_ok=True)
            GitRepo.clone_from(self.repo_config.url, self.repo_path, env=self.git_env)
            self.logger.debug(f"cloned repo into {self.repo_path}")
            return

        self.logger.debug(f"opened repo from {self.repo_path}")
        with repo.git.custom_environment(**self.git_env):
            repo.remotes.origin.fetch(tags=True, force=True)

    async def update_repository(self, update_output: OutputSink) -> StageOutcome:
        await run_in_threadpool(self._update_repository)
        return Completed()

    def _create_workspace(self) -> Path:
        workspace = Path(tempfile.mkdtemp(prefix=f"peon-workspace-{self.repo_config.name}-"))
        self.workspace = workspace

        self.logger.debug(f"cloning into {workspace}")
        repo = GitRepo.clone_from(str(self.repo_path), workspace)
        head = repo.create_head(WORKSPACE_BRANCH, self.build.sha)

        self.logger.debug(f"checking out {self.build.sha}")
        head.checkout()
        return workspace

    async def create_workspace(self, update_output: OutputSink) -> StageOutcome:
        await run_in_threadpool(self._create_workspace)
        return Completed()

    def _load_manifest(self) -> BuildManifest:
        path = self.workspace / MANIFEST_FILE
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(f"could not find {MANIFEST_FILE}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in {MANIFEST_FILE}: {e}") from e
        return BuildManifest.parse(data)

    def _resolve_destination(self, manifest: BuildManifest) -> Tuple[Destination, str]:
        """Return the first matching destination and its path template."""
        ref_mode, ref = self.repo_config.ref_mode, self.repo_config.ref

        for entry in manifest.destinations:
            if entry.name not in self.settings.destinations:
                raise ConfigurationError(f"unknown build destination: '{entry.name}' in {MANIFEST_FILE}")
            if entry.matches(ref_mode, ref):
                return self.settings.destinations[entry.name], entry.path or DEFAULT_DESTINATION_PATH

        raise ConfigurationError(
            f"could not find a destination matching {ref_mode.value} '{ref}' in {MANIFEST_FILE}"
        )

    def build_environment(self, destination: Destination, path_template: str) -> Environment:
        env = {
            "PEON_BUILD_ID": str(self.build.id),
            "PEON_BUILD_DATE": self.start.isoformat(),
            "PEON_ROOT_URL": posixpath.join(destination.root_url, path_template),
            "PEON_REPO_NAME": self.repo_config.name,
            "PEON_BRANCH": self.repo_config.branch,
            "PEON_TAG": self.repo_config.tag,
            "PEON_REF": self.repo_config.ref,
            "PEON_COMMIT": self.build.sha,
        }
        env.update(self.manifest.environment)
        return Environment(env)

    async def read_config(self, update_output: OutputSink) -> StageOutcome:
        manifest = self.manifest = await run_in_threadpool(self._load_manifest)
        ref_mode, ref = self.repo_config.ref_mode, self.repo_config.ref

        if not manifest.ref_allowed(ref_mode, ref):
            return Cancelled(f"{ref_mode.value} {ref} is not present in {MANIFEST_FILE}")

        destination, path_template = self._resolve_destination(manifest)
        environment = self.build_environment(destination, path_template)

        path = environment.evaluate(path_template)
        if escapes_root(path):
            raise ConfigurationError(
                f"invalid relative destination path '{path_template}' "
                f"(resolves to '{path}') in {MANIFEST_FILE}"
            )
        # Fails early on evaluation loops
        environment.evaluate_all()

        self.destination = destination
        self.path_in_destination = path
        self.environment = environment
        return Completed()

    async def restore_cache(self, update_output: OutputSink) -> StageOutcome:
        try:
            restored = await self.cache.restore(self.repo_config.name, self.workspace, self.manifest.cache)
        except Exception as e:
            return StageWarning(str(e))
        if not restored:
            return Completed("found nothing to restore")
        return Completed(f"restored paths {', '.join(restored)}")

    async def save_cache(self, update_output: OutputSink) -> StageOutcome:
        try:
            saved = await self.cache.save(self.repo_config.name, self.workspace, self.manifest.cache)
        except Exception as e:
            return StageWarning(str(e))
        if not saved:
            return Completed("found nothing to save")
        return Completed(f"saved paths {', '.join(saved)}")

    async def run_command(self, command: str, update_output: OutputSink) -> StageOutcome:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.workspace),
            env=merge_env(self.environment.evaluate_all()),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        lines = []

        def add_lines(name: str, data: List[bytes]) -> None:
            for line in data:
                lines.append(f"[{name}] {line.decode('utf-8', errors='replace')}\n")
            update_output("".join(lines))

        async def read(stream: asyncio.StreamReader, name: str) -> None:
            pending = b""
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                *complete, pending = (pending + chunk).split(b"\n")
                if complete:
                    add_lines(name, complete)
            if pending:
                add_lines(name, [pending])

        try:
            await asyncio.gather(read(process.stdout, "stdout"), read(process.stderr, "stderr"))
            returncode = await process.wait()
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        output = "".join(lines)
        if returncode != 0:
            return Fatal(CommandError(command, returncode, output), output)
        return Completed(output)

    async def _rsync(self, source: str, destination: Destination) -> None:
        args = ["rsync", "--partial", "--recursive", "--compress"]
        if destination.shell:
            args += ["-e", destination.shell]
        target = destination.destination
        if not target.endswith("/"):
            target = f"{target}/"
        if not source.endswith("/"):
            source = f"{source}/"
        args += [source, target]

        self.logger.debug(f"running {' '.join(args)}")
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        stdout, _ = await process.communicate()
        if process.returncode != 0:
            output = stdout.decode("utf-8", errors="replace").strip()
            raise DeployError(f"rsync exited with error code {process.returncode}: {output}")

    async def _deploy_remote(self, output_dir: Path) -> None:
        # Move the output to tmp/<path> so rsync creates intermediate directories remotely
        tmp_dir = Path(tempfile.mkdtemp(prefix=f"peon-output-{self.repo_config.name}-"))
        try:
            moved = tmp_dir / self.path_in_destination
            moved.parent.mkdir(parents=True, exist_ok=True)
            self.logger.debug(f"moving {output_dir} to {moved}")
            await run_in_threadpool(shutil.move, str(output_dir), str(moved))

            self.logger.info(f"copying output to {self.destination.destination}")
            await self._rsync(str(tmp_dir), self.destination)
        finally:
            await run_in_threadpool(shutil.rmtree, tmp_dir, ignore_errors=True)

    async def _deploy_local(self, output_dir: Path) -> None:
        target = Path(self.destination.destination) / self.path_in_destination
        self.logger.info(f"copying output to {target}")
        await run_in_threadpool(shutil.copytree, output_dir, target, dirs_exist_ok=True)
        self.local_directory = target

        if self.cleanup is not None:
            await self.cleanup.register_for_cleanup(
                self.repo_config.name,
                self.repo_config.ref_mode,
                self.repo_config.ref,
                self.build.id,
                self.destination.destination,
                self.path_in_destination,
            )

    async def deploy(self, update_output: OutputSink) -> StageOutcome:
        output = self.manifest.output
        output_dir = self.workspace / output

        if not output_dir.exists():
            raise DeployError(f"output directory '{output}' not found")
        if not output_dir.is_dir():
            raise DeployError(f"output '{output}' is not a directory")
        if escapes_root(self.path_in_destination):
            raise DeployError(f"invalid destination path '{self.path_in_destination}'")

        if self.destination.is_remote:
            await self._deploy_remote(output_dir)
        else:
            await self._deploy_local(output_dir)

        self.logger.info(f"built {self.build.sha} successfully")
        return Completed()
