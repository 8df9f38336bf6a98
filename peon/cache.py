"""
Content-addressed build cache.

Cache entries declared in .peon.yml name a directory to persist (``path``)
and a key file (``source``). The sha256 of the key file content is part of
the archive filename, so a given key file content always maps to the same
archive and archives never need to be overwritten.

Archives are plain tar files stored in ``<working_directory>/cache``. Before
each restore the cache is pruned: expired archives are removed first, then
the oldest archives are removed until the total size fits the configured
budget.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Iterable, List, Optional

from starlette.concurrency import run_in_threadpool

from .models import CacheEntry

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = "tar"
TEMP_PREFIX = "."


def cache_filename(repo_name: str, path: str, digest: str) -> str:
    """Build the archive filename for a repository path and key digest."""
    clean_path = path.replace("/", "_")
    return f"{repo_name}-{clean_path}-{digest}.{ARCHIVE_EXTENSION}"


def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(64 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class CacheManager:
    """
    Save and restore cache entries as tar archives.

    Attributes:
        cache_directory (Path): Directory holding the archives
        validity (float): Archive lifetime in seconds
        max_size (Optional[int]): Maximum total archive size in bytes
        atomic_writes (bool): Write archives to a hidden temporary file and
            rename them into place. When disabled, archives are written
            under their final name, and a concurrent reader may observe a
            partially written archive.
    """

    def __init__(
        self,
        cache_directory: Path,
        validity: float,
        max_size: Optional[int] = None,
        atomic_writes: bool = True,
    ):
        self.cache_directory = Path(cache_directory)
        self.validity = validity
        self.max_size = max_size
        self.atomic_writes = atomic_writes

    def _debug(self, repo_name: str, message: str) -> None:
        logger.debug(message, extra={"props": {"module": f"cache/{repo_name}"}})

    def get_cache_filename(self, repo_name: str, root: Path, entry: CacheEntry) -> Optional[str]:
        """
        Compute the archive filename for an entry.

        The key file digest is memoized on the entry. Returns None when the
        key file cannot be read, meaning the entry cannot be cached this run.
        """
        if not entry.digest:
            key_file = Path(root) / entry.source
            try:
                entry.digest = _hash_file(key_file)
            except OSError:
                self._debug(repo_name, f"could not read key file {entry.source}")
                return None
        return cache_filename(repo_name, entry.path, entry.digest)

    def _archives(self) -> List[os.DirEntry]:
        with os.scandir(self.cache_directory) as it:
            return [
                e for e in it
                if e.is_file(follow_symlinks=False) and not e.name.startswith(TEMP_PREFIX)
            ]

    def prune(self) -> List[str]:
        """
        Remove expired archives, then the oldest ones until under max_size.

        Returns:
            Names of the removed archives
        """
        self.cache_directory.mkdir(parents=True, exist_ok=True)
        removed = []
        min_mtime = time.time() - self.validity

        remaining = []
        for archive in self._archives():
            st = archive.stat()
            if st.st_mtime < min_mtime:
                logger.debug(f"removing expired {archive.name}", extra={"props": {"module": "cache"}})
                os.unlink(archive.path)
                removed.append(archive.name)
            else:
                remaining.append((st.st_mtime, st.st_size, archive))

        if self.max_size is not None:
            total = sum(size for _, size, _ in remaining)
            for _, size, archive in sorted(remaining, key=lambda item: item[0]):
                if total <= self.max_size:
                    break
                logger.debug(
                    f"removing {archive.name} to fit cache size",
                    extra={"props": {"module": "cache"}},
                )
                os.unlink(archive.path)
                removed.append(archive.name)
                total -= size

        return removed

    def _restore(self, repo_name: str, root: Path, entries: Iterable[CacheEntry]) -> List[str]:
        self.prune()
        restored = []

        for entry in entries:
            filename = self.get_cache_filename(repo_name, root, entry)
            if not filename:
                continue

            archive = self.cache_directory / filename
            if not archive.is_file():
                self._debug(repo_name, f"archive {filename} not found, {entry.path} will not be restored")
                continue

            self._debug(repo_name, f"restoring {entry.path} from {filename}")
            with tarfile.open(archive) as tar:
                tar.extractall(root, filter="data")
            restored.append(entry.path)

        return restored

    def _write_archive(self, root: Path, entry: CacheEntry, archive: Path) -> None:
        if not self.atomic_writes:
            with tarfile.open(archive, "w") as tar:
                tar.add(Path(root) / entry.path, arcname=entry.path)
            return

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{TEMP_PREFIX}{archive.name}-", dir=self.cache_directory
        )
        try:
            with os.fdopen(fd, "wb") as f, tarfile.open(fileobj=f, mode="w") as tar:
                tar.add(Path(root) / entry.path, arcname=entry.path)
            os.replace(tmp_name, archive)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _save(self, repo_name: str, root: Path, entries: Iterable[CacheEntry]) -> List[str]:
        self.cache_directory.mkdir(parents=True, exist_ok=True)
        saved = []

        for entry in entries:
            if not (Path(root) / entry.path).exists():
                self._debug(repo_name, f"path {entry.path} not found, will not be saved")
                continue

            filename = self.get_cache_filename(repo_name, root, entry)
            if not filename:
                continue

            archive = self.cache_directory / filename
            if archive.exists():
                self._debug(repo_name, f"skipping save of {entry.path}, {filename} exists")
                continue

            self._debug(repo_name, f"saving {entry.path} as {filename}")
            self._write_archive(root, entry, archive)
            saved.append(entry.path)

        return saved

    async def restore(self, repo_name: str, root: Path, entries: Iterable[CacheEntry]) -> List[str]:
        """
        Prune the cache, then extract matching archives into root.

        Returns:
            Paths of the restored entries
        """
        return await run_in_threadpool(self._restore, repo_name, Path(root), list(entries))

    async def save(self, repo_name: str, root: Path, entries: Iterable[CacheEntry]) -> List[str]:
        """
        Archive entries whose archive does not exist yet.

        Returns:
            Paths of the saved entries
        """
        return await run_in_threadpool(self._save, repo_name, Path(root), list(entries))
