import hashlib
import os
import tarfile
import time

import pytest

from peon.cache import CacheManager, cache_filename
from peon.models import CacheEntry

DAY = 24 * 3600
PACKAGE_JSON = '{"name": "site"}'


def sha256(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class TestCacheFilename:
    def test_replaces_slashes(self):
        assert cache_filename("repo", "a/b/c", "abc") == "repo-a_b_c-abc.tar"


class TestCacheManager:
    """Test cache save, restore and pruning."""

    @pytest.fixture(autouse=True)
    def setup(self, tmp_path):
        self.cache_dir = tmp_path / "cache"
        self.workspace = tmp_path / "workspace"
        self.workspace.mkdir()
        self.cache = CacheManager(self.cache_dir, validity=DAY)

    def make_archive(self, name: str, size: int = 0, age: float = 0) -> None:
        self.cache_dir.mkdir(exist_ok=True)
        path = self.cache_dir / name
        path.write_bytes(b"x" * size)
        mtime = time.time() - age
        os.utime(path, (mtime, mtime))

    def populate_workspace(self) -> CacheEntry:
        (self.workspace / "package.json").write_text(PACKAGE_JSON)
        modules = self.workspace / "node_modules" / "lib"
        modules.mkdir(parents=True)
        (modules / "index.js").write_text("module.exports = 1")
        return CacheEntry(path="node_modules", source="package.json")

    def test_cache_filename_uses_key_file_digest(self):
        entry = self.populate_workspace()
        filename = self.cache.get_cache_filename("site", self.workspace, entry)
        assert filename == f"site-node_modules-{sha256(PACKAGE_JSON.encode())}.tar"
        assert entry.digest == sha256(PACKAGE_JSON.encode())

    def test_cache_filename_missing_key_file(self):
        entry = CacheEntry(path="node_modules", source="missing.lock")
        assert self.cache.get_cache_filename("site", self.workspace, entry) is None

    def test_digest_is_memoized(self):
        entry = self.populate_workspace()
        self.cache.get_cache_filename("site", self.workspace, entry)
        (self.workspace / "package.json").write_text("changed")
        filename = self.cache.get_cache_filename("site", self.workspace, entry)
        assert filename.endswith(f"{sha256(PACKAGE_JSON.encode())}.tar")

    @pytest.mark.asyncio
    async def test_save_then_restore(self, tmp_path):
        entry = self.populate_workspace()
        saved = await self.cache.save("site", self.workspace, [entry])
        assert saved == ["node_modules"]

        other = tmp_path / "other"
        other.mkdir()
        (other / "package.json").write_text(PACKAGE_JSON)
        restored = await self.cache.restore(
            "site", other, [CacheEntry(path="node_modules", source="package.json")]
        )
        assert restored == ["node_modules"]
        assert (other / "node_modules" / "lib" / "index.js").read_text() == "module.exports = 1"

    @pytest.mark.asyncio
    async def test_archive_contains_only_entry_path(self):
        entry = self.populate_workspace()
        (self.workspace / "other.txt").write_text("not cached")
        await self.cache.save("site", self.workspace, [entry])

        archive = self.cache_dir / self.cache.get_cache_filename("site", self.workspace, entry)
        with tarfile.open(archive) as tar:
            names = tar.getnames()
        assert all(name.startswith("node_modules") for name in names)

    @pytest.mark.asyncio
    async def test_save_skips_missing_path(self):
        (self.workspace / "package.json").write_text("{}")
        saved = await self.cache.save(
            "site", self.workspace, [CacheEntry(path="node_modules", source="package.json")]
        )
        assert saved == []

    @pytest.mark.asyncio
    async def test_save_skips_missing_key_file(self):
        (self.workspace / "node_modules").mkdir()
        saved = await self.cache.save(
            "site", self.workspace, [CacheEntry(path="node_modules", source="package.json")]
        )
        assert saved == []

    @pytest.mark.asyncio
    async def test_save_skips_existing_archive(self):
        entry = self.populate_workspace()
        assert await self.cache.save("site", self.workspace, [entry]) == ["node_modules"]
        assert await self.cache.save("site", self.workspace, [entry]) == []

    @pytest.mark.asyncio
    async def test_restore_nothing(self):
        entry = self.populate_workspace()
        assert await self.cache.restore("site", self.workspace, [entry]) == []

    @pytest.mark.asyncio
    async def test_atomic_writes_leave_no_temporary_files(self):
        entry = self.populate_workspace()
        await self.cache.save("site", self.workspace, [entry])
        assert [p.name for p in self.cache_dir.iterdir()] == [
            self.cache.get_cache_filename("site", self.workspace, entry)
        ]

    @pytest.mark.asyncio
    async def test_direct_writes(self):
        cache = CacheManager(self.cache_dir, validity=DAY, atomic_writes=False)
        entry = self.populate_workspace()
        assert await cache.save("site", self.workspace, [entry]) == ["node_modules"]
        assert await cache.restore("site", self.workspace, [entry]) == ["node_modules"]

    @pytest.mark.asyncio
    async def test_changed_key_file_writes_a_new_archive(self):
        entry = self.populate_workspace()
        await self.cache.save("site", self.workspace, [entry])
        old_name = self.cache.get_cache_filename("site", self.workspace, entry)

        (self.workspace / "package.json").write_text('{"name": "site", "version": 2}')
        changed = CacheEntry(path="node_modules", source="package.json")
        assert await self.cache.save("site", self.workspace, [changed]) == ["node_modules"]
        new_name = self.cache.get_cache_filename("site", self.workspace, changed)

        assert new_name != old_name
        assert sorted(p.name for p in self.cache_dir.iterdir()) == sorted([old_name, new_name])

        expired = time.time() - 2 * DAY
        os.utime(self.cache_dir / old_name, (expired, expired))
        assert await self.cache.restore("site", self.workspace, [changed]) == ["node_modules"]
        assert [p.name for p in self.cache_dir.iterdir()] == [new_name]

    @pytest.mark.asyncio
    async def test_restore_refuses_members_outside_the_workspace(self, tmp_path):
        entry = self.populate_workspace()
        filename = self.cache.get_cache_filename("site", self.workspace, entry)
        outside = tmp_path / "outside.txt"
        outside.write_text("outside")
        self.cache_dir.mkdir()
        with tarfile.open(self.cache_dir / filename, "w") as tar:
            tar.add(outside, arcname="../escaped.txt")

        with pytest.raises(tarfile.OutsideDestinationError):
            await self.cache.restore("site", self.workspace, [entry])
        assert not (tmp_path / "escaped.txt").exists()

    def test_prune_removes_expired_archives(self):
        self.make_archive("old.tar", age=2 * DAY)
        self.make_archive("new.tar", age=60)

        removed = self.cache.prune()

        assert removed == ["old.tar"]
        assert [p.name for p in self.cache_dir.iterdir()] == ["new.tar"]

    def test_prune_without_size_limit_keeps_valid_archives(self):
        for i in range(5):
            self.make_archive(f"{i}.tar", size=1000, age=i)
        assert self.cache.prune() == []

    def test_prune_removes_oldest_until_under_size_limit(self):
        cache = CacheManager(self.cache_dir, validity=DAY, max_size=250)
        self.make_archive("a.tar", size=100, age=300)
        self.make_archive("b.tar", size=100, age=200)
        self.make_archive("c.tar", size=100, age=100)

        removed = cache.prune()

        assert removed == ["a.tar"]
        assert sorted(p.name for p in self.cache_dir.iterdir()) == ["b.tar", "c.tar"]

    def test_prune_expires_before_size_eviction(self):
        cache = CacheManager(self.cache_dir, validity=DAY, max_size=150)
        self.make_archive("expired.tar", size=100, age=2 * DAY)
        self.make_archive("a.tar", size=100, age=300)
        self.make_archive("b.tar", size=100, age=100)

        removed = cache.prune()

        assert removed == ["expired.tar", "a.tar"]
        remaining = list(self.cache_dir.iterdir())
        assert [p.name for p in remaining] == ["b.tar"]
        assert sum(p.stat().st_size for p in remaining) <= 150

    def test_prune_ignores_temporary_files(self):
        self.make_archive(".site-node_modules-abc.tar-tmp", size=1000, age=2 * DAY)
        assert self.cache.prune() == []
