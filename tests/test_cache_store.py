"""Tests for the cache package.

Tests reader/writer locking, commit semantics, the manifest and eviction.
"""

import threading
import time
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from stagebuild.cache.locks import FileLock, file_lock
from stagebuild.cache.store import CacheStore, format_size, key_dir_name
from stagebuild.errors import CacheWriteError
from stagebuild.types import CacheSharing

EXCLUSIVE = CacheSharing.EXCLUSIVE
SHARED = CacheSharing.SHARED


def put(store, key, files, mode=EXCLUSIVE):
    """Commit files (name -> content) to a key."""
    handle = store.acquire(key, mode)
    for name, content in files.items():
        path = handle.workdir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    store.release(handle)


class TestFileLock:
    """Tests for FileLock."""

    def test_exclusive_excludes(self, tmp_path):
        """A second exclusive lock cannot be taken while one is held."""
        path = tmp_path / "k.lock"
        with file_lock(path):
            assert not FileLock(path).try_acquire()
        other = FileLock(path)
        assert other.try_acquire()
        other.release()

    def test_shared_locks_coexist(self, tmp_path):
        """Shared locks can be held concurrently."""
        path = tmp_path / "k.lock"
        first = FileLock(path, shared=True)
        second = FileLock(path, shared=True)
        first.acquire()
        try:
            assert second.try_acquire()
            assert not FileLock(path).try_acquire()
        finally:
            second.release()
            first.release()

    def test_timeout(self, tmp_path):
        """acquire raises TimeoutError when the lock stays busy."""
        path = tmp_path / "k.lock"
        with file_lock(path):
            with pytest.raises(TimeoutError):
                FileLock(path).acquire(timeout=0.1)

    def test_release_is_idempotent(self, tmp_path):
        """Releasing twice is a no-op."""
        lock = FileLock(tmp_path / "k.lock")
        lock.acquire()
        lock.release()
        lock.release()
        assert not lock.held


class TestAcquireRelease:
    """Tests for CacheStore acquire/release."""

    def test_new_key_is_empty(self, cache_store):
        """A never-committed key starts empty."""
        with cache_store.acquire("fresh") as handle:
            assert handle.workdir.is_dir()
            assert list(handle.workdir.iterdir()) == []

    def test_commit_persists(self, cache_store):
        """Released content is visible to the next acquirer."""
        put(cache_store, "/var/cache/apt", {"pkg.deb": "data"})

        with cache_store.acquire("/var/cache/apt", SHARED) as handle:
            assert (handle.workdir / "pkg.deb").read_text() == "data"

        entry = cache_store.get_entry("/var/cache/apt")
        assert entry is not None
        assert entry.size_bytes == 4
        assert entry.dir_name == key_dir_name("/var/cache/apt")
        assert entry.content_digest

    def test_uncommitted_writes_are_invisible(self, cache_store):
        """Writes of a holder are not visible to concurrent holders."""
        first = cache_store.acquire("k", SHARED)
        (first.workdir / "new.txt").write_text("draft")

        second = cache_store.acquire("k", SHARED)
        try:
            assert not (second.workdir / "new.txt").exists()
            assert not cache_store.content_dir("k").joinpath("new.txt").exists()
        finally:
            cache_store.release(first)
            cache_store.release(second)

    def test_release_without_commit_discards(self, cache_store):
        """commit=False drops the working copy."""
        handle = cache_store.acquire("k")
        (handle.workdir / "tmp").write_text("x")
        cache_store.release(handle, commit=False)

        assert cache_store.get_entry("k") is None
        assert not handle.workdir.exists()

    def test_release_twice_is_noop(self, cache_store):
        """Releasing a released handle does nothing."""
        handle = cache_store.acquire("k")
        cache_store.release(handle)
        cache_store.release(handle)
        assert not handle.held

    def test_window_recorded(self, cache_store):
        """Handles record their lock window."""
        handle = cache_store.acquire("k", EXCLUSIVE)
        with pytest.raises(RuntimeError):
            handle.window()
        cache_store.release(handle)

        window = handle.window()
        assert window.key == "k"
        assert window.sharing is EXCLUSIVE
        assert window.acquired_at <= window.released_at


class TestSharingModes:
    """Tests for exclusive and shared semantics."""

    def test_exclusive_blocks_exclusive(self, cache_store):
        """Exclusive acquisition waits for an exclusive holder."""
        with cache_store.acquire("k", EXCLUSIVE):
            with pytest.raises(TimeoutError):
                cache_store.acquire("k", EXCLUSIVE, timeout=0.1)

    def test_exclusive_blocks_shared(self, cache_store):
        """Shared acquisition waits for an exclusive holder."""
        with cache_store.acquire("k", EXCLUSIVE):
            with pytest.raises(TimeoutError):
                cache_store.acquire("k", SHARED, timeout=0.1)

    def test_shared_blocks_exclusive(self, cache_store):
        """Exclusive acquisition waits for shared holders."""
        with cache_store.acquire("k", SHARED):
            with pytest.raises(TimeoutError):
                cache_store.acquire("k", EXCLUSIVE, timeout=0.1)

    def test_different_keys_do_not_contend(self, cache_store):
        """Locks are per key."""
        with cache_store.acquire("a", EXCLUSIVE):
            with cache_store.acquire("b", EXCLUSIVE, timeout=0.1) as other:
                assert other.held

    def test_exclusive_waits_then_proceeds(self, cache_store):
        """A blocked exclusive acquirer proceeds after release."""
        first = cache_store.acquire("k", EXCLUSIVE)
        acquired = []

        def contender():
            handle = cache_store.acquire("k", EXCLUSIVE)
            acquired.append(handle.acquired_at)
            cache_store.release(handle)

        thread = threading.Thread(target=contender)
        thread.start()
        time.sleep(0.2)
        assert acquired == []
        cache_store.release(first)
        thread.join(timeout=5)

        assert len(acquired) == 1
        assert acquired[0] >= first.released_at

    def test_exclusive_replaces_content(self, cache_store):
        """Exclusive commits replace content, so deletions persist."""
        put(cache_store, "k", {"a": "1", "b": "2"})

        handle = cache_store.acquire("k", EXCLUSIVE)
        (handle.workdir / "a").unlink()
        cache_store.release(handle)

        content = cache_store.content_dir("k")
        assert sorted(p.name for p in content.iterdir()) == ["b"]

    def test_shared_commits_merge(self, cache_store):
        """Concurrent shared holders both contribute their files."""
        first = cache_store.acquire("k", SHARED)
        second = cache_store.acquire("k", SHARED)
        (first.workdir / "x").write_text("from first")
        (second.workdir / "y").write_text("from second")
        cache_store.release(first)
        cache_store.release(second)

        content = cache_store.content_dir("k")
        assert (content / "x").read_text() == "from first"
        assert (content / "y").read_text() == "from second"

    def test_shared_last_write_wins(self, cache_store):
        """The last shared commit wins per file."""
        first = cache_store.acquire("k", SHARED)
        second = cache_store.acquire("k", SHARED)
        (first.workdir / "f").write_text("first")
        (second.workdir / "f").write_text("second")
        cache_store.release(first)
        cache_store.release(second)

        assert (cache_store.content_dir("k") / "f").read_text() == "second"


class TestCommitFailure:
    """Tests for CacheWriteError handling."""

    def test_commit_failure_raises_cache_write_error(self, cache_store):
        """Persist failures surface as CacheWriteError."""
        put(cache_store, "k", {"old": "content"})
        handle = cache_store.acquire("k", EXCLUSIVE)
        (handle.workdir / "new").write_text("content")

        with (
            patch.object(
                CacheStore, "_replace_content", side_effect=OSError("No space left")
            ),
            pytest.raises(CacheWriteError) as exc_info,
        ):
            cache_store.release(handle)

        assert exc_info.value.key == "k"
        assert "No space left" in str(exc_info.value)
        assert not handle.held

    def test_commit_failure_keeps_previous_content_and_unlocks(self, cache_store):
        """A failed commit leaves the old content and releases the lock."""
        put(cache_store, "k", {"old": "content"})
        handle = cache_store.acquire("k", EXCLUSIVE)

        with (
            patch.object(CacheStore, "_replace_content", side_effect=OSError("boom")),
            pytest.raises(CacheWriteError),
        ):
            cache_store.release(handle)

        with cache_store.acquire("k", EXCLUSIVE, timeout=0.5) as again:
            assert (again.workdir / "old").read_text() == "content"


    def test_manifest_failure_on_acquire_raises_cache_write_error(self, cache_store):
        """Manifest errors while acquiring surface as CacheWriteError."""
        put(cache_store, "k", {"old": "content"})

        with (
            patch.object(
                CacheStore, "_touch", side_effect=OperationalError("UPDATE", {}, None)
            ),
            pytest.raises(CacheWriteError) as exc_info,
        ):
            cache_store.acquire("k", EXCLUSIVE)

        assert exc_info.value.key == "k"
        # The key lock was released again
        with cache_store.acquire("k", EXCLUSIVE, timeout=0.5) as again:
            assert (again.workdir / "old").read_text() == "content"


class TestManifestAndPrune:
    """Tests for manifest listing and LRU eviction."""

    def test_list_entries_lru_order(self, cache_store):
        """Entries are listed least recently used first."""
        for key in ("a", "b", "c"):
            put(cache_store, key, {"f": "x"})
            time.sleep(0.01)
        cache_store.release(cache_store.acquire("a", SHARED), commit=False)

        assert [e.key for e in cache_store.list_entries()] == ["b", "c", "a"]

    def test_prune_evicts_lru_within_budget(self, cache_store):
        """prune evicts the least recently used keys first."""
        for key in ("old", "mid", "new"):
            put(cache_store, key, {"f": "0123456789"})
            time.sleep(0.01)

        evicted = cache_store.prune(budget_bytes=20)

        assert evicted == ["old"]
        assert not cache_store.content_dir("old").exists()
        assert cache_store.get_entry("old") is None
        assert cache_store.total_size() == 20

    def test_prune_skips_held_keys(self, cache_store):
        """Keys held by an acquirer are never evicted."""
        for key in ("held", "free"):
            put(cache_store, key, {"f": "0123456789"})
            time.sleep(0.01)

        with cache_store.acquire("held", SHARED):
            evicted = cache_store.prune(budget_bytes=0)

        assert evicted == ["free"]
        assert cache_store.get_entry("held") is not None

    def test_prune_dry_run(self, cache_store):
        """dry_run reports without evicting."""
        put(cache_store, "k", {"f": "data"})

        assert cache_store.prune(budget_bytes=0, dry_run=True) == ["k"]
        assert cache_store.get_entry("k") is not None

    def test_prune_without_budget(self, cache_store):
        """An unlimited store never evicts."""
        put(cache_store, "k", {"f": "data"})

        assert cache_store.prune() == []

    def test_clear(self, cache_store):
        """clear evicts every unheld key."""
        put(cache_store, "a", {"f": "1"})
        put(cache_store, "b", {"f": "2"})

        assert sorted(cache_store.clear()) == ["a", "b"]
        assert cache_store.list_entries() == []

    def test_zero_budget_evicts_empty_entries(self, cache_store):
        """A budget of 0 also evicts keys whose content is empty."""
        put(cache_store, "empty", {})
        put(cache_store, "full", {"f": "data"})

        evicted = cache_store.prune(budget_bytes=0)

        assert sorted(evicted) == ["empty", "full"]
        assert cache_store.list_entries() == []

    def test_clear_evicts_empty_entries(self, cache_store):
        """clear removes zero-byte keys too."""
        put(cache_store, "empty", {})

        assert cache_store.clear() == ["empty"]
        assert cache_store.get_entry("empty") is None

    def test_nonzero_budget_keeps_empty_entries(self, cache_store):
        """Within a non-zero budget nothing is evicted."""
        put(cache_store, "empty", {})

        assert cache_store.prune(budget_bytes=1) == []
        assert cache_store.get_entry("empty") is not None

    def test_info(self, cache_store):
        """info summarizes the store."""
        put(cache_store, "k", {"f": "data"})

        info = cache_store.info()

        assert info["entries"] == 1
        assert info["total_size_bytes"] == 4
        assert info["total_size_human"] == "4.0 B"

    def test_manifest_survives_reopen(self, tmp_path):
        """A new store instance sees previously committed keys."""
        store = CacheStore(tmp_path / "cache")
        put(store, "k", {"f": "data"})
        store.close()

        reopened = CacheStore(tmp_path / "cache")
        try:
            assert [e.key for e in reopened.list_entries()] == ["k"]
        finally:
            reopened.close()


class TestFormatSize:
    """Tests for format_size function."""

    def test_units(self):
        """Sizes are rendered with binary units."""
        assert format_size(512) == "512.0 B"
        assert format_size(2048) == "2.0 KB"
        assert format_size(5 * 1024**3) == "5.0 GB"
