"""Keyed cache store for cache mounts.

This module handles:
- Scoped acquisition of cache keys with reader/writer semantics
- Private working copies so uncommitted writes are never visible to others
- Committing working copies back (replace for exclusive, merge for shared)
- The SQLite manifest of entries and LRU eviction within a size budget

On-disk layout under the cache root::

    entries/<dir_name>/         committed content of one key
    locks/<dir_name>.lock       reader/writer lock of the key
    locks/<dir_name>.commit     short lock serializing commits and reads
    staging/                    working copies of held keys
    manifest.sqlite             CacheEntry rows
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from stagebuild.cache.locks import FileLock, file_lock
from stagebuild.cache.models import CacheEntry
from stagebuild.db import (
    create_all_tables,
    get_engine,
    get_session,
    get_session_factory,
    manifest_url,
)
from stagebuild.errors import CacheWriteError
from stagebuild.stages.snapshot import compute_tree_hash, iter_tree, tree_size
from stagebuild.types import CacheSharing, CacheWindow

if TYPE_CHECKING:
    from stagebuild.config import Settings

logger = logging.getLogger(__name__)


def key_dir_name(key: str) -> str:
    """Return the filesystem-safe directory name for a cache key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


@dataclass
class CacheHandle:
    """Scoped access to one cache key.

    Attributes:
        key: Cache key.
        sharing: Mode the key was acquired in.
        workdir: Private working copy of the key's content.
        acquired_at: Monotonic time the lock was obtained.
        released_at: Monotonic time the lock was given up (None while held).
    """

    key: str
    sharing: CacheSharing
    workdir: Path
    acquired_at: float
    released_at: float | None = None
    _lock: FileLock | None = field(default=None, repr=False)
    _store: CacheStore | None = field(default=None, repr=False)

    @property
    def held(self) -> bool:
        """Whether the handle still holds its key."""
        return self.released_at is None

    def window(self) -> CacheWindow:
        """Return the lock window of a released handle."""
        if self.released_at is None:
            raise RuntimeError(f"Cache handle for '{self.key}' is still held")
        return CacheWindow(
            key=self.key,
            sharing=self.sharing,
            acquired_at=self.acquired_at,
            released_at=self.released_at,
        )

    def __enter__(self) -> CacheHandle:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.held and self._store is not None:
            self._store.release(self)


class CacheStore:
    """File-based keyed cache store with an LRU size budget.

    Args:
        root: Cache root directory.
        budget_bytes: Total size budget for prune() (None = unlimited).
    """

    def __init__(self, root: str | Path, budget_bytes: int | None = None) -> None:
        self.root = Path(root).resolve()
        self.budget_bytes = budget_bytes
        self.entries_dir = self.root / "entries"
        self.locks_dir = self.root / "locks"
        self.staging_dir = self.root / "staging"
        for d in (self.entries_dir, self.locks_dir, self.staging_dir):
            d.mkdir(parents=True, exist_ok=True)

        self._engine = get_engine(manifest_url(self.root))
        create_all_tables(self._engine)
        self._session_factory = get_session_factory(self._engine)
        # SQLite allows one writer; keep manifest updates from worker threads serial
        self._db_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheStore:
        """Create a store from application settings."""
        return cls(settings.cache_dir, budget_bytes=settings.cache_budget_bytes)

    def close(self) -> None:
        """Dispose of the manifest engine."""
        self._engine.dispose()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def content_dir(self, key: str) -> Path:
        """Return the committed content directory of a key."""
        return self.entries_dir / key_dir_name(key)

    def _lock_path(self, key: str) -> Path:
        return self.locks_dir / f"{key_dir_name(key)}.lock"

    def _commit_lock_path(self, key: str) -> Path:
        return self.locks_dir / f"{key_dir_name(key)}.commit"

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(
        self,
        key: str,
        mode: CacheSharing = CacheSharing.SHARED,
        timeout: float | None = None,
    ) -> CacheHandle:
        """Acquire a cache key.

        Exclusive acquisition waits for every other holder of the key;
        shared acquisition only waits for an exclusive holder.

        Args:
            key: Cache key.
            mode: Sharing mode.
            timeout: Lock acquisition timeout in seconds (None = blocking).

        Returns:
            CacheHandle whose workdir holds a private copy of the content.

        Raises:
            TimeoutError: If the key cannot be locked within timeout.
            CacheWriteError: If the working copy or the manifest cannot be
                updated.
        """
        lock = FileLock(self._lock_path(key), shared=mode is CacheSharing.SHARED)
        logger.debug("Acquiring cache '%s' (%s)", key, mode.value)
        lock.acquire(timeout=timeout)

        try:
            workdir = Path(
                tempfile.mkdtemp(prefix=f"{key_dir_name(key)[:12]}_", dir=self.staging_dir)
            )
            content = self.content_dir(key)
            with file_lock(self._commit_lock_path(key)):
                if content.exists():
                    shutil.copytree(content, workdir, symlinks=True, dirs_exist_ok=True)
            self._touch(key)
        except (OSError, SQLAlchemyError) as e:
            lock.release()
            logger.error("Cache acquisition failed for '%s': %s", key, e)
            raise CacheWriteError(key, str(e)) from e
        except BaseException:
            lock.release()
            raise

        handle = CacheHandle(
            key=key,
            sharing=mode,
            workdir=workdir,
            acquired_at=time.monotonic(),
            _lock=lock,
            _store=self,
        )
        logger.debug("Acquired cache '%s' (%s)", key, mode.value)
        return handle

    def release(self, handle: CacheHandle, commit: bool = True) -> None:
        """Release a cache key, persisting the working copy.

        The lock is always released, even when the commit fails.

        Args:
            handle: Handle returned by acquire().
            commit: Persist the working copy (False discards it).

        Raises:
            CacheWriteError: If the content cannot be persisted.
        """
        if not handle.held:
            return

        try:
            if commit:
                with file_lock(self._commit_lock_path(handle.key)):
                    self._commit(handle)
        finally:
            shutil.rmtree(handle.workdir, ignore_errors=True)
            handle.released_at = time.monotonic()
            if handle._lock is not None:
                handle._lock.release()
            logger.debug("Released cache '%s'", handle.key)

    def _commit(self, handle: CacheHandle) -> None:
        content = self.content_dir(handle.key)
        try:
            if handle.sharing is CacheSharing.EXCLUSIVE:
                self._replace_content(handle.workdir, content)
            else:
                self._merge_content(handle.workdir, content)
            digest = compute_tree_hash(content)
            size = tree_size(content)
            self._record(handle.key, digest, size)
        except (OSError, SQLAlchemyError) as e:
            logger.error("Cache commit failed for '%s': %s", handle.key, e)
            raise CacheWriteError(handle.key, str(e)) from e

        logger.debug(
            "Committed cache '%s' (%s, %d bytes)", handle.key, digest[:12], size
        )

    def _replace_content(self, workdir: Path, content: Path) -> None:
        """Swap the working copy in as the key's content."""
        old: Path | None = None
        if content.exists():
            old = Path(tempfile.mkdtemp(prefix="old_", dir=self.staging_dir))
            os.rmdir(old)
            os.replace(content, old)
        try:
            os.replace(workdir, content)
        except OSError:
            if old is not None:
                os.replace(old, content)
            raise
        if old is not None:
            shutil.rmtree(old, ignore_errors=True)

    def _merge_content(self, workdir: Path, content: Path) -> None:
        """Merge the working copy into the key's content, last write wins."""
        content.mkdir(parents=True, exist_ok=True)
        for src in iter_tree(workdir):
            dest = content / src.relative_to(workdir)
            if src.is_dir() and not src.is_symlink():
                if dest.is_symlink() or (dest.exists() and not dest.is_dir()):
                    dest.unlink()
                dest.mkdir(exist_ok=True)
                shutil.copymode(src, dest)
                continue
            if dest.is_dir() and not dest.is_symlink():
                shutil.rmtree(dest)
            elif dest.is_symlink() or dest.exists():
                dest.unlink()
            if src.is_symlink():
                os.symlink(os.readlink(src), dest)
            else:
                shutil.copy2(src, dest)

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def _touch(self, key: str) -> None:
        with self._db_lock, get_session(self._session_factory) as session:
            entry = session.execute(
                select(CacheEntry).where(CacheEntry.key == key)
            ).scalar_one_or_none()
            if entry is not None:
                entry.touch()

    def _record(self, key: str, digest: str, size: int) -> None:
        with self._db_lock, get_session(self._session_factory) as session:
            entry = session.execute(
                select(CacheEntry).where(CacheEntry.key == key)
            ).scalar_one_or_none()
            if entry is None:
                entry = CacheEntry(key=key, dir_name=key_dir_name(key))
                session.add(entry)
            entry.content_digest = digest
            entry.size_bytes = size
            entry.touch()

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the manifest entry of a key, or None if never committed."""
        with self._db_lock, get_session(self._session_factory) as session:
            return session.execute(
                select(CacheEntry).where(CacheEntry.key == key)
            ).scalar_one_or_none()

    def list_entries(self) -> list[CacheEntry]:
        """List manifest entries, least recently accessed first."""
        with self._db_lock, get_session(self._session_factory) as session:
            stmt = select(CacheEntry).order_by(
                CacheEntry.last_accessed_at.asc(), CacheEntry.id.asc()
            )
            return list(session.execute(stmt).scalars().all())

    def total_size(self) -> int:
        """Return the total size of all committed entries."""
        return sum(e.size_bytes for e in self.list_entries())

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def prune(
        self,
        budget_bytes: int | None = None,
        dry_run: bool = False,
    ) -> list[str]:
        """Evict least recently accessed keys until within the size budget.

        Keys currently held by any acquirer are never evicted. Call this
        between builds, not while stages are running. A budget of 0 evicts
        every key that is not held.

        Args:
            budget_bytes: Size budget (defaults to the store's budget).
            dry_run: Only report what would be evicted.

        Returns:
            Evicted (or would-be evicted) keys, in eviction order.
        """
        budget = self.budget_bytes if budget_bytes is None else budget_bytes
        if budget is None:
            return []

        entries = self.list_entries()
        total = sum(e.size_bytes for e in entries)
        evicted: list[str] = []

        for entry in entries:
            # A zero budget evicts everything, including empty entries
            if budget > 0 and total <= budget:
                break

            lock = FileLock(self._lock_path(entry.key))
            if not lock.try_acquire():
                logger.info("Skipping eviction of held cache '%s'", entry.key)
                continue

            try:
                if dry_run:
                    logger.info("[DRY RUN] Would evict cache '%s'", entry.key)
                else:
                    shutil.rmtree(self.content_dir(entry.key), ignore_errors=True)
                    with self._db_lock, get_session(self._session_factory) as session:
                        row = session.get(CacheEntry, entry.id)
                        if row is not None:
                            session.delete(row)
                    logger.info(
                        "Evicted cache '%s' (%d bytes)", entry.key, entry.size_bytes
                    )
            finally:
                lock.release()

            total -= entry.size_bytes
            evicted.append(entry.key)

        return evicted

    def clear(self) -> list[str]:
        """Evict every key that is not currently held."""
        return self.prune(budget_bytes=0)

    def info(self) -> dict[str, object]:
        """Return summary information about the store."""
        entries = self.list_entries()
        total = sum(e.size_bytes for e in entries)
        return {
            "cache_dir": str(self.root),
            "entries": len(entries),
            "total_size_bytes": total,
            "total_size_human": format_size(total),
            "budget_bytes": self.budget_bytes,
        }


def format_size(size_bytes: int | float) -> str:
    """Format bytes as human-readable size."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} PB"


__all__ = ["CacheHandle", "CacheStore", "format_size", "key_dir_name"]
