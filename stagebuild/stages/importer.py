"""Artifact import between stage filesystems.

This module handles copy instructions:
- Resolving source paths (with glob support) inside a source snapshot or
  the build context directory
- Staging the copied entries inside the target filesystem first
- Committing them into place with a journal so a failure midway restores
  the destination's prior state

Symlinks are copied as symlinks and mode bits are preserved. Directories
are merged into existing destination directories; any other existing entry
at a destination is overwritten.
"""

from __future__ import annotations

import glob
import logging
import os
import posixpath
import shutil
import stat
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from stagebuild.errors import PathNotFoundError
from stagebuild.stages.snapshot import (
    Snapshot,
    copy_entry,
    remove_entry,
    resolve_in_root,
)
from stagebuild.types import normalize_fs_path

logger = logging.getLogger(__name__)

IMPORT_TMP_PREFIX = ".stagebuild-import-"


@dataclass
class _Journal:
    """Undo log of a single import commit."""

    created: list[Path] = field(default_factory=list)
    replaced: list[tuple[Path, Path]] = field(default_factory=list)
    chmods: list[tuple[Path, int]] = field(default_factory=list)
    # Order of operations, so rollback can undo in reverse
    ops: list[tuple[str, int]] = field(default_factory=list)

    def record_created(self, path: Path) -> None:
        self.ops.append(("created", len(self.created)))
        self.created.append(path)

    def record_replaced(self, path: Path, backup: Path) -> None:
        self.ops.append(("replaced", len(self.replaced)))
        self.replaced.append((path, backup))

    def record_chmod(self, path: Path, mode: int) -> None:
        self.ops.append(("chmod", len(self.chmods)))
        self.chmods.append((path, mode))

    def rollback(self) -> None:
        for kind, idx in reversed(self.ops):
            try:
                if kind == "created":
                    remove_entry(self.created[idx])
                elif kind == "replaced":
                    path, backup = self.replaced[idx]
                    remove_entry(path)
                    os.replace(backup, path)
                else:
                    path, mode = self.chmods[idx]
                    path.chmod(mode)
            except OSError as e:
                logger.error("Rollback step failed (%s): %s", kind, e)


def _source_label(source: Snapshot | Path) -> str:
    if isinstance(source, Snapshot):
        return f"snapshot {source.digest[:12]}"
    return f"build context {source}"


def _source_root(source: Snapshot | Path) -> Path:
    return source.root if isinstance(source, Snapshot) else Path(source)


def expand_source(root: Path, source_path: str) -> list[Path]:
    """Expand a source path (possibly a glob) to existing host paths.

    Args:
        root: Source filesystem root on the host.
        source_path: Path inside the source filesystem.

    Returns:
        Matching host paths, sorted; empty if nothing matches.
    """
    normalized = normalize_fs_path(source_path)

    if glob.has_magic(normalized):
        parent_fs, pattern = posixpath.split(normalized)
        if glob.has_magic(parent_fs):
            # Patterns in intermediate components: match lexically below root
            rel_pattern = normalized.lstrip("/")
            return sorted(p for p in root.glob(rel_pattern))
        parent = resolve_in_root(root, parent_fs, follow_final=True)
        if not parent.is_dir():
            return []
        return sorted(parent.glob(pattern))

    host = resolve_in_root(root, normalized)
    if host.is_symlink() or host.exists():
        return [host]
    return []


def _plan_destinations(
    root: Path,
    matches: list[Path],
    dest_path: str,
) -> list[tuple[Path, str]]:
    """Pair each match with its destination path inside the target."""
    dest_norm = normalize_fs_path(dest_path)
    into_dir = dest_path.endswith("/") or len(matches) > 1

    plan: list[tuple[Path, str]] = []
    for match in matches:
        is_dir = match.is_dir() and not match.is_symlink()
        if match == root or (is_dir and len(matches) == 1) or not into_dir:
            plan.append((match, dest_norm))
        else:
            plan.append((match, posixpath.join(dest_norm, match.name)))
    return plan


def _ensure_parents(path: Path, stop: Path, journal: _Journal) -> None:
    """Create missing parent directories of path, journaling each one."""
    missing: list[Path] = []
    parent = path.parent
    while parent != stop and not (parent.exists() or parent.is_symlink()):
        missing.append(parent)
        parent = parent.parent
    for directory in reversed(missing):
        directory.mkdir()
        journal.record_created(directory)


def _commit_entry(
    staged: Path,
    dest: Path,
    backup_dir: Path,
    journal: _Journal,
) -> None:
    """Move a staged entry into place, merging directories."""
    staged_is_dir = staged.is_dir() and not staged.is_symlink()
    dest_is_dir = dest.is_dir() and not dest.is_symlink()

    if staged_is_dir and dest_is_dir:
        old_mode = stat.S_IMODE(dest.stat().st_mode)
        new_mode = stat.S_IMODE(staged.stat().st_mode)
        if old_mode != new_mode:
            dest.chmod(new_mode)
            journal.record_chmod(dest, old_mode)
        for child in sorted(staged.iterdir()):
            _commit_entry(child, dest / child.name, backup_dir, journal)
        return

    if dest.is_symlink() or dest.exists():
        backup = backup_dir / str(len(journal.replaced))
        os.replace(dest, backup)
        try:
            os.replace(staged, dest)
        except OSError:
            os.replace(backup, dest)
            raise
        journal.record_replaced(dest, backup)
    else:
        os.replace(staged, dest)
        journal.record_created(dest)


def import_from(
    source: Snapshot | Path,
    source_path: str,
    dest_path: str,
    target_root: Path,
) -> list[Path]:
    """Copy a path from a source filesystem into a target filesystem.

    Either every matched entry lands at its destination or, on failure,
    the target is restored to its prior state.

    Args:
        source: Completed stage snapshot, or the build context directory.
        source_path: Path (or glob) inside the source.
        dest_path: Destination inside the target; a trailing '/' means
            "into this directory".
        target_root: Host directory of the target stage filesystem.

    Returns:
        Host paths written in the target.

    Raises:
        PathNotFoundError: If source_path matches nothing.
        OSError: If copying fails (the target is rolled back first).
    """
    root = _source_root(source)
    matches = expand_source(root, source_path)
    if not matches:
        raise PathNotFoundError(source_path, _source_label(source))

    plan = _plan_destinations(root, matches, dest_path)
    tmp = Path(tempfile.mkdtemp(prefix=IMPORT_TMP_PREFIX, dir=target_root))
    staged_dir = tmp / "staged"
    backup_dir = tmp / "backup"
    staged_dir.mkdir()
    backup_dir.mkdir()
    journal = _Journal()
    written: list[Path] = []

    try:
        # Copy everything first; the target is untouched until this succeeds
        staged_entries: list[tuple[Path, Path]] = []
        for i, (match, dest_fs) in enumerate(plan):
            staged = staged_dir / str(i)
            copy_entry(match, staged)
            dest_host = resolve_in_root(target_root, dest_fs)
            staged_is_dir = staged.is_dir() and not staged.is_symlink()
            if dest_host == target_root and not staged_is_dir:
                raise IsADirectoryError(
                    f"Cannot replace the filesystem root with {source_path}"
                )
            staged_entries.append((staged, dest_host))

        for staged, dest_host in staged_entries:
            if dest_host != target_root:
                _ensure_parents(dest_host, target_root, journal)
            _commit_entry(staged, dest_host, backup_dir, journal)
            written.append(dest_host)
    except BaseException:
        journal.rollback()
        raise
    finally:
        shutil.rmtree(tmp, ignore_errors=True)

    logger.debug(
        "Imported %s from %s -> %s (%d entries)",
        source_path,
        _source_label(source),
        dest_path,
        len(written),
    )
    return written


__all__ = ["IMPORT_TMP_PREFIX", "expand_source", "import_from"]
