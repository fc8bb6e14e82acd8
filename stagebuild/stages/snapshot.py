"""Immutable, content-addressed filesystem snapshots.

This module handles:
- Deterministic hashing of a directory tree (paths, types, modes, content)
- Freezing a finished stage's working tree into a snapshot directory
- Mapping stage filesystem paths onto host paths under a root
- Copying trees while preserving symlinks and mode bits
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from stagebuild.types import normalize_fs_path

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_MAX_SYMLINK_HOPS = 40


def iter_tree(root: Path) -> Iterator[Path]:
    """Yield every entry under root in sorted relative-path order.

    Symlinks are yielded but never followed.

    Args:
        root: Directory to walk.

    Yields:
        Paths of directories, files and symlinks below root.
    """
    entries: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        entries.extend(base / name for name in dirnames)
        entries.extend(base / name for name in filenames)
    yield from sorted(entries, key=lambda p: p.relative_to(root).as_posix())


def _hash_file(path: Path, hasher: hashlib._Hash) -> None:
    with path.open("rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            hasher.update(chunk)


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash is computed over:
    - Sorted entry paths (relative to directory)
    - Entry type (directory, file, symlink)
    - Permission bits (not for symlinks)
    - File contents and symlink targets

    Timestamps and ownership are ignored, so rebuilding identical content
    yields an identical digest.

    Args:
        directory: Directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not directory.exists():
        return hasher.hexdigest()

    for path in iter_tree(directory):
        st = path.lstat()
        rel_path = path.relative_to(directory).as_posix()

        if stat.S_ISLNK(st.st_mode):
            kind, mode = b"l", ""
        elif stat.S_ISDIR(st.st_mode):
            kind, mode = b"d", f"{stat.S_IMODE(st.st_mode):o}"
        elif stat.S_ISREG(st.st_mode):
            kind, mode = b"f", f"{stat.S_IMODE(st.st_mode):o}"
        else:
            # Sockets, fifos and devices carry no content
            continue

        # Hash: path\0kind\0mode\0content\0
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0" + kind + b"\0")
        hasher.update(mode.encode())
        hasher.update(b"\0")
        if kind == b"l":
            hasher.update(os.readlink(path).encode("utf-8"))
        elif kind == b"f":
            _hash_file(path, hasher)
        hasher.update(b"\0")

    return hasher.hexdigest()


def tree_size(directory: Path) -> int:
    """Return the total size in bytes of regular files under a directory."""
    if not directory.exists():
        return 0
    total = 0
    for path in iter_tree(directory):
        st = path.lstat()
        if stat.S_ISREG(st.st_mode):
            total += st.st_size
    return total


def resolve_in_root(root: Path, fs_path: str, follow_final: bool = False) -> Path:
    """Map a path inside a stage filesystem onto the host directory root.

    Symlinks met along the way are interpreted relative to root (absolute
    targets point at root, not at the host), so the result never escapes
    root. The final component is only followed when follow_final is set.

    Args:
        root: Host directory holding the stage filesystem.
        fs_path: Path inside the stage filesystem.
        follow_final: Also resolve a symlink in the final component.

    Returns:
        Host path below root.

    Raises:
        OSError: If symlinks loop.
    """
    parts = [p for p in normalize_fs_path(fs_path).split("/") if p]
    resolved: list[str] = []
    hops = 0

    while parts:
        part = parts.pop(0)
        if part == ".":
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue

        candidate = root.joinpath(*resolved, part)
        is_final = not parts
        if candidate.is_symlink() and (follow_final or not is_final):
            hops += 1
            if hops > _MAX_SYMLINK_HOPS:
                raise OSError(f"Too many levels of symbolic links: {fs_path}")
            target = os.readlink(candidate)
            if target.startswith("/"):
                resolved = []
            parts = [p for p in target.split("/") if p] + parts
            continue
        resolved.append(part)

    return root.joinpath(*resolved)


def copy_entry(source: Path, dest: Path) -> None:
    """Copy a file, symlink or directory tree preserving links and modes.

    Args:
        source: Host path of the entry to copy.
        dest: Host destination path (must not exist).
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    if source.is_symlink():
        os.symlink(os.readlink(source), dest)
    elif source.is_dir():
        shutil.copytree(source, dest, symlinks=True)
    else:
        shutil.copy2(source, dest)


def remove_entry(path: Path) -> None:
    """Remove a file, symlink or directory tree if present."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


@dataclass(frozen=True)
class Snapshot:
    """An immutable filesystem tree produced by a completed stage.

    Attributes:
        root: Host directory holding the tree.
        digest: Content digest of the tree.
    """

    root: Path
    digest: str

    def path(self, fs_path: str) -> Path:
        """Return the host path of a path inside this snapshot."""
        return resolve_in_root(self.root, fs_path)

    def exists(self, fs_path: str) -> bool:
        """Whether a path exists inside this snapshot (symlinks count)."""
        host = self.path(fs_path)
        return host.is_symlink() or host.exists()

    def read_text(self, fs_path: str, encoding: str = "utf-8") -> str:
        """Read a text file from the snapshot."""
        return resolve_in_root(self.root, fs_path, follow_final=True).read_text(
            encoding=encoding
        )


def freeze_snapshot(working_root: Path, snapshots_dir: Path) -> Snapshot:
    """Turn a finished working tree into an immutable snapshot.

    The tree is moved to ``snapshots_dir/<digest>``. If a snapshot with the
    same digest already exists the working tree is discarded and the
    existing snapshot is reused.

    Args:
        working_root: Stage working filesystem (consumed).
        snapshots_dir: Directory holding snapshots for this build.

    Returns:
        Snapshot of the tree.
    """
    digest = compute_tree_hash(working_root)
    snapshots_dir.mkdir(parents=True, exist_ok=True)
    dest = snapshots_dir / digest

    if dest.exists():
        shutil.rmtree(working_root, ignore_errors=True)
    else:
        try:
            os.replace(working_root, dest)
        except OSError:
            # Another stage froze identical content concurrently
            if not dest.exists():
                raise
            shutil.rmtree(working_root, ignore_errors=True)

    logger.debug("Froze snapshot %s", digest[:16])
    return Snapshot(root=dest, digest=digest)


def materialize(snapshot: Snapshot, dest: Path) -> Path:
    """Copy a snapshot into a new writable directory.

    Args:
        snapshot: Snapshot to copy.
        dest: Destination directory (must not exist).

    Returns:
        The destination directory.
    """
    shutil.copytree(snapshot.root, dest, symlinks=True)
    return dest


__all__ = [
    "Snapshot",
    "compute_tree_hash",
    "copy_entry",
    "freeze_snapshot",
    "iter_tree",
    "materialize",
    "remove_entry",
    "resolve_in_root",
    "tree_size",
]
