"""Shared type definitions for stagebuild.

This module contains the immutable stage/step specifications, enums and
result dataclasses shared across subpackages to avoid circular imports.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stagebuild.errors import BuildError
    from stagebuild.stages.snapshot import Snapshot

STAGE_REF_PREFIX = "stage:"
SCRATCH = "scratch"


class CacheSharing(str, Enum):
    """Sharing mode of a cache mount."""

    EXCLUSIVE = "exclusive"
    SHARED = "shared"


class BaseKind(str, Enum):
    """Kind of a stage's base reference."""

    SCRATCH = "scratch"
    IMAGE = "image"
    STAGE = "stage"


class StageStatus(str, Enum):
    """Status of a stage execution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


def normalize_fs_path(path: str) -> str:
    """Normalize a path inside a stage filesystem to an absolute POSIX path.

    Args:
        path: Path as written in the build description.

    Returns:
        Normalized absolute path (e.g. '/var/cache/apt').
    """
    normalized = posixpath.normpath("/" + path.strip())
    # normpath keeps a leading '//' as-is
    return "/" + normalized.lstrip("/")


@dataclass(frozen=True)
class BaseRef:
    """Reference to the filesystem a stage starts from."""

    kind: BaseKind
    ref: str = ""

    @property
    def stage(self) -> str | None:
        """Referenced stage name, if this is a stage reference."""
        return self.ref if self.kind is BaseKind.STAGE else None

    def __str__(self) -> str:
        if self.kind is BaseKind.STAGE:
            return f"{STAGE_REF_PREFIX}{self.ref}"
        if self.kind is BaseKind.SCRATCH:
            return SCRATCH
        return self.ref


@dataclass(frozen=True)
class CacheMountSpec:
    """A keyed cache directory mounted for one step.

    Attributes:
        target: Absolute mount path inside the stage filesystem.
        sharing: Exclusive (single writer) or shared (concurrent writers).
        cache_id: Explicit cache key; the target path is used when unset.
    """

    target: str
    sharing: CacheSharing = CacheSharing.SHARED
    cache_id: str | None = None

    @property
    def key(self) -> str:
        """Cache key derived from the explicit id or the mount target."""
        return self.cache_id or normalize_fs_path(self.target)


@dataclass(frozen=True)
class CopyInstruction:
    """Copy of a path from another stage (or the build context).

    Attributes:
        source: Source path, may contain glob characters.
        dest: Destination path inside the stage filesystem.
        from_stage: Source stage name or alias; None means the build context.
    """

    source: str
    dest: str
    from_stage: str | None = None


@dataclass(frozen=True)
class StepSpec:
    """One opaque command execution within a stage."""

    command: str | None = None
    cache_mounts: tuple[CacheMountSpec, ...] = ()
    copies: tuple[CopyInstruction, ...] = ()
    name: str | None = None

    def describe(self, index: int) -> str:
        """Return a short human-readable label for logs."""
        if self.name:
            return self.name
        if self.command and self.command.strip():
            first_line = self.command.strip().splitlines()[0]
            return first_line if len(first_line) <= 60 else first_line[:57] + "..."
        if self.command is not None:
            return f"step {index}"
        return f"step {index} (copy)"


@dataclass(frozen=True)
class StageSpec:
    """One node of the build DAG.

    Attributes:
        name: Unique stage name.
        base: Base filesystem reference.
        steps: Ordered steps.
        env: Declared environment variables.
        alias: Optional alternative name usable in references.
        workdir: Directory inside the stage filesystem where steps run; None
            inherits the base stage's workdir ('/' at the root of the chain).
    """

    name: str
    base: BaseRef = BaseRef(BaseKind.SCRATCH)
    steps: tuple[StepSpec, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    alias: str | None = None
    workdir: str | None = None

    @property
    def env_dict(self) -> dict[str, str]:
        """Declared environment as a dict."""
        return dict(self.env)

    @property
    def handles(self) -> tuple[str, ...]:
        """All names this stage can be referenced by."""
        return (self.name,) if not self.alias else (self.name, self.alias)


@dataclass(frozen=True)
class CacheWindow:
    """Time window during which a step held a cache key."""

    key: str
    sharing: CacheSharing
    acquired_at: float
    released_at: float


@dataclass
class StepRecord:
    """Outcome of a single step execution."""

    index: int
    label: str
    exit_code: int | None = None
    duration_s: float = 0.0
    log_path: Path | None = None
    cache_windows: list[CacheWindow] = field(default_factory=list)


@dataclass
class StageResult:
    """Result of executing one stage during a build invocation.

    Attributes:
        name: Stage name.
        status: Final status.
        snapshot: Immutable filesystem snapshot (only when succeeded).
        steps: Per-step execution records.
        error: The error that failed the stage, if any.
        failed_step: Index of the failing step, if any.
    """

    name: str
    status: StageStatus
    snapshot: Snapshot | None = None
    steps: list[StepRecord] = field(default_factory=list)
    error: BuildError | None = None
    failed_step: int | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the stage completed successfully."""
        return self.status is StageStatus.SUCCEEDED


__all__ = [
    "SCRATCH",
    "STAGE_REF_PREFIX",
    "BaseKind",
    "BaseRef",
    "CacheMountSpec",
    "CacheSharing",
    "CacheWindow",
    "CopyInstruction",
    "StageResult",
    "StageSpec",
    "StageStatus",
    "StepRecord",
    "StepSpec",
    "normalize_fs_path",
]
