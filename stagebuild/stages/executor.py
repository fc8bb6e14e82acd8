"""Step execution for a single stage.

This module handles:
- Preparing a stage's private working filesystem from its base
- Running each step's copy instructions through the importer
- Splicing cache mounts into the filesystem around the step command
- Executing the command with the stage filesystem as its root (see sandbox),
  output captured to a per-step log
- Enforcing step timeouts

Steps of one stage run strictly in order; the first failing step fails the
stage and the remaining steps are skipped.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import shutil
import subprocess
import tempfile
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from stagebuild.errors import BuildError, CacheWriteError, StepExecutionError
from stagebuild.stages.importer import import_from
from stagebuild.stages.sandbox import (
    compose_command,
    remove_mountpoints,
    resolve_isolation,
)
from stagebuild.stages.snapshot import (
    Snapshot,
    materialize,
    remove_entry,
    resolve_in_root,
)
from stagebuild.types import (
    BaseKind,
    StageResult,
    StageSpec,
    StageStatus,
    StepRecord,
    StepSpec,
)

if TYPE_CHECKING:
    from stagebuild.cache.store import CacheHandle, CacheStore
    from stagebuild.config import Settings

logger = logging.getLogger(__name__)

ROOTFS_ENV = "STAGEBUILD_ROOTFS"
STAGE_ENV = "STAGEBUILD_STAGE"
STEP_ENV = "STAGEBUILD_STEP"

_UNSAFE_IMAGE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass
class ExecutionOptions:
    """Knobs shared by every step of a build.

    Attributes:
        shell: Shell executable used to run commands.
        timeout: Per-step timeout in seconds (None = no timeout).
        output_tail_bytes: Captured output kept on StepExecutionError.
        images_dir: Directory of unpacked base image filesystems.
        isolation: Isolation mode of step commands (see sandbox).
        host_tools: Bind host tool directories missing from a stage.
    """

    shell: str = "/bin/sh"
    timeout: int | None = None
    output_tail_bytes: int = 4000
    images_dir: Path | None = None
    isolation: str = "auto"
    host_tools: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> ExecutionOptions:
        """Create options from application settings."""
        return cls(
            shell=settings.shell,
            timeout=settings.step_timeout,
            output_tail_bytes=settings.output_tail_bytes,
            images_dir=settings.images_dir,
            isolation=settings.isolation,
            host_tools=settings.host_tools,
        )


@dataclass
class _Splice:
    """A cache working directory spliced into the stage filesystem."""

    handle: CacheHandle
    target: Path
    stash: Path | None


def image_dir_name(ref: str) -> str:
    """Return the directory name of an image reference under images_dir."""
    return _UNSAFE_IMAGE_CHARS.sub("_", ref)


def prepare_rootfs(
    stage: StageSpec,
    rootfs: Path,
    base_snapshot: Snapshot | None = None,
    images_dir: Path | None = None,
) -> Path:
    """Create a stage's working filesystem from its base.

    Args:
        stage: Stage being prepared.
        rootfs: Host directory to create (must not exist).
        base_snapshot: Snapshot of the base stage, for stage bases.
        images_dir: Directory of unpacked base images, for image bases.

    Returns:
        The rootfs directory.
    """
    kind = stage.base.kind
    if kind is BaseKind.STAGE:
        if base_snapshot is None:
            raise ValueError(f"Stage '{stage.name}' needs the snapshot of {stage.base}")
        return materialize(base_snapshot, rootfs)

    if kind is BaseKind.IMAGE:
        image_root = images_dir / image_dir_name(stage.base.ref) if images_dir else None
        if image_root is not None and image_root.is_dir():
            logger.info("Stage '%s': base image %s", stage.name, image_root)
            shutil.copytree(image_root, rootfs, symlinks=True)
            return rootfs
        logger.warning(
            "Stage '%s': base image '%s' not found locally, starting from an "
            "empty filesystem",
            stage.name,
            stage.base.ref,
        )

    rootfs.mkdir(parents=True)
    return rootfs


def _resolve_dest(dest: str, workdir: str) -> str:
    """Make a copy destination absolute, relative to the stage workdir."""
    if dest.startswith("/"):
        return dest
    joined = posixpath.join(workdir, dest)
    return joined + "/" if dest.endswith("/") and not joined.endswith("/") else joined


def _read_tail(path: Path, limit: int) -> str:
    if limit <= 0 or not path.exists():
        return ""
    with path.open("rb") as f:
        f.seek(0, os.SEEK_END)
        size = f.tell()
        f.seek(max(0, size - limit))
        return f.read().decode("utf-8", errors="replace")


def _splice(handle: CacheHandle, rootfs: Path, target_fs: str, scratch: Path) -> _Splice:
    """Move a cache working directory into the filesystem at target_fs."""
    target = resolve_in_root(rootfs, target_fs)
    target.parent.mkdir(parents=True, exist_ok=True)
    stash: Path | None = None
    if target.is_symlink() or target.exists():
        stash = Path(tempfile.mkdtemp(prefix="stash_", dir=scratch)) / "content"
        os.replace(target, stash)
    shutil.move(str(handle.workdir), str(target))
    return _Splice(handle=handle, target=target, stash=stash)


def _unsplice(splice: _Splice) -> None:
    """Move a spliced cache directory back and restore the stashed content."""
    target = splice.target
    workdir = splice.handle.workdir
    if target.is_dir() and not target.is_symlink():
        shutil.move(str(target), str(workdir))
    else:
        # The command removed or replaced the mount point
        remove_entry(target)
        workdir.mkdir(parents=True, exist_ok=True)

    if splice.stash is not None:
        os.replace(splice.stash, target)
        shutil.rmtree(splice.stash.parent, ignore_errors=True)
    else:
        target.mkdir(exist_ok=True)


def _run_copies(
    stage: StageSpec,
    step: StepSpec,
    step_index: int,
    rootfs: Path,
    snapshots: Mapping[str, Snapshot],
    context_dir: Path | None,
) -> None:
    for copy in step.copies:
        dest = _resolve_dest(copy.dest, stage.workdir or "/")
        if copy.from_stage is None:
            if context_dir is None:
                raise StepExecutionError(
                    stage.name,
                    step_index,
                    -1,
                    message=f"Stage '{stage.name}' step {step_index}: no build "
                    f"context for copy of '{copy.source}'",
                )
            source: Snapshot | Path = context_dir
        else:
            source = snapshots[copy.from_stage]

        try:
            import_from(source, copy.source, dest, rootfs)
        except BuildError:
            raise
        except OSError as e:
            raise StepExecutionError(
                stage.name,
                step_index,
                -1,
                message=f"Stage '{stage.name}' step {step_index}: copy of "
                f"'{copy.source}' failed: {e}",
            ) from e


def _run_command(
    stage: StageSpec,
    step: StepSpec,
    step_index: int,
    rootfs: Path,
    log_path: Path,
    options: ExecutionOptions,
) -> int:
    """Run the step command, returning its exit code (-1 on timeout).

    Raises:
        IsolationError: If the configured isolation is unavailable.
        StepExecutionError: If the command cannot be started.
    """
    workdir = stage.workdir or "/"
    resolve_in_root(rootfs, workdir, follow_final=True).mkdir(parents=True, exist_ok=True)

    isolation = resolve_isolation(options.isolation)
    command_line = compose_command(
        isolation,
        rootfs,
        workdir,
        options.shell,
        step.command or "",
        host_tools=options.host_tools,
    )

    env = dict(os.environ)
    env.update(stage.env_dict)
    env[ROOTFS_ENV] = "/" if command_line.isolated else str(rootfs)
    env[STAGE_ENV] = stage.name
    env[STEP_ENV] = str(step_index)

    try:
        started_at = datetime.now(timezone.utc)
        with log_path.open("w") as log_file:
            log_file.write(f"# Stage: {stage.name} step {step_index}\n")
            log_file.write(f"# Command: {step.command}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {workdir} (isolation: {isolation})\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            try:
                result = subprocess.run(
                    command_line.argv,
                    cwd=command_line.cwd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=options.timeout,
                    env=env,
                    check=False,
                )
                exit_code = result.returncode
            except subprocess.TimeoutExpired:
                exit_code = -1
                log_file.write(f"\n# TIMEOUT after {options.timeout} seconds\n")
                logger.error(
                    "Stage '%s' step %d timed out after %ss",
                    stage.name,
                    step_index,
                    options.timeout,
                )
            except OSError as e:
                raise StepExecutionError(
                    stage.name,
                    step_index,
                    -1,
                    message=f"Stage '{stage.name}' step {step_index}: failed to "
                    f"execute command: {e}",
                ) from e

            finished_at = datetime.now(timezone.utc)
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
    finally:
        remove_mountpoints(command_line)

    return exit_code


def run_step(
    stage: StageSpec,
    step_index: int,
    rootfs: Path,
    *,
    cache: CacheStore | None,
    log_dir: Path,
    snapshots: Mapping[str, Snapshot] | None = None,
    context_dir: Path | None = None,
    options: ExecutionOptions | None = None,
) -> StepRecord:
    """Execute one step of a stage in its working filesystem.

    Copies run first; then the cache mounts are acquired in key order,
    spliced in, the command runs, and the mounts are released (committing
    their content) whatever the command's outcome.

    Args:
        stage: Owning stage.
        step_index: Index of the step in stage.steps.
        rootfs: Stage working filesystem.
        cache: Cache store (required if the step declares cache mounts).
        log_dir: Directory for per-step logs.
        snapshots: Snapshots of referenced stages by name and alias.
        context_dir: Build context directory for context copies.
        options: Execution options.

    Returns:
        StepRecord of the successful step.

    Raises:
        StepExecutionError: If the command exits non-zero, times out or
            cannot be started, or a copy fails.
        PathNotFoundError: If a copy source matches nothing.
        CacheWriteError: If a cache mount cannot be persisted.
    """
    step = stage.steps[step_index]
    options = options or ExecutionOptions()
    snapshots = snapshots or {}
    record = StepRecord(index=step_index, label=step.describe(step_index))
    started = time.monotonic()

    _run_copies(stage, step, step_index, rootfs, snapshots, context_dir)

    if step.command is None:
        record.duration_s = time.monotonic() - started
        return record

    mounts = sorted(step.cache_mounts, key=lambda m: m.key)
    if mounts and cache is None:
        raise ValueError(f"Stage '{stage.name}' uses cache mounts but no cache store")

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{stage.name}-{step_index:02d}.log"
    record.log_path = log_path

    handles: list[CacheHandle] = []
    splices: list[_Splice] = []
    scratch = Path(tempfile.mkdtemp(prefix=".splice-", dir=rootfs.parent))
    cache_error: CacheWriteError | None = None

    try:
        # Acquire in global key order so concurrent stages cannot deadlock
        for mount in mounts:
            handles.append(cache.acquire(mount.key, mount.sharing))  # type: ignore[union-attr]
        for mount, handle in zip(mounts, handles):
            splices.append(_splice(handle, rootfs, mount.target, scratch))

        logger.info("[%s] step %d: %s", stage.name, step_index, record.label)
        exit_code = _run_command(stage, step, step_index, rootfs, log_path, options)
    finally:
        unrestored: set[str] = set()
        for splice in reversed(splices):
            try:
                _unsplice(splice)
            except OSError as e:
                logger.error("Cannot restore cache mount '%s': %s", splice.handle.key, e)
                unrestored.add(splice.handle.key)
                cache_error = cache_error or CacheWriteError(
                    splice.handle.key, f"cannot restore mount: {e}"
                )
        for handle in handles:
            try:
                cache.release(handle, commit=handle.key not in unrestored)  # type: ignore[union-attr]
            except CacheWriteError as e:
                cache_error = cache_error or e
            record.cache_windows.append(handle.window())
        shutil.rmtree(scratch, ignore_errors=True)

    record.exit_code = exit_code
    record.duration_s = time.monotonic() - started

    if exit_code != 0:
        output = _read_tail(log_path, options.output_tail_bytes)
        reason = "timed out" if exit_code == -1 else f"exited with code {exit_code}"
        logger.error("[%s] step %d %s. See log: %s", stage.name, step_index, reason, log_path)
        raise StepExecutionError(
            stage.name,
            step_index,
            exit_code,
            output=output,
            message=f"Stage '{stage.name}' step {step_index} {reason}",
        )

    if cache_error is not None:
        raise cache_error

    return record


def run_stage(
    stage: StageSpec,
    rootfs: Path,
    *,
    cache: CacheStore | None,
    log_dir: Path,
    snapshots: Mapping[str, Snapshot] | None = None,
    context_dir: Path | None = None,
    options: ExecutionOptions | None = None,
) -> StageResult:
    """Execute every step of a stage in order.

    Errors are captured in the returned StageResult rather than raised so
    the orchestrator can aggregate the failures of a batch.

    Args:
        stage: Stage to execute.
        rootfs: Prepared stage working filesystem.
        cache: Cache store for cache mounts.
        log_dir: Directory for per-step logs.
        snapshots: Snapshots of referenced stages by name and alias.
        context_dir: Build context directory.
        options: Execution options.

    Returns:
        StageResult with status SUCCEEDED or FAILED (no snapshot yet); a
        failed result names the index of the failing step.
    """
    result = StageResult(name=stage.name, status=StageStatus.RUNNING)
    logger.info("Stage '%s' started (%d step(s))", stage.name, len(stage.steps))

    for index in range(len(stage.steps)):
        try:
            record = run_step(
                stage,
                index,
                rootfs,
                cache=cache,
                log_dir=log_dir,
                snapshots=snapshots,
                context_dir=context_dir,
                options=options,
            )
        except BuildError as e:
            logger.error("Stage '%s' failed: %s", stage.name, e)
            result.status = StageStatus.FAILED
            result.error = e
            result.failed_step = index
            return result
        result.steps.append(record)

    result.status = StageStatus.SUCCEEDED
    logger.info("Stage '%s' succeeded", stage.name)
    return result


__all__ = [
    "ExecutionOptions",
    "image_dir_name",
    "prepare_rootfs",
    "run_stage",
    "run_step",
]
