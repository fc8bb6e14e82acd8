"""Build orchestration.

This module provides the high-level build API:
- build(): resolve the stage graph and execute it batch by batch
- Concurrent execution of the stages of a batch on a bounded worker pool
- Failure aggregation per batch and cooperative cancellation
- Cache budget enforcement once the build has settled
- export_snapshot(): write the final filesystem to a directory

Each build owns a private work directory::

    <work_dir>/stages/<stage>/rootfs    working filesystem of a running stage
    <work_dir>/snapshots/<digest>/      frozen stage outputs
    <work_dir>/logs/<stage>-<NN>.log    per-step command output
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from stagebuild.cache.store import CacheStore
from stagebuild.config import get_settings
from stagebuild.errors import (
    BuildCancelledError,
    BuildError,
    StageFailedError,
    StageFailure,
)
from stagebuild.stages.executor import ExecutionOptions, prepare_rootfs, run_stage
from stagebuild.stages.resolver import BuildPlan, resolve_plan
from stagebuild.stages.snapshot import Snapshot, freeze_snapshot
from stagebuild.types import StageResult, StageSpec, StageStatus

if TYPE_CHECKING:
    from stagebuild.config import Settings

logger = logging.getLogger(__name__)

StageCallback = Callable[[StageResult], None]


class CancelToken:
    """Cooperative cancellation flag shared with a running build.

    Cancelling prevents stages that have not started from starting; stages
    already running are allowed to finish.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()


@dataclass
class BuildOutcome:
    """Everything a finished build produced.

    Attributes:
        plan: The executed plan.
        results: StageResults by stage name, in completion order.
        work_dir: Build work directory.
        pruned_keys: Cache keys evicted after the build.
    """

    plan: BuildPlan
    results: dict[str, StageResult] = field(default_factory=dict)
    work_dir: Path | None = None
    pruned_keys: list[str] = field(default_factory=list)

    @property
    def final(self) -> StageResult | None:
        """Result of the target stage, if it ran."""
        if self.plan.target is None:
            return None
        return self.results.get(self.plan.target)


class _StageRunner:
    """Runs single stages of one build invocation."""

    def __init__(
        self,
        plan: BuildPlan,
        *,
        cache: CacheStore | None,
        work_dir: Path,
        context_dir: Path | None,
        options: ExecutionOptions,
        cancel_token: CancelToken,
    ) -> None:
        self.plan = plan
        self.cache = cache
        self.work_dir = work_dir
        self.context_dir = context_dir
        self.options = options
        self.cancel_token = cancel_token
        self.snapshots_dir = work_dir / "snapshots"
        self.logs_dir = work_dir / "logs"
        # Snapshots of completed stages by name and alias
        self.snapshots: dict[str, Snapshot] = {}
        self._lock = threading.Lock()

    def publish(self, stage: StageSpec, snapshot: Snapshot) -> None:
        with self._lock:
            for handle in stage.handles:
                self.snapshots[handle] = snapshot

    def run(self, name: str) -> StageResult:
        """Prepare, execute and freeze one stage."""
        stage = self.plan.stages[name]
        if self.cancel_token.cancelled:
            return StageResult(name=name, status=StageStatus.CANCELLED)

        stage_dir = self.work_dir / "stages" / name
        rootfs = stage_dir / "rootfs"
        with self._lock:
            upstream = dict(self.snapshots)

        base_snapshot = upstream.get(stage.base.stage) if stage.base.stage else None
        prepare_rootfs(stage, rootfs, base_snapshot, self.options.images_dir)

        result = run_stage(
            stage,
            rootfs,
            cache=self.cache,
            log_dir=self.logs_dir,
            snapshots=upstream,
            context_dir=self.context_dir,
            options=self.options,
        )
        if result.succeeded:
            result.snapshot = freeze_snapshot(rootfs, self.snapshots_dir)
            self.publish(stage, result.snapshot)
            logger.info("Stage '%s' snapshot %s", name, result.snapshot.digest[:16])
        shutil.rmtree(stage_dir, ignore_errors=True)
        return result


def _run_batch(
    batch: Sequence[str],
    runner: _StageRunner,
    pool: ThreadPoolExecutor,
    outcome: BuildOutcome,
    on_stage_done: StageCallback | None = None,
) -> None:
    """Run the stages of one batch concurrently and wait for all of them.

    Raises:
        StageFailedError: If any stage of the batch failed.
        BuildCancelledError: If the build was cancelled.
    """
    futures: dict[Future[StageResult], str] = {
        pool.submit(runner.run, name): name for name in batch
    }
    failures: list[StageFailure] = []
    cancelled = False

    for future in as_completed(futures):
        name = futures[future]
        if future.cancelled():
            cancelled = True
            continue
        try:
            result = future.result()
        except BuildError as e:
            result = StageResult(name=name, status=StageStatus.FAILED, error=e)
        except OSError as e:
            logger.error("Stage '%s' could not be prepared: %s", name, e)
            result = StageResult(
                name=name,
                status=StageStatus.FAILED,
                error=BuildError(f"Stage '{name}' could not be prepared: {e}"),
            )
        outcome.results[name] = result
        if on_stage_done is not None:
            on_stage_done(result)

        if result.status is StageStatus.CANCELLED:
            cancelled = True
        elif result.status is StageStatus.FAILED and result.error is not None:
            failures.append(
                StageFailure(
                    stage=name, cause=result.error, step_index=result.failed_step
                )
            )

        if runner.cancel_token.cancelled:
            for pending in futures:
                pending.cancel()

    if failures:
        order = {name: i for i, name in enumerate(batch)}
        failures.sort(key=lambda f: order[f.stage])
        raise StageFailedError(failures)
    if cancelled or runner.cancel_token.cancelled:
        completed = [n for n, r in outcome.results.items() if r.succeeded]
        raise BuildCancelledError(completed)


def execute_plan(
    plan: BuildPlan,
    *,
    settings: Settings | None = None,
    cache: CacheStore | None = None,
    work_dir: Path | None = None,
    cancel_token: CancelToken | None = None,
    context_dir: Path | None = None,
    on_stage_done: StageCallback | None = None,
) -> BuildOutcome:
    """Execute a resolved plan.

    Batches run in order; the stages of a batch run concurrently, bounded
    by settings.max_workers. After the first failing batch no further
    batches start.

    Args:
        plan: Resolved BuildPlan.
        settings: Settings (defaults to get_settings()).
        cache: Cache store (defaults to one rooted at settings.cache_dir).
        work_dir: Build work directory (created if missing).
        cancel_token: Token used to cancel the build.
        context_dir: Build context directory (defaults to cwd).
        on_stage_done: Called with each StageResult as stages settle.

    Returns:
        BuildOutcome of the successful build.

    Raises:
        StageFailedError: If stages of a batch failed.
        BuildCancelledError: If the build was cancelled.
    """
    if settings is None:
        settings = get_settings()
    owns_cache = cache is None
    if cache is None:
        cache = CacheStore.from_settings(settings)
    if work_dir is None:
        base = settings.work_dir
        if base is not None:
            base.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="stagebuild_", dir=base))
    work_dir.mkdir(parents=True, exist_ok=True)

    cancel_token = cancel_token or CancelToken()
    outcome = BuildOutcome(plan=plan, work_dir=work_dir)
    runner = _StageRunner(
        plan,
        cache=cache,
        work_dir=work_dir,
        context_dir=(context_dir or Path.cwd()).resolve(),
        options=ExecutionOptions.from_settings(settings),
        cancel_token=cancel_token,
    )

    logger.info(
        "Building %d stage(s) in %d batch(es) with %d worker(s)",
        len(plan),
        len(plan.batches),
        settings.max_workers,
    )
    try:
        with ThreadPoolExecutor(
            max_workers=settings.max_workers, thread_name_prefix="stage"
        ) as pool:
            for index, batch in enumerate(plan.batches):
                if cancel_token.cancelled:
                    completed = [n for n, r in outcome.results.items() if r.succeeded]
                    raise BuildCancelledError(completed)
                logger.debug("Batch %d: %s", index, ", ".join(batch))
                _run_batch(batch, runner, pool, outcome, on_stage_done)
    finally:
        # Eviction only runs once no stage holds a cache key
        try:
            outcome.pruned_keys = cache.prune()
        except OSError as e:
            logger.warning("Cache prune failed: %s", e)
        if owns_cache:
            cache.close()

    return outcome


def build(
    stages: Sequence[StageSpec],
    final_stage_name: str,
    *,
    settings: Settings | None = None,
    cache: CacheStore | None = None,
    work_dir: Path | None = None,
    cancel_token: CancelToken | None = None,
    context_dir: Path | None = None,
    on_stage_done: StageCallback | None = None,
) -> StageResult:
    """Build the final stage and everything it depends on.

    Args:
        stages: Stage specs in declaration order.
        final_stage_name: Name or alias of the stage to produce.
        settings: Settings (defaults to get_settings()).
        cache: Cache store (defaults to one rooted at settings.cache_dir).
        work_dir: Build work directory; snapshots live here.
        cancel_token: Token used to cancel the build.
        context_dir: Build context directory (defaults to cwd).
        on_stage_done: Called with each StageResult as stages settle.

    Returns:
        StageResult of the final stage, carrying its snapshot.

    Raises:
        DuplicateStageNameError, UnknownStageError, CycleError: If the
            stage graph is invalid (nothing is executed).
        StageFailedError: If any stage failed.
        BuildCancelledError: If the build was cancelled.
    """
    plan = resolve_plan(stages, target=final_stage_name)
    outcome = execute_plan(
        plan,
        settings=settings,
        cache=cache,
        work_dir=work_dir,
        cancel_token=cancel_token,
        context_dir=context_dir,
        on_stage_done=on_stage_done,
    )
    final = outcome.final
    if final is None or not final.succeeded:
        raise BuildError(f"Final stage '{final_stage_name}' produced no result")
    return final


def export_snapshot(snapshot: Snapshot, dest: Path, overwrite: bool = False) -> Path:
    """Write a snapshot's filesystem to a directory.

    Args:
        snapshot: Snapshot to export.
        dest: Destination directory.
        overwrite: Replace dest if it already exists.

    Returns:
        The destination directory.

    Raises:
        FileExistsError: If dest exists and overwrite is not set.
    """
    if dest.exists():
        if not overwrite:
            raise FileExistsError(f"Output directory already exists: {dest}")
        shutil.rmtree(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(snapshot.root, dest, symlinks=True)
    logger.info("Exported snapshot %s to %s", snapshot.digest[:16], dest)
    return dest


__all__ = [
    "BuildOutcome",
    "CancelToken",
    "build",
    "execute_plan",
    "export_snapshot",
]
