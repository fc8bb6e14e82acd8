"""Build reports.

Pydantic models summarizing a build for human and JSON output, and the
failure report that names every failed stage, its failing step and the
tail of the captured command output.
"""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, Field

from stagebuild.errors import (
    BuildError,
    StageFailedError,
    StageFailure,
    StepExecutionError,
    exit_code_for,
)
from stagebuild.types import StageResult, StageStatus


class StepReport(BaseModel):
    """Summary of one executed step."""

    index: int
    label: str
    exit_code: int | None = None
    duration_s: float = 0.0
    log_path: str | None = None
    cache_keys: list[str] = Field(default_factory=list)


class StageReport(BaseModel):
    """Summary of one stage."""

    name: str
    status: str
    digest: str | None = None
    steps: list[StepReport] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    failed_step: int | None = None
    output_tail: str | None = None


class BuildReport(BaseModel):
    """Summary of a whole build invocation."""

    success: bool
    target: str | None = None
    exit_code: int = 0
    stages: list[StageReport] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    output_dir: str | None = None
    work_dir: str | None = None
    pruned_cache_keys: list[str] = Field(default_factory=list)

    @property
    def failed_stages(self) -> list[StageReport]:
        """Stages that failed."""
        return [s for s in self.stages if s.status == "failed"]


def stage_report(result: StageResult) -> StageReport:
    """Build a StageReport from a StageResult."""
    report = StageReport(
        name=result.name,
        status=result.status.value,
        digest=result.snapshot.digest if result.snapshot else None,
        steps=[
            StepReport(
                index=s.index,
                label=s.label,
                exit_code=s.exit_code,
                duration_s=round(s.duration_s, 3),
                log_path=str(s.log_path) if s.log_path else None,
                cache_keys=[w.key for w in s.cache_windows],
            )
            for s in result.steps
        ],
    )
    if result.error is not None:
        report.error = str(result.error)
        report.error_code = result.error.code
        report.failed_step = result.failed_step
        if isinstance(result.error, StepExecutionError):
            if report.failed_step is None:
                report.failed_step = result.error.step_index
            report.output_tail = result.error.output or None
    return report


def build_report(
    results: Iterable[StageResult],
    target: str | None = None,
    error: BuildError | None = None,
    output_dir: str | None = None,
    work_dir: str | None = None,
    pruned_cache_keys: Iterable[str] = (),
) -> BuildReport:
    """Assemble a BuildReport.

    Args:
        results: StageResults of every stage that settled.
        target: Final stage name.
        error: Error that ended the build, if any.
        output_dir: Where the final filesystem was exported.
        work_dir: Build work directory (when kept).
        pruned_cache_keys: Cache keys evicted after the build.

    Returns:
        BuildReport instance.
    """
    stages = [stage_report(r) for r in results]
    if isinstance(error, StageFailedError):
        # Failures raised before a StageResult existed still get an entry
        known = {s.name for s in stages}
        for failure in error.failures:
            if failure.stage not in known:
                stages.append(
                    stage_report(_failed_result(failure))
                )

    return BuildReport(
        success=error is None,
        target=target,
        exit_code=exit_code_for(error) if error is not None else 0,
        stages=stages,
        error=str(error) if error is not None else None,
        error_code=error.code if error is not None else None,
        output_dir=output_dir,
        work_dir=work_dir,
        pruned_cache_keys=list(pruned_cache_keys),
    )


def _failed_result(failure: StageFailure) -> StageResult:
    return StageResult(
        name=failure.stage,
        status=StageStatus.FAILED,
        error=failure.cause,
        failed_step=failure.step_index,
    )


def format_failure_report(error: BuildError, tail_lines: int = 20) -> str:
    """Render a plain-text failure report.

    Every failed stage is listed with its failing step index and the last
    lines of the captured command output.

    Args:
        error: Error that ended the build.
        tail_lines: Output lines shown per failed step.

    Returns:
        Multi-line report text.
    """
    if not isinstance(error, StageFailedError):
        return f"Build failed: {error}"

    lines = [f"Build failed: {len(error.failures)} stage(s) failed"]
    for failure in error.failures:
        cause = failure.cause
        if isinstance(cause, StepExecutionError):
            lines.append(
                f"- stage '{failure.stage}', step {cause.step_index}, "
                f"exit code {cause.exit_code}"
            )
            tail = cause.output.rstrip().splitlines()[-tail_lines:]
            lines.extend(f"    | {line}" for line in tail)
        elif failure.step_index is not None:
            lines.append(
                f"- stage '{failure.stage}', step {failure.step_index}: {cause}"
            )
        else:
            lines.append(f"- stage '{failure.stage}': {cause}")
    return "\n".join(lines)


__all__ = [
    "BuildReport",
    "StageReport",
    "StepReport",
    "build_report",
    "format_failure_report",
    "stage_report",
]
