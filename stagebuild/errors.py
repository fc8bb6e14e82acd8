"""Error taxonomy for stagebuild.

Every error carries a stable string ``code`` (for JSON output and logs) and
a ``cli_exit_code`` used by the CLI, so scripts can tell failure kinds apart.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


class BuildError(Exception):
    """Base error for all build failures."""

    cli_exit_code = 1

    def __init__(self, message: str, code: str = "build_error") -> None:
        super().__init__(message)
        self.code = code


class ParseError(BuildError):
    """Raised when a build description is malformed."""

    cli_exit_code = 10

    def __init__(self, message: str, source: str | None = None) -> None:
        prefix = f"{source}: " if source else ""
        super().__init__(f"{prefix}{message}", code="parse_error")
        self.source = source


class CycleError(BuildError):
    """Raised when stage references form a cycle."""

    cli_exit_code = 11

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        if len(self.cycle) == 1:
            detail = f"stage '{self.cycle[0]}' references itself"
        else:
            detail = " -> ".join([*self.cycle, self.cycle[0]])
        super().__init__(f"Stage dependency cycle: {detail}", code="cycle")


class UnknownStageError(BuildError):
    """Raised when a stage references a stage that is not declared."""

    cli_exit_code = 12

    def __init__(self, reference: str, referenced_by: str | None = None) -> None:
        self.reference = reference
        self.referenced_by = referenced_by
        where = f" (referenced by stage '{referenced_by}')" if referenced_by else ""
        super().__init__(f"Unknown stage '{reference}'{where}", code="unknown_stage")


class DuplicateStageNameError(BuildError):
    """Raised when two stages share a name or alias."""

    cli_exit_code = 13

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Duplicate stage name: '{name}'", code="duplicate_stage")


class CacheWriteError(BuildError):
    """Raised when cache content cannot be persisted."""

    cli_exit_code = 20

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(
            f"Failed to persist cache '{key}': {reason}", code="cache_write"
        )


class StepExecutionError(BuildError):
    """Raised when a step command exits non-zero (or cannot run)."""

    cli_exit_code = 21

    def __init__(
        self,
        stage: str,
        step_index: int,
        exit_code: int,
        output: str = "",
        message: str | None = None,
    ) -> None:
        self.stage = stage
        self.step_index = step_index
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            message
            or f"Stage '{stage}' step {step_index} failed with exit code {exit_code}",
            code="step_failed",
        )


class PathNotFoundError(BuildError):
    """Raised when a copy source path does not exist in its source."""

    cli_exit_code = 22

    def __init__(self, path: str, source: str) -> None:
        self.path = path
        self.source = source
        super().__init__(f"Path '{path}' not found in {source}", code="path_not_found")


class IsolationError(BuildError):
    """Raised when step commands cannot be isolated as requested."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="isolation_unavailable")


@dataclass
class StageFailure:
    """A failed stage, the error that caused it and the failing step."""

    stage: str
    cause: BuildError
    step_index: int | None = None


class StageFailedError(BuildError):
    """Raised when one or more stages of a batch failed."""

    cli_exit_code = 30

    def __init__(self, failures: Sequence[StageFailure]) -> None:
        self.failures = list(failures)
        names = ", ".join(f.stage for f in self.failures)
        super().__init__(f"Build failed in stage(s): {names}", code="stage_failed")

    @property
    def stage_names(self) -> list[str]:
        """Names of all failed stages."""
        return [f.stage for f in self.failures]

    def innermost(self) -> BuildError:
        """Return the first aggregated cause (or self if there is none)."""
        if not self.failures:
            return self
        return self.failures[0].cause


class BuildCancelledError(BuildError):
    """Raised when a build was cancelled by the user."""

    cli_exit_code = 130

    def __init__(self, completed: Sequence[str] = ()) -> None:
        self.completed = list(completed)
        super().__init__("Build cancelled", code="cancelled")


def exit_code_for(error: BaseException) -> int:
    """Map an error to a CLI exit code.

    StageFailedError maps to the code of its innermost cause so scripts see
    the underlying failure kind.

    Args:
        error: Raised exception.

    Returns:
        Process exit code.
    """
    if isinstance(error, StageFailedError):
        inner = error.innermost()
        if inner is not error:
            return exit_code_for(inner)
    if isinstance(error, BuildError):
        return type(error).cli_exit_code
    return 1


__all__ = [
    "BuildCancelledError",
    "BuildError",
    "CacheWriteError",
    "CycleError",
    "DuplicateStageNameError",
    "IsolationError",
    "ParseError",
    "PathNotFoundError",
    "StageFailedError",
    "StageFailure",
    "StepExecutionError",
    "UnknownStageError",
    "exit_code_for",
]
