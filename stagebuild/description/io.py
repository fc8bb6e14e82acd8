"""Build description loading.

This module provides helpers for loading build descriptions from YAML/JSON
files (or already-parsed data) into validated StageSpec lists. Every
failure is reported as a ParseError naming the offending file.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stagebuild.description.schema import BuildDescriptionSchema
from stagebuild.errors import ParseError
from stagebuild.types import StageSpec

logger = logging.getLogger(__name__)

JSON_SUFFIXES = {".json"}


@dataclass(frozen=True)
class BuildDescription:
    """A parsed build description.

    Attributes:
        stages: Stage specs in declaration order.
        context_dir: Directory that context copies are resolved against.
        source: Where the description was loaded from (for messages).
    """

    stages: tuple[StageSpec, ...]
    context_dir: Path
    source: str | None = None

    @property
    def stage_names(self) -> list[str]:
        """Stage names in declaration order."""
        return [s.name for s in self.stages]

    @property
    def last_stage(self) -> str:
        """Name of the last declared stage (the default build target)."""
        return self.stages[-1].name


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        lines.append(f"{loc}: {err['msg']}")
    return "; ".join(lines)


def parse_description_data(
    data: Any,
    context_dir: Path | None = None,
    source: str | None = None,
) -> BuildDescription:
    """Validate already-parsed description data.

    Args:
        data: Parsed YAML/JSON content.
        context_dir: Build context directory (defaults to cwd).
        source: Description origin used in error messages.

    Returns:
        BuildDescription instance.

    Raises:
        ParseError: If the data does not match the schema.
    """
    if not isinstance(data, dict):
        raise ParseError(
            f"expected a mapping at the top level, got {type(data).__name__}",
            source=source,
        )
    try:
        schema = BuildDescriptionSchema.model_validate(data)
    except ValidationError as e:
        raise ParseError(_format_validation_error(e), source=source) from e

    stages = tuple(schema.to_specs())
    logger.debug("Parsed %d stage(s) from %s", len(stages), source or "<data>")
    return BuildDescription(
        stages=stages,
        context_dir=(context_dir or Path.cwd()).resolve(),
        source=source,
    )


def load_description(path: Path, context_dir: Path | None = None) -> BuildDescription:
    """Load and validate a build description from a YAML or JSON file.

    Files ending in .json are parsed as JSON; everything else as YAML
    (YAML is a superset of JSON, so either works for other extensions).

    Args:
        path: Description file.
        context_dir: Build context directory (defaults to the file's directory).

    Returns:
        BuildDescription instance.

    Raises:
        ParseError: If the file cannot be read or is malformed.
    """
    source = str(path)
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix.lower() in JSON_SUFFIXES:
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ParseError("file not found", source=source) from e
    except UnicodeDecodeError as e:
        raise ParseError(f"invalid encoding (expected UTF-8): {e}", source=source) from e
    except OSError as e:
        raise ParseError(f"cannot read file: {e}", source=source) from e
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e}", source=source) from e
    except yaml.YAMLError as e:
        raise ParseError(f"invalid YAML: {e}", source=source) from e

    if data is None:
        raise ParseError("description is empty", source=source)

    return parse_description_data(
        data,
        context_dir=context_dir or path.resolve().parent,
        source=source,
    )


__all__ = [
    "BuildDescription",
    "load_description",
    "parse_description_data",
]
