"""Pydantic models for build description validation.

This module defines the Pydantic models that validate build description
data loaded from YAML/JSON files, and converts validated data into the
immutable StageSpec structures used by the resolver and executor.
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stagebuild.types import (
    SCRATCH,
    STAGE_REF_PREFIX,
    BaseKind,
    BaseRef,
    CacheMountSpec,
    CacheSharing,
    CopyInstruction,
    StageSpec,
    StepSpec,
    normalize_fs_path,
)

STAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
SUPPORTED_VERSIONS = {1}

# Accepted spellings of the sharing modes
_SHARING_ALIASES = {
    "exclusive": CacheSharing.EXCLUSIVE,
    "locked": CacheSharing.EXCLUSIVE,
    "shared": CacheSharing.SHARED,
}


class CacheMountSchema(BaseModel):
    """Schema for a cache mount declaration.

    Attributes:
        target: Mount path inside the stage filesystem.
        sharing: 'exclusive' (alias 'locked') or 'shared'.
        id: Optional explicit cache key (defaults to the target path).
    """

    model_config = ConfigDict(extra="forbid")

    target: str = Field(description="Mount path inside the stage filesystem")
    sharing: str = Field(default="shared", description="exclusive or shared")
    id: str | None = Field(default=None, description="Explicit cache key")

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        """Validate target is a non-root path."""
        if not v.strip():
            raise ValueError("target must not be empty")
        if normalize_fs_path(v) == "/":
            raise ValueError("target must not be the filesystem root")
        return v

    @field_validator("sharing")
    @classmethod
    def validate_sharing(cls, v: str) -> str:
        """Validate sharing is a supported mode."""
        if v not in _SHARING_ALIASES:
            raise ValueError(
                f"sharing must be one of {sorted(_SHARING_ALIASES)}, got '{v}'"
            )
        return v

    def to_spec(self) -> CacheMountSpec:
        """Convert to an immutable CacheMountSpec."""
        return CacheMountSpec(
            target=normalize_fs_path(self.target),
            sharing=_SHARING_ALIASES[self.sharing],
            cache_id=self.id,
        )


class CopySchema(BaseModel):
    """Schema for a copy instruction.

    Attributes:
        from_stage: Source stage name/alias ('from' in files); omitted for
            copies from the build context.
        source: Source path (may contain glob characters).
        dest: Destination path inside the stage filesystem.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    from_stage: str | None = Field(
        default=None,
        alias="from",
        description="Source stage (omit to copy from the build context)",
    )
    source: str = Field(description="Source path")
    dest: str = Field(description="Destination path")

    @field_validator("source", "dest")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Validate paths are not empty."""
        if not v.strip():
            raise ValueError("path must not be empty")
        return v

    @field_validator("from_stage")
    @classmethod
    def strip_stage_prefix(cls, v: str | None) -> str | None:
        """Accept both 'name' and 'stage:name'."""
        if v is not None and v.startswith(STAGE_REF_PREFIX):
            v = v[len(STAGE_REF_PREFIX) :]
        return v

    def to_spec(self) -> CopyInstruction:
        """Convert to an immutable CopyInstruction."""
        return CopyInstruction(
            source=self.source, dest=self.dest, from_stage=self.from_stage
        )


class StepSchema(BaseModel):
    """Schema for a step.

    A step runs its copy instructions first, then its command (if any) with
    its cache mounts in place.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, description="Optional step label")
    run: str | None = Field(default=None, description="Opaque shell command")
    cache: list[CacheMountSchema] = Field(default_factory=list)
    copy_: list[CopySchema] = Field(default_factory=list, alias="copy")

    @model_validator(mode="after")
    def validate_step(self) -> "StepSchema":
        """Validate the step does something and mounts are unambiguous."""
        if not (self.run and self.run.strip()) and not self.copy_:
            raise ValueError("step must declare 'run', 'copy' or both")
        if self.cache and not (self.run and self.run.strip()):
            raise ValueError("cache mounts require a 'run' command")

        keys = [m.to_spec().key for m in self.cache]
        dupes = sorted({k for k in keys if keys.count(k) > 1})
        if dupes:
            raise ValueError(f"cache key mounted twice in one step: {dupes}")
        return self

    def to_spec(self) -> StepSpec:
        """Convert to an immutable StepSpec."""
        return StepSpec(
            command=self.run if self.run and self.run.strip() else None,
            cache_mounts=tuple(m.to_spec() for m in self.cache),
            copies=tuple(c.to_spec() for c in self.copy_),
            name=self.name,
        )


class StageSchema(BaseModel):
    """Schema for a stage declaration.

    Attributes:
        name: Unique stage name.
        alias: Optional alternative name.
        base: 'scratch', an image reference, or 'stage:<name>'.
        env: Declared environment variables.
        workdir: Directory where steps run; unset inherits the base stage's.
        steps: Ordered steps.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Unique stage name")
    alias: str | None = Field(default=None, description="Alternative stage name")
    base: str = Field(default=SCRATCH, description="Base reference")
    env: dict[str, str] = Field(default_factory=dict)
    workdir: str | None = Field(
        default=None, description="Working directory for steps (inherited if unset)"
    )
    steps: list[StepSchema] = Field(default_factory=list)

    @field_validator("name", "alias")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        """Validate stage names are simple identifiers."""
        if v is None:
            return v
        if not STAGE_NAME_PATTERN.match(v):
            raise ValueError(
                f"stage name must match {STAGE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("base")
    @classmethod
    def validate_base(cls, v: str) -> str:
        """Validate base is not empty."""
        v = v.strip()
        if not v:
            raise ValueError("base must not be empty")
        if v == STAGE_REF_PREFIX:
            raise ValueError("stage base reference is missing a stage name")
        return v

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate environment variable names."""
        for name in v:
            if not ENV_NAME_PATTERN.match(name):
                raise ValueError(f"invalid environment variable name '{name}'")
        return v

    def to_spec(self, stage_names: set[str]) -> StageSpec:
        """Convert to an immutable StageSpec.

        Args:
            stage_names: Names and aliases of all declared stages; a bare base
                reference matching one of them is a stage reference.
        """
        return StageSpec(
            name=self.name,
            alias=self.alias,
            base=parse_base_ref(self.base, stage_names),
            steps=tuple(s.to_spec() for s in self.steps),
            env=tuple(sorted(self.env.items())),
            workdir=normalize_fs_path(self.workdir) if self.workdir else None,
        )


class BuildDescriptionSchema(BaseModel):
    """Complete build description schema.

    Attributes:
        version: Description format version.
        stages: Ordered stage declarations.
    """

    model_config = ConfigDict(extra="forbid")

    version: int = Field(default=1, description="Format version")
    stages: list[StageSchema] = Field(description="Ordered stage declarations")

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: int) -> int:
        """Validate the format version is supported."""
        if v not in SUPPORTED_VERSIONS:
            raise ValueError(f"unsupported description version {v}")
        return v

    @field_validator("stages")
    @classmethod
    def validate_stages(cls, v: list[StageSchema]) -> list[StageSchema]:
        """Validate at least one stage is declared."""
        if not v:
            raise ValueError("at least one stage must be declared")
        return v

    def to_specs(self) -> list[StageSpec]:
        """Convert all stages to StageSpecs in declaration order."""
        names: set[str] = set()
        for stage in self.stages:
            names.add(stage.name)
            if stage.alias:
                names.add(stage.alias)
        return [stage.to_spec(names) for stage in self.stages]


def parse_base_ref(value: str, stage_names: set[str]) -> BaseRef:
    """Classify a base reference string.

    - 'scratch' is an empty filesystem
    - 'stage:<name>' is always a stage reference (validated by the resolver)
    - a bare name equal to a declared stage name or alias is a stage reference
    - anything else is an external image reference

    Args:
        value: Base reference as written.
        stage_names: Declared stage names and aliases.

    Returns:
        BaseRef instance.
    """
    if value == SCRATCH:
        return BaseRef(BaseKind.SCRATCH)
    if value.startswith(STAGE_REF_PREFIX):
        return BaseRef(BaseKind.STAGE, value[len(STAGE_REF_PREFIX) :])
    if value in stage_names:
        return BaseRef(BaseKind.STAGE, value)
    return BaseRef(BaseKind.IMAGE, value)


__all__ = [
    "BuildDescriptionSchema",
    "CacheMountSchema",
    "CopySchema",
    "StageSchema",
    "StepSchema",
    "parse_base_ref",
]
