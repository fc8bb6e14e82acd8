"""Configuration settings for stagebuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache store root."""
    return Path.home() / ".cache" / "stagebuild"


def _default_images_dir() -> Path:
    """Return the default directory of locally available base images."""
    return Path.home() / ".local" / "share" / "stagebuild" / "images"


def _default_max_workers() -> int:
    """Return the default worker limit (CPU count minus one, at least 1)."""
    return max(1, (os.cpu_count() or 2) - 1)


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STAGEBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGEBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory of the cache store",
    )
    images_dir: Path = Field(
        default_factory=_default_images_dir,
        description="Directory holding unpacked base image filesystems",
    )
    work_dir: Path | None = Field(
        default=None,
        description="Directory for per-build working trees (uses system temp if not set)",
    )

    # Concurrency
    max_workers: int = Field(
        default_factory=_default_max_workers,
        ge=1,
        le=64,
        description="Maximum number of stages executed concurrently",
    )

    # Cache
    cache_budget_bytes: int = Field(
        default=10 * 1024**3,
        ge=0,
        description="Total cache size budget enforced by LRU eviction",
    )

    # Execution
    shell: str = Field(
        default="/bin/sh",
        description="Shell used to run step commands",
    )
    isolation: Literal["auto", "bwrap", "chroot", "none"] = Field(
        default="auto",
        description="How step commands see the stage filesystem as '/' "
        "('none' runs them on the host with the workdir as cwd)",
    )
    host_tools: bool = Field(
        default=True,
        description="Bind host tool directories missing from a stage (bwrap only)",
    )
    step_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for a single step command in seconds (None = no timeout)",
    )
    output_tail_bytes: int = Field(
        default=4000,
        ge=0,
        description="Amount of captured step output kept in failure reports",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
