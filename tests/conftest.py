"""Shared fixtures for stagebuild tests."""

import shutil
import subprocess
from pathlib import Path

import pytest

from stagebuild.cache.store import CacheStore
from stagebuild.config import Settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create settings rooted in a temporary directory.

    Steps run on the host with the workdir as cwd; sandboxed tests ask for
    the bwrap fixture and override isolation.
    """
    return Settings(
        cache_dir=tmp_path / "cache",
        images_dir=tmp_path / "images",
        work_dir=tmp_path / "work",
        max_workers=4,
        cache_budget_bytes=1024**3,
        isolation="none",
    )


@pytest.fixture(scope="session")
def bwrap() -> str:
    """Skip unless bubblewrap can create a sandbox on this machine."""
    path = shutil.which("bwrap")
    if path is None:
        pytest.skip("bubblewrap (bwrap) is not installed")
    argv = [path, "--ro-bind", "/", "/", "--dev", "/dev", "--proc", "/proc"]
    argv += ["--unshare-pid", "--die-with-parent", "true"]
    check = subprocess.run(argv, capture_output=True, check=False)
    if check.returncode != 0:
        pytest.skip(f"bubblewrap cannot create a sandbox: {check.stderr.decode()}")
    return path


@pytest.fixture
def cache_store(tmp_path: Path):
    """Create a cache store in a temporary directory."""
    store = CacheStore(tmp_path / "cache")
    try:
        yield store
    finally:
        store.close()
