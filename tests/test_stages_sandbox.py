"""Tests for stages/sandbox.py module.

Tests isolation mode selection and the composed command lines. No sandbox
is started here; see TestIsolatedSteps in test_stages_executor.py.
"""

import os
from unittest.mock import patch

import pytest

from stagebuild.errors import IsolationError
from stagebuild.stages.executor import ExecutionOptions, run_step
from stagebuild.stages.sandbox import (
    CommandLine,
    compose_command,
    remove_mountpoints,
    resolve_isolation,
)
from stagebuild.types import StageSpec, StepSpec

CHROOT_SCRIPT = 'cd "$0" && eval "$1"'


def which(*available):
    """Fake shutil.which knowing only the given programs."""
    return lambda name: f"/usr/bin/{name}" if name in available else None


@pytest.fixture
def rootfs(tmp_path):
    """Create an empty stage filesystem."""
    root = tmp_path / "rootfs"
    root.mkdir()
    return root


class TestResolveIsolation:
    """Tests for resolve_isolation function."""

    def test_none_is_always_available(self):
        """'none' needs no tools."""
        with patch("stagebuild.stages.sandbox.shutil.which", which()):
            assert resolve_isolation("none") == "none"

    def test_auto_prefers_bwrap(self):
        """auto picks bwrap when it is installed."""
        with (
            patch("stagebuild.stages.sandbox.shutil.which", which("bwrap", "chroot")),
            patch("stagebuild.stages.sandbox.os.geteuid", return_value=0),
        ):
            assert resolve_isolation("auto") == "bwrap"

    def test_auto_falls_back_to_chroot_as_root(self):
        """auto picks chroot for root when bwrap is missing."""
        with (
            patch("stagebuild.stages.sandbox.shutil.which", which("chroot")),
            patch("stagebuild.stages.sandbox.os.geteuid", return_value=0),
        ):
            assert resolve_isolation("auto") == "chroot"

    def test_auto_never_falls_back_to_host(self):
        """auto fails instead of silently running steps on the host."""
        with (
            patch("stagebuild.stages.sandbox.shutil.which", which("chroot")),
            patch("stagebuild.stages.sandbox.os.geteuid", return_value=1000),
            pytest.raises(IsolationError, match="STAGEBUILD_ISOLATION=none"),
        ):
            resolve_isolation("auto")

    def test_chroot_requires_root(self):
        """Explicit chroot fails for unprivileged users."""
        with (
            patch("stagebuild.stages.sandbox.shutil.which", which("chroot")),
            patch("stagebuild.stages.sandbox.os.geteuid", return_value=1000),
            pytest.raises(IsolationError, match="requires root"),
        ):
            resolve_isolation("chroot")

    def test_explicit_mode_requires_tool(self):
        """Explicit bwrap fails when it is not installed."""
        with (
            patch("stagebuild.stages.sandbox.shutil.which", which()),
            pytest.raises(IsolationError, match="bwrap"),
        ):
            resolve_isolation("bwrap")

    def test_unknown_mode(self):
        """Unknown modes are rejected."""
        with pytest.raises(IsolationError, match="Unknown isolation mode"):
            resolve_isolation("docker")

    def test_error_code(self):
        """IsolationError carries a stable code."""
        with pytest.raises(IsolationError) as exc_info:
            resolve_isolation("docker")

        assert exc_info.value.code == "isolation_unavailable"


class TestComposeCommand:
    """Tests for compose_command function."""

    def test_none_runs_in_host_workdir(self, rootfs):
        """Without isolation the command runs with the workdir as cwd."""
        command_line = compose_command("none", rootfs, "/app", "/bin/sh", "make")

        assert command_line.argv == ["/bin/sh", "-c", "make"]
        assert command_line.cwd == rootfs / "app"
        assert not command_line.isolated
        assert command_line.mountpoints == []

    def test_bwrap_binds_stage_as_root(self, rootfs):
        """bwrap binds the stage filesystem at '/' and changes to the workdir."""
        command_line = compose_command(
            "bwrap", rootfs, "/app", "/bin/sh", "make", host_tools=False
        )

        argv = command_line.argv
        assert argv[:4] == ["bwrap", "--bind", str(rootfs.resolve()), "/"]
        assert argv[-6:] == ["--chdir", "/app", "--", "/bin/sh", "-c", "make"]
        assert "--ro-bind" not in argv
        assert command_line.isolated
        assert command_line.cwd is None
        assert command_line.mountpoints == [rootfs / "dev", rootfs / "proc"]

    def test_bwrap_binds_missing_host_tools(self, rootfs):
        """Host tool directories are bound only where the stage lacks them."""
        (rootfs / "bin").mkdir()

        command_line = compose_command("bwrap", rootfs, "/", "/bin/sh", "true")

        argv = command_line.argv
        binds = [argv[i : i + 3] for i, arg in enumerate(argv) if arg == "--ro-bind"]
        assert ["--ro-bind", os.path.realpath("/usr"), "/usr"] in binds
        assert "/bin" not in [target for _, _, target in binds]
        assert rootfs / "usr" in command_line.mountpoints
        assert rootfs / "bin" not in command_line.mountpoints

    def test_bwrap_keeps_existing_pseudo_fs_dirs(self, rootfs):
        """Existing /dev and /proc directories are not cleaned up later."""
        (rootfs / "dev").mkdir()
        (rootfs / "proc").mkdir()

        command_line = compose_command(
            "bwrap", rootfs, "/", "/bin/sh", "true", host_tools=False
        )

        assert command_line.mountpoints == []

    def test_chroot(self, rootfs):
        """chroot runs the shell of the stage and changes to the workdir."""
        (rootfs / "bin").mkdir()
        (rootfs / "bin" / "sh").write_text("")

        command_line = compose_command("chroot", rootfs, "/app", "/bin/sh", "make")

        assert command_line.argv == [
            "chroot",
            str(rootfs.resolve()),
            "/bin/sh",
            "-c",
            CHROOT_SCRIPT,
            "/app",
            "make",
        ]
        assert command_line.isolated

    def test_chroot_needs_shell_in_stage(self, rootfs):
        """chroot into a stage without a shell fails up front."""
        with pytest.raises(IsolationError, match="not found in the stage"):
            compose_command("chroot", rootfs, "/", "/bin/sh", "true")


class TestRemoveMountpoints:
    """Tests for remove_mountpoints function."""

    def test_removes_empty_dirs_only(self, rootfs, caplog):
        """Empty mount points go; anything with content stays."""
        (rootfs / "dev").mkdir()
        (rootfs / "usr").mkdir()
        (rootfs / "usr" / "file").write_text("kept")
        command_line = CommandLine(
            argv=[],
            mountpoints=[rootfs / "dev", rootfs / "usr", rootfs / "missing"],
        )

        remove_mountpoints(command_line)

        assert not (rootfs / "dev").exists()
        assert (rootfs / "usr" / "file").read_text() == "kept"
        assert "Cannot remove mount point" in caplog.text


class TestRunStepIsolation:
    """Tests for isolation handling in run_step."""

    def test_unavailable_isolation_fails_step(self, tmp_path):
        """Steps fail with IsolationError rather than running on the host."""
        rootfs = tmp_path / "stage" / "rootfs"
        rootfs.mkdir(parents=True)
        stage = StageSpec(name="s", steps=(StepSpec(command="touch /escaped"),))

        with (
            patch("stagebuild.stages.sandbox.shutil.which", which()),
            patch("stagebuild.stages.sandbox.os.geteuid", return_value=1000),
            pytest.raises(IsolationError),
        ):
            run_step(
                stage,
                0,
                rootfs,
                cache=None,
                log_dir=tmp_path / "logs",
                options=ExecutionOptions(isolation="auto"),
            )

        assert list(rootfs.iterdir()) == []
