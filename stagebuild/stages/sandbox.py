"""Command isolation for step execution.

Step commands see the stage filesystem as their root directory, so
absolute paths (including cache mount targets) resolve inside the stage.

Isolation modes:
- bwrap: bubblewrap binds the stage filesystem at '/' (unprivileged)
- chroot: chroot(8) into the stage filesystem (requires root and a shell
  inside the stage)
- none: run on the host with the stage workdir as cwd; absolute paths
  refer to the host (explicit opt-in only)
- auto: bwrap if installed, else chroot when running as root
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from stagebuild.errors import IsolationError
from stagebuild.stages.snapshot import resolve_in_root

logger = logging.getLogger(__name__)

ISOLATION_MODES = ("auto", "bwrap", "chroot", "none")

# Host directories bound read-only when the stage filesystem lacks them, so
# scratch stages can still run shell commands under bwrap
HOST_TOOL_DIRS = ("/bin", "/sbin", "/lib", "/lib32", "/lib64", "/usr")

PSEUDO_FS = {"/dev": "--dev", "/proc": "--proc"}


@dataclass
class CommandLine:
    """A composed step command.

    Attributes:
        argv: Command as list of strings suitable for subprocess.
        cwd: Host working directory (None when the sandbox sets it).
        isolated: Whether the command sees the stage filesystem as '/'.
        mountpoints: Directories the sandbox creates inside the stage
            filesystem; removed again after the command if still empty.
    """

    argv: list[str]
    cwd: Path | None = None
    isolated: bool = True
    mountpoints: list[Path] = field(default_factory=list)


def resolve_isolation(mode: str) -> str:
    """Pick the concrete isolation mode.

    Args:
        mode: One of ISOLATION_MODES.

    Returns:
        'bwrap', 'chroot' or 'none'.

    Raises:
        IsolationError: If the mode is unknown or unavailable.
    """
    if mode not in ISOLATION_MODES:
        raise IsolationError(f"Unknown isolation mode '{mode}'")
    if mode == "none":
        return mode
    if mode == "auto":
        if shutil.which("bwrap"):
            return "bwrap"
        if os.geteuid() == 0 and shutil.which("chroot"):
            return "chroot"
        raise IsolationError(
            "No command isolation available: install bubblewrap (bwrap), run "
            "as root, or set STAGEBUILD_ISOLATION=none to run steps on the host"
        )
    if not shutil.which(mode):
        raise IsolationError(f"Isolation mode '{mode}' requires '{mode}' on PATH")
    if mode == "chroot" and os.geteuid() != 0:
        raise IsolationError("Isolation mode 'chroot' requires root")
    return mode


def compose_command(
    isolation: str,
    rootfs: Path,
    workdir: str,
    shell: str,
    command: str,
    host_tools: bool = True,
) -> CommandLine:
    """Compose the command line running a step command.

    Args:
        isolation: Concrete isolation mode ('bwrap', 'chroot' or 'none').
        rootfs: Stage filesystem on the host.
        workdir: Working directory inside the stage filesystem.
        shell: Shell executable.
        command: Opaque shell command.
        host_tools: Bind host tool directories missing from the stage
            filesystem (bwrap only).

    Returns:
        CommandLine instance.

    Raises:
        IsolationError: If chroot is requested but the stage has no shell.
    """
    if isolation == "none":
        return CommandLine(
            argv=[shell, "-c", command],
            cwd=resolve_in_root(rootfs, workdir, follow_final=True),
            isolated=False,
        )

    if isolation == "chroot":
        if not resolve_in_root(rootfs, shell, follow_final=True).exists():
            raise IsolationError(
                f"Shell '{shell}' not found in the stage filesystem; chroot "
                "isolation needs a base that provides it"
            )
        # sh -c SCRIPT WORKDIR COMMAND: $0 is the workdir, $1 the command
        script = 'cd "$0" && eval "$1"'
        return CommandLine(
            argv=["chroot", str(rootfs.resolve()), shell, "-c", script, workdir, command]
        )

    if isolation != "bwrap":
        raise IsolationError(f"Unknown isolation mode '{isolation}'")

    argv = ["bwrap", "--bind", str(rootfs.resolve()), "/"]
    mountpoints: list[Path] = []
    for target, option in PSEUDO_FS.items():
        argv += [option, target]
        host_path = rootfs / target.lstrip("/")
        if not os.path.lexists(host_path):
            mountpoints.append(host_path)

    if host_tools:
        for target in HOST_TOOL_DIRS:
            host_path = rootfs / target.lstrip("/")
            if os.path.lexists(host_path) or not os.path.isdir(target):
                continue
            argv += ["--ro-bind", os.path.realpath(target), target]
            mountpoints.append(host_path)

    argv += ["--unshare-pid", "--die-with-parent", "--chdir", workdir]
    argv += ["--", shell, "-c", command]
    return CommandLine(argv=argv, mountpoints=mountpoints)


def remove_mountpoints(command_line: CommandLine) -> None:
    """Remove the empty mount point directories a sandbox left behind."""
    for path in reversed(command_line.mountpoints):
        if not path.is_dir() or path.is_symlink():
            continue
        try:
            path.rmdir()
        except OSError as e:
            logger.warning("Cannot remove mount point %s: %s", path, e)


__all__ = [
    "HOST_TOOL_DIRS",
    "ISOLATION_MODES",
    "CommandLine",
    "compose_command",
    "remove_mountpoints",
    "resolve_isolation",
]
