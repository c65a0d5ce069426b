"""
Bubblewrap isolation.

Builds ``bwrap`` command lines that give an execution:
- no network (``--unshare-net``)
- read-only system directories
- read-only access to an explicit allow-list of host paths
- a private writable scratch directory mounted at /sandbox
- its own user, pid, ipc and uts namespaces
"""

import functools
import os
import shutil
import subprocess
from pathlib import Path

import structlog

SANDBOX_ROOT = "/sandbox"

ISOLATION_MODES = ("auto", "bwrap", "none", "required")

_RO_SYSTEM_DIRS = ("/usr", "/bin", "/sbin", "/etc")
_LIB_DIRS = ("/lib", "/lib64", "/lib32")

logger = structlog.get_logger()


@functools.lru_cache(maxsize=1)
def bwrap_available() -> bool:
    """
    Check that bubblewrap is installed and can actually create namespaces.

    Some hosts (containers without user namespaces) ship the binary but
    cannot use it, so a minimal sandbox is probed.
    """
    if shutil.which("bwrap") is None:
        return False
    try:
        probe = subprocess.run(
            [
                "bwrap",
                "--unshare-user",
                "--unshare-pid",
                "--unshare-net",
                "--die-with-parent",
                "--ro-bind",
                "/",
                "/",
                "--proc",
                "/proc",
                "--dev",
                "/dev",
                "/bin/sh",
                "-c",
                "true",
            ],
            capture_output=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("bwrap_probe_failed", error=str(e))
        return False
    if probe.returncode != 0:
        logger.debug(
            "bwrap_probe_failed",
            returncode=probe.returncode,
            stderr=probe.stderr.decode("utf-8", errors="replace")[:200],
        )
    return probe.returncode == 0


def build_bwrap_command(
    argv: list[str],
    scratch_dir: Path,
    allowed_paths: list[str],
    env: dict[str, str],
) -> list[str]:
    """
    Wrap ``argv`` in a bubblewrap invocation.

    ``argv`` must refer to files in the scratch dir by their /sandbox path.

    Args:
        argv: Command to run inside the sandbox
        scratch_dir: Host directory mounted writable at /sandbox
        allowed_paths: Host paths mounted read-only at the same location
        env: Complete environment for the sandboxed process

    Returns:
        Command line starting with ``bwrap``
    """
    command = [
        "bwrap",
        "--unshare-user",
        "--unshare-pid",
        "--unshare-ipc",
        "--unshare-uts",
        "--unshare-net",
        "--die-with-parent",
        "--new-session",
        "--clearenv",
    ]

    for directory in _RO_SYSTEM_DIRS:
        if Path(directory).exists():
            command.extend(["--ro-bind", directory, directory])

    for directory in _LIB_DIRS:
        path = Path(directory)
        if not path.exists():
            continue
        if path.is_symlink():
            command.extend(["--symlink", os.readlink(directory), directory])
        else:
            command.extend(["--ro-bind", directory, directory])

    command.extend(["--proc", "/proc", "--dev", "/dev", "--tmpfs", "/tmp"])

    for allowed in _unique_existing(allowed_paths):
        command.extend(["--ro-bind", allowed, allowed])

    command.extend([
        "--bind", str(scratch_dir.resolve()), SANDBOX_ROOT,
        "--chdir", SANDBOX_ROOT,
    ])

    for key, value in env.items():
        command.extend(["--setenv", key, value])

    command.extend(argv)
    return command


def _unique_existing(paths: list[str]) -> list[str]:
    seen: list[str] = []
    for raw in paths:
        resolved = os.path.realpath(os.path.expanduser(raw))
        if resolved in seen or not os.path.exists(resolved):
            continue
        if any(resolved == d or resolved.startswith(d + "/") for d in _RO_SYSTEM_DIRS):
            continue
        seen.append(resolved)
    return seen
