"""
Environment Provisioners

Turn a language name into a runnable environment:
- HostProvisioner resolves interpreters already installed on the host
- NixProvisioner runs inside ``nix-shell --pure`` with per-language packages

Both return an EnvironmentHandle; neither starts a process.
"""

import os
import shutil
import sys
from pathlib import Path

import structlog

from debugforce.core.domain.errors import ProvisioningError, UnsupportedLanguageError
from debugforce.core.interfaces.sandbox import EnvironmentHandle

SUPPORTED_LANGUAGES = ("shell", "python", "node", "typescript")

LANGUAGE_ALIASES = {
    "shell": "shell",
    "bash": "shell",
    "sh": "shell",
    "python": "python",
    "python3": "python",
    "node": "node",
    "nodejs": "node",
    "javascript": "node",
    "typescript": "typescript",
    "ts": "typescript",
}

SCRIPT_EXTENSIONS = {
    "shell": "sh",
    "python": "py",
    "node": "js",
    "typescript": "ts",
}

NIX_PACKAGES = {
    "shell": ["bash", "coreutils", "findutils", "gnugrep", "gnused", "git"],
    "python": ["bash", "coreutils", "python3"],
    "node": ["bash", "coreutils", "nodejs"],
    "typescript": ["bash", "coreutils", "nodejs", "typescript"],
}

# Compile next to the script, then run the emitted JavaScript.
_TSC_RUNNER = [
    "sh",
    "-c",
    'tsc --outDir "$(dirname "$1")" "$1" && node "${1%.ts}.js"',
    "tsc-runner",
]

# Directories every isolation profile already exposes read-only.
_SYSTEM_PREFIXES = ("/usr", "/bin", "/sbin", "/lib", "/lib64", "/etc")

logger = structlog.get_logger()


def normalize_language(language: str | None) -> str:
    """
    Map a language name or alias to its canonical name.

    Raises:
        UnsupportedLanguageError: If the language is not supported
    """
    canonical = LANGUAGE_ALIASES.get((language or "").strip().lower())
    if canonical is None:
        raise UnsupportedLanguageError(
            f"Unsupported language: {language!r} (supported: {', '.join(SUPPORTED_LANGUAGES)})"
        )
    return canonical


def runtime_prefix(executable: str) -> str | None:
    """
    Return the install prefix of an executable living outside system dirs.

    ``/opt/conda/bin/python3`` -> ``/opt/conda``; ``/usr/bin/python3`` -> None.
    """
    real = Path(os.path.realpath(executable))
    if str(real).startswith(_SYSTEM_PREFIXES):
        return None
    return str(real.parent.parent)


class HostProvisioner:
    """Resolves language runtimes from the host PATH."""

    def __init__(self):
        self.logger = logger.bind(component="host_provisioner")

    def provision(self, language: str, project_path: str) -> EnvironmentHandle:
        canonical = normalize_language(language)

        if canonical == "shell":
            executable = shutil.which("bash") or shutil.which("sh")
            command = [executable] if executable else None
        elif canonical == "python":
            executable = shutil.which("python3") or sys.executable
            command = [executable] if executable else None
        elif canonical == "node":
            executable = shutil.which("node")
            command = [executable] if executable else None
        else:
            command = self._typescript_command()
            executable = command[0] if command else None

        if not command or not executable:
            raise ProvisioningError(f"No runtime for {canonical} found on host")

        host_paths = []
        prefix = runtime_prefix(executable)
        if prefix:
            host_paths.append(prefix)

        self.logger.debug(
            "environment_provisioned",
            language=canonical,
            command=command,
            project_path=project_path,
        )
        return EnvironmentHandle(language=canonical, command=command, host_paths=host_paths)

    def _typescript_command(self) -> list[str] | None:
        for runner in ("tsx", "ts-node"):
            path = shutil.which(runner)
            if path:
                return [path]
        if shutil.which("tsc") and shutil.which("node"):
            return list(_TSC_RUNNER)
        npx = shutil.which("npx")
        if npx:
            return [npx, "--yes", "tsx"]
        return None


class NixProvisioner:
    """Runs each language inside ``nix-shell --pure`` with its package set."""

    def __init__(self, nix_shell: str | None = None):
        self.nix_shell = nix_shell or shutil.which("nix-shell")
        self.logger = logger.bind(component="nix_provisioner")

    def provision(self, language: str, project_path: str) -> EnvironmentHandle:
        canonical = normalize_language(language)
        if not self.nix_shell:
            raise ProvisioningError("nix-shell not found on host")

        command = {
            "shell": ["bash"],
            "python": ["python3"],
            "node": ["node"],
            "typescript": list(_TSC_RUNNER),
        }[canonical]

        env = {}
        if os.environ.get("NIX_PATH"):
            env["NIX_PATH"] = os.environ["NIX_PATH"]

        self.logger.debug(
            "environment_provisioned",
            language=canonical,
            packages=NIX_PACKAGES[canonical],
            project_path=project_path,
        )
        return EnvironmentHandle(
            language=canonical,
            command=command,
            wrapper=[self.nix_shell, "--pure", "-p", *NIX_PACKAGES[canonical], "--run"],
            host_paths=["/nix"],
            env=env,
        )


def create_provisioner(kind: str = "host") -> HostProvisioner | NixProvisioner:
    if kind == "host":
        return HostProvisioner()
    if kind == "nix":
        return NixProvisioner()
    raise ValueError(f"Unknown provisioner: {kind}")
