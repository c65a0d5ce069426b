"""
Sandbox and Environment Provisioning Protocols
"""

import shlex
from dataclasses import dataclass, field
from typing import Protocol

from debugforce.core.domain.models import SandboxExecutionRequest, SandboxExecutionResult


@dataclass
class EnvironmentHandle:
    """
    Ready-to-use execution environment for one language.

    Attributes:
        language: Canonical language name
        command: argv prefix that runs a script file (script path is appended)
        wrapper: argv prefix wrapping the whole command (e.g. nix-shell), may be empty
        host_paths: Host directories the runtime needs visible inside isolation
        env: Environment variables the runtime needs
    """

    language: str
    command: list[str]
    wrapper: list[str] = field(default_factory=list)
    host_paths: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    def argv(self, script_path: str) -> list[str]:
        """Full command line running ``script_path`` in this environment."""
        command = [*self.command, script_path]
        if not self.wrapper:
            return command
        # wrappers such as nix-shell --run take a single shell string
        return [*self.wrapper, shlex.join(command)]


class EnvironmentProvisionerProtocol(Protocol):
    def provision(self, language: str, project_path: str) -> EnvironmentHandle:
        """Return an environment for ``language`` or raise UnsupportedLanguageError."""
        ...


class SandboxExecutorProtocol(Protocol):
    async def execute(self, request: SandboxExecutionRequest) -> SandboxExecutionResult:
        ...

    async def execute_git(
        self,
        repo_path: str,
        commands: list[str],
        session_id: str = "adhoc",
        scenario_id: str | None = None,
        timeout_ms: int | None = None,
    ) -> SandboxExecutionResult:
        ...

    async def execute_tool(
        self,
        tool_name: str,
        args: list[str],
        env: dict[str, str] | None = None,
        session_id: str = "adhoc",
        scenario_id: str | None = None,
        timeout_ms: int | None = None,
        allowed_paths: list[str] | None = None,
    ) -> SandboxExecutionResult:
        ...
