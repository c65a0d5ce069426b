"""
Sandbox-backed agent tools.

Each tool instance is bound to one scenario: every execution lands in that
session's logs area and counts against that scenario's one-at-a-time sandbox
slot. The session repository is always visible (read-only) to executions.
"""

from typing import Any

from debugforce.core.domain.errors import DebugForceError
from debugforce.core.domain.models import SandboxExecutionRequest, SandboxExecutionResult
from debugforce.core.interfaces.sandbox import SandboxExecutorProtocol
from debugforce.infrastructure.sandbox.executor import TIMEOUT_MESSAGE, SandboxExecutor


def sandbox_result_to_dict(result: SandboxExecutionResult) -> dict[str, Any]:
    """Tool result dict for a sandbox result (success mirrors the exit status)."""
    data = {
        "success": result.success,
        "exit_code": result.exit_code,
        "stdout": result.stdout,
        "stderr": result.stderr,
        "isolated": result.isolated,
    }
    if result.timed_out:
        data["error"] = TIMEOUT_MESSAGE
        data["error_code"] = "SandboxTimeout"
    elif result.exit_code == -1:
        data["error"] = result.stderr or "sandbox executor failure"
        data["error_code"] = "SandboxExecutorFailure"
    elif not result.success:
        data["error"] = f"exit code {result.exit_code}"
    return data


class _ScenarioBoundTool:
    def __init__(
        self,
        executor: SandboxExecutorProtocol,
        repo_path: str,
        session_id: str,
        scenario_id: str | None = None,
        timeout_ms: int | None = None,
    ):
        self.executor = executor
        self.repo_path = repo_path
        self.session_id = session_id
        self.scenario_id = scenario_id
        self.timeout_ms = timeout_ms

    @property
    def max_timeout_ms(self) -> int:
        return self.timeout_ms or SandboxExecutor.DEFAULT_TIMEOUT_MS

    def _bounded_timeout(self, requested: Any) -> int:
        """Requested per-call timeout, capped at the configured one."""
        try:
            requested = int(requested)
        except (TypeError, ValueError):
            return self.max_timeout_ms
        if requested <= 0:
            return self.max_timeout_ms
        return min(requested, self.max_timeout_ms)


class RunCodeTool(_ScenarioBoundTool):
    """Run a snippet of shell, python, node or typescript in the sandbox."""

    @property
    def name(self) -> str:
        return "run_code"

    @property
    def description(self) -> str:
        return (
            "Run a code snippet in an isolated sandbox (no network, read-only "
            "repository access, private scratch directory as working directory). "
            "Returns exit_code, stdout, stderr and whether execution was isolated."
        )

    @property
    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "Source code or shell script to run",
                },
                "language": {
                    "type": "string",
                    "enum": ["shell", "python", "node", "typescript"],
                    "description": "Language of the snippet (default: shell)",
                },
                "name": {
                    "type": "string",
                    "description": "Short label for the run (used in audit logs)",
                },
                "allowed_paths": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Extra host paths to expose read-only",
                },
                "env": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                    "description": "Extra environment variables",
                },
                "timeout_ms": {
                    "type": "integer",
                    "description": f"Timeout in milliseconds (at most {self.max_timeout_ms})",
                },
            },
            "required": ["code"],
        }

    async def execute(
        self,
        code: str,
        language: str = "shell",
        name: str = "run",
        allowed_paths: list[str] | None = None,
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        **kwargs,
    ) -> dict[str, Any]:
        paths = [self.repo_path, *[p for p in (allowed_paths or []) if p != self.repo_path]]
        request = SandboxExecutionRequest(
            name=name,
            code=code,
            language=language,
            allowed_paths=paths,
            env={str(k): str(v) for k, v in (env or {}).items()},
            timeout_ms=self._bounded_timeout(timeout_ms),
            session_id=self.session_id,
            scenario_id=self.scenario_id,
        )
        try:
            result = await self.executor.execute(request)
        except DebugForceError as e:
            return {"success": False, "error": e.message, "error_code": e.code}
        return sandbox_result_to_dict(result)


class GitTool(_ScenarioBoundTool):
    """Read-only git commands against the session repository."""

    @property
    def name(self) -> str:
        return "git"

    @property
    def description(self) -> str:
        return (
            "Run git commands against the repository under investigation, in order "
            "(e.g. 'log --oneline -20', 'diff HEAD~1', 'blame src/app.ts'). "
            "The repository is mounted read-only."
        )

    @property
    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "commands": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Git commands, with or without the leading 'git'",
                },
            },
            "required": ["commands"],
        }

    async def execute(self, commands: list[str] | str, **kwargs) -> dict[str, Any]:
        if isinstance(commands, str):
            commands = [commands]
        result = await self.executor.execute_git(
            self.repo_path,
            list(commands),
            session_id=self.session_id,
            scenario_id=self.scenario_id,
            timeout_ms=self.timeout_ms,
        )
        return sandbox_result_to_dict(result)


class RunToolTool(_ScenarioBoundTool):
    """Run an installed host binary (linters, test runners, ...) in the sandbox."""

    @property
    def name(self) -> str:
        return "run_tool"

    @property
    def description(self) -> str:
        return (
            "Run an installed command-line tool with arguments inside the sandbox, "
            "with the repository visible read-only."
        )

    @property
    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "tool": {"type": "string", "description": "Executable name, e.g. 'rg' or 'tsc'"},
                "args": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Arguments",
                },
                "env": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                    "description": "Extra environment variables",
                },
            },
            "required": ["tool"],
        }

    async def execute(
        self,
        tool: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        **kwargs,
    ) -> dict[str, Any]:
        result = await self.executor.execute_tool(
            tool,
            [str(a) for a in (args or [])],
            env={str(k): str(v) for k, v in (env or {}).items()},
            session_id=self.session_id,
            scenario_id=self.scenario_id,
            timeout_ms=self.timeout_ms,
            allowed_paths=[self.repo_path],
        )
        return sandbox_result_to_dict(result)
