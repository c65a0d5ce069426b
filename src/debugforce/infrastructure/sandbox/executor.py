"""
Sandbox Executor

Runs code snippets, git commands and host tools in an isolated execution
context with a bounded lifetime.

Every invocation gets a uniquely named run directory under the session's
logs area:

    <work_dir>/sessions/<session_id>/sandbox/<name>-<8 hex>/
        script.<ext>   code that was run
        stdout.log     captured stdout
        stderr.log     captured stderr
        result.json    request metadata and result

The transcript is written whether or not the execution succeeded.

Failure semantics:
- The executed code exiting non-zero is a normal result (success=False,
  exit_code=N); it is not an executor error.
- Executor failures (run dir creation, provisioning, script write, spawn
  errors) and timeouts produce exit_code=-1 with a diagnostic in stderr.
- When no isolation engine is usable the code still runs, directly on the
  host, and the result carries isolated=False.
"""

import asyncio
import json
import os
import re
import shlex
import shutil
import signal
import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import structlog

from debugforce.core.domain.errors import (
    IsolationUnavailableError,
    ProvisioningError,
)
from debugforce.core.domain.models import SandboxExecutionRequest, SandboxExecutionResult
from debugforce.core.interfaces.sandbox import (
    EnvironmentHandle,
    EnvironmentProvisionerProtocol,
)
from debugforce.infrastructure.sandbox.isolation import (
    ISOLATION_MODES,
    SANDBOX_ROOT,
    build_bwrap_command,
    bwrap_available,
)
from debugforce.infrastructure.sandbox.provisioner import (
    SCRIPT_EXTENSIONS,
    HostProvisioner,
    normalize_language,
)

TIMEOUT_MESSAGE = "timeout exceeded"

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")

logger = structlog.get_logger()


class SandboxExecutor:
    """
    Executes requests inside bubblewrap, or directly on the host when
    isolation is unavailable.

    Isolation modes:
        auto:     use bubblewrap when it works, otherwise fall back
        bwrap:    same as auto, but warn loudly on fallback
        none:     never isolate (results carry isolated=False)
        required: refuse to construct without a working isolation engine
    """

    DEFAULT_TIMEOUT_MS = 30000

    def __init__(
        self,
        work_dir: str = ".debugforce",
        isolation: str = "auto",
        default_timeout_ms: int | None = None,
        provisioner: EnvironmentProvisionerProtocol | None = None,
    ):
        """
        Initialize SandboxExecutor.

        Args:
            work_dir: Root directory holding per-session logs areas
            isolation: Isolation mode (auto, bwrap, none, required)
            default_timeout_ms: Timeout applied when a request has none
            provisioner: Environment provisioner (defaults to HostProvisioner)

        Raises:
            ValueError: If the isolation mode is unknown
            IsolationUnavailableError: If isolation is required but unusable
        """
        if isolation not in ISOLATION_MODES:
            raise ValueError(f"Unknown isolation mode: {isolation}")

        self.work_dir = Path(work_dir)
        self.default_timeout_ms = default_timeout_ms or self.DEFAULT_TIMEOUT_MS
        self.provisioner = provisioner or HostProvisioner()
        self.logger = logger.bind(component="sandbox_executor")
        self._scenario_locks: dict[str, asyncio.Lock] = {}

        self.isolated = isolation != "none" and bwrap_available()

        if isolation == "required" and not self.isolated:
            raise IsolationUnavailableError(
                "Isolation required but bubblewrap is unavailable on this host"
            )
        if not self.isolated:
            log = self.logger.warning if isolation in ("auto", "bwrap") else self.logger.info
            log(
                "sandbox.isolation_unavailable",
                mode=isolation,
                hint="Executions run directly on the host; results carry isolated=False",
            )

    async def execute(self, request: SandboxExecutionRequest) -> SandboxExecutionResult:
        """
        Run a code snippet.

        Raises:
            UnsupportedLanguageError: Before any side effect, for unknown languages
        """
        language = normalize_language(request.language)
        timeout_ms = request.timeout_ms if request.timeout_ms and request.timeout_ms > 0 else self.default_timeout_ms

        async with self._get_lock(request.scenario_id):
            return await self._run(request, language, timeout_ms)

    async def execute_git(
        self,
        repo_path: str,
        commands: list[str],
        session_id: str = "adhoc",
        scenario_id: str | None = None,
        timeout_ms: int | None = None,
    ) -> SandboxExecutionResult:
        """
        Run git commands, in order, against a repository mounted read-only.

        Commands may be given with or without the leading ``git``. The exit
        code is the last non-zero command status, or 0 if all succeeded.
        """
        argvs = []
        for command in commands:
            tokens = shlex.split(command) if isinstance(command, str) else [str(c) for c in command]
            if not tokens:
                continue
            if tokens[0] != "git":
                tokens = ["git", *tokens]
            argvs.append(tokens)

        if not argvs:
            return self._executor_failure("no git commands given", reason="invalid_request")

        lines = [
            "status=0",
            f"cd {shlex.quote(repo_path)} || exit 1",
        ]
        for argv in argvs:
            rendered = shlex.join(argv)
            lines.append(f"echo {shlex.quote('$ ' + rendered)}")
            lines.append(f"{rendered} || status=$?")
        lines.append("exit $status")

        request = SandboxExecutionRequest(
            name="git",
            code="\n".join(lines) + "\n",
            language="shell",
            allowed_paths=[repo_path],
            env={
                "GIT_OPTIONAL_LOCKS": "0",
                "GIT_PAGER": "cat",
                "GIT_TERMINAL_PROMPT": "0",
                "GIT_CONFIG_COUNT": "1",
                "GIT_CONFIG_KEY_0": "safe.directory",
                "GIT_CONFIG_VALUE_0": "*",
            },
            timeout_ms=timeout_ms,
            session_id=session_id,
            scenario_id=scenario_id,
        )
        return await self.execute(request)

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
        """Run a host binary with arguments under the same isolation policy."""
        executable = shutil.which(tool_name)
        if executable is None:
            return self._executor_failure(f"tool not found: {tool_name}", reason="tool_not_found")

        paths = list(allowed_paths or [])
        tool_dir = os.path.dirname(os.path.realpath(executable))
        if tool_dir not in paths:
            paths.append(tool_dir)

        request = SandboxExecutionRequest(
            name=f"tool-{Path(tool_name).name}",
            code=shlex.join([executable, *[str(a) for a in args]]) + "\n",
            language="shell",
            allowed_paths=paths,
            env=dict(env or {}),
            timeout_ms=timeout_ms,
            session_id=session_id,
            scenario_id=scenario_id,
        )
        return await self.execute(request)

    def _get_lock(self, scenario_id: str | None) -> asyncio.Lock:
        """One in-flight execution per scenario; ad-hoc requests share nothing."""
        if scenario_id is None:
            return asyncio.Lock()
        if scenario_id not in self._scenario_locks:
            self._scenario_locks[scenario_id] = asyncio.Lock()
        return self._scenario_locks[scenario_id]

    async def _run(
        self,
        request: SandboxExecutionRequest,
        language: str,
        timeout_ms: int,
    ) -> SandboxExecutionResult:
        try:
            run_dir = self._create_run_dir(request.session_id, request.name)
        except OSError as e:
            return self._executor_failure(
                f"failed to create run directory: {e}", reason="run_dir"
            )

        project_path = request.allowed_paths[0] if request.allowed_paths else str(run_dir)
        try:
            handle = self.provisioner.provision(language, project_path)
        except ProvisioningError as e:
            result = self._executor_failure(str(e), reason="provisioning", run_dir=run_dir)
            await self._write_transcript(run_dir, request, language, result)
            return result

        script_name = f"script.{SCRIPT_EXTENSIONS[language]}"
        try:
            async with aiofiles.open(run_dir / script_name, "w", encoding="utf-8") as f:
                await f.write(request.code)
        except OSError as e:
            result = self._executor_failure(
                f"failed to write script: {e}", reason="script_write", run_dir=run_dir
            )
            await self._write_transcript(run_dir, request, language, result)
            return result

        argv, env, cwd = self._build_command(handle, run_dir, script_name, request)

        self.logger.info(
            "sandbox.execution_started",
            name=request.name,
            language=language,
            session_id=request.session_id,
            scenario_id=request.scenario_id,
            isolated=self.isolated,
            timeout_ms=timeout_ms,
        )

        result = await self._spawn(argv, env, cwd, timeout_ms / 1000, run_dir)
        await self._write_transcript(run_dir, request, language, result)
        return result

    def _create_run_dir(self, session_id: str, name: str) -> Path:
        safe_name = _SAFE_NAME.sub("_", name).strip("_") or "run"
        run_dir = (
            self.work_dir
            / "sessions"
            / _SAFE_NAME.sub("_", session_id)
            / "sandbox"
            / f"{safe_name}-{uuid.uuid4().hex[:8]}"
        )
        run_dir.mkdir(parents=True, exist_ok=False)
        return run_dir

    def _build_command(
        self,
        handle: EnvironmentHandle,
        run_dir: Path,
        script_name: str,
        request: SandboxExecutionRequest,
    ) -> tuple[list[str], dict[str, str], str]:
        path_entries = [f"{prefix}/bin" for prefix in handle.host_paths]

        if self.isolated:
            env = {
                "PATH": ":".join([*path_entries, "/usr/local/bin", "/usr/bin", "/bin"]),
                "HOME": SANDBOX_ROOT,
                "TMPDIR": "/tmp",
                "LANG": "C.UTF-8",
                **handle.env,
                **request.env,
            }
            argv = build_bwrap_command(
                handle.argv(f"{SANDBOX_ROOT}/{script_name}"),
                scratch_dir=run_dir,
                allowed_paths=[*request.allowed_paths, *handle.host_paths],
                env=env,
            )
            return argv, {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}, str(run_dir)

        env = {
            "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
            "HOME": str(run_dir.resolve()),
            "LANG": os.environ.get("LANG", "C.UTF-8"),
            **handle.env,
            **request.env,
        }
        argv = handle.argv(str((run_dir / script_name).resolve()))
        return argv, env, str(run_dir)

    async def _spawn(
        self,
        argv: list[str],
        env: dict[str, str],
        cwd: str,
        timeout_s: float,
        run_dir: Path,
    ) -> SandboxExecutionResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            return self._executor_failure(
                f"failed to start process: {e}", reason="spawn", run_dir=run_dir
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError:
            await self._kill_process_tree(process)
            self.logger.warning(
                "sandbox.timeout",
                run_dir=str(run_dir),
                timeout_seconds=timeout_s,
            )
            return SandboxExecutionResult(
                success=False,
                exit_code=-1,
                stdout="",
                stderr=TIMEOUT_MESSAGE,
                isolated=self.isolated,
                run_dir=str(run_dir),
                timed_out=True,
            )
        except asyncio.CancelledError:
            await self._kill_process_tree(process)
            raise

        exit_code = process.returncode if process.returncode is not None else -1
        result = SandboxExecutionResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
            stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
            isolated=self.isolated,
            run_dir=str(run_dir),
        )

        if result.success:
            self.logger.info("sandbox.execution_completed", run_dir=str(run_dir))
        else:
            self.logger.info(
                "sandbox.execution_failed",
                run_dir=str(run_dir),
                exit_code=exit_code,
                stderr=result.stderr[:200],
            )
        return result

    async def _kill_process_tree(self, process: asyncio.subprocess.Process) -> None:
        """
        Kill the whole process group started for an execution.

        The group is signalled even when the leader already exited, since
        background children keep running in it.
        """
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            elif process.returncode is None:
                process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    def _executor_failure(
        self,
        diagnostic: str,
        reason: str,
        run_dir: Path | None = None,
    ) -> SandboxExecutionResult:
        self.logger.error(
            "sandbox.executor_failure",
            reason=reason,
            diagnostic=diagnostic,
            run_dir=str(run_dir) if run_dir else None,
        )
        return SandboxExecutionResult(
            success=False,
            exit_code=-1,
            stdout="",
            stderr=diagnostic,
            isolated=self.isolated,
            run_dir=str(run_dir) if run_dir else None,
        )

    async def _write_transcript(
        self,
        run_dir: Path,
        request: SandboxExecutionRequest,
        language: str,
        result: SandboxExecutionResult,
    ) -> None:
        try:
            async with aiofiles.open(run_dir / "stdout.log", "w", encoding="utf-8") as f:
                await f.write(result.stdout)
            async with aiofiles.open(run_dir / "stderr.log", "w", encoding="utf-8") as f:
                await f.write(result.stderr)
            record = {
                "name": request.name,
                "language": language,
                "session_id": request.session_id,
                "scenario_id": request.scenario_id,
                "allowed_paths": request.allowed_paths,
                "env_keys": sorted(request.env),
                "finished_at": datetime.now(timezone.utc).isoformat(),
                "result": result.to_dict(),
            }
            async with aiofiles.open(run_dir / "result.json", "w", encoding="utf-8") as f:
                await f.write(json.dumps(record, indent=2, ensure_ascii=False))
        except OSError as e:
            self.logger.error("sandbox.transcript_write_failed", run_dir=str(run_dir), error=str(e))
