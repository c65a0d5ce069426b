"""
Unit tests for SandboxExecutor.

Executions run real subprocesses with isolation disabled so the tests do not
depend on bubblewrap being usable on the host.
"""

import asyncio
import json
import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from debugforce.core.domain.errors import (
    IsolationUnavailableError,
    ProvisioningError,
    UnsupportedLanguageError,
)
from debugforce.core.domain.models import SandboxExecutionRequest
from debugforce.infrastructure.sandbox import executor as executor_module
from debugforce.infrastructure.sandbox.executor import TIMEOUT_MESSAGE, SandboxExecutor
from debugforce.infrastructure.sandbox.isolation import build_bwrap_command
from debugforce.infrastructure.sandbox.provisioner import (
    NixProvisioner,
    create_provisioner,
    normalize_language,
    runtime_prefix,
)

requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def executor(tmp_path):
    return SandboxExecutor(work_dir=str(tmp_path / "work"), isolation="none")


@pytest.fixture
def git_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "app.py").write_text("print('hello')\n")
    git = ["git", "-c", "user.name=Dev", "-c", "user.email=dev@example.com"]
    subprocess.run([*git, "init", "-q"], cwd=repo, check=True)
    subprocess.run([*git, "add", "app.py"], cwd=repo, check=True)
    subprocess.run([*git, "commit", "-q", "-m", "initial commit"], cwd=repo, check=True)
    return repo


class TestLanguages:
    """Tests for language normalization."""

    @pytest.mark.parametrize("alias,canonical", [
        ("bash", "shell"),
        ("nodejs", "node"),
        ("Python", "python"),
        ("typescript", "typescript"),
    ])
    def test_aliases(self, alias, canonical):
        assert normalize_language(alias) == canonical

    def test_unsupported(self):
        with pytest.raises(UnsupportedLanguageError):
            normalize_language("cobol")

    def test_runtime_prefix(self):
        assert runtime_prefix("/usr/bin/env") is None

    def test_unknown_provisioner(self):
        with pytest.raises(ValueError):
            create_provisioner("docker")

    def test_nix_provisioner_wraps_command(self):
        handle = NixProvisioner(nix_shell="/nix/bin/nix-shell").provision("python", "/repo")

        argv = handle.argv("/sandbox/script.py")

        assert argv[:3] == ["/nix/bin/nix-shell", "--pure", "-p"]
        assert "python3" in argv
        assert argv[-2] == "--run"
        assert argv[-1] == "python3 /sandbox/script.py"


class TestExecutorConstruction:
    """Tests for isolation mode handling."""

    def test_unknown_mode(self, tmp_path):
        with pytest.raises(ValueError):
            SandboxExecutor(work_dir=str(tmp_path), isolation="docker")

    def test_required_without_bwrap(self, tmp_path):
        with patch.object(executor_module, "bwrap_available", return_value=False):
            with pytest.raises(IsolationUnavailableError):
                SandboxExecutor(work_dir=str(tmp_path), isolation="required")

    def test_auto_falls_back(self, tmp_path):
        with patch.object(executor_module, "bwrap_available", return_value=False):
            executor = SandboxExecutor(work_dir=str(tmp_path), isolation="auto")
        assert executor.isolated is False

    def test_none_never_isolates(self, executor):
        assert executor.isolated is False
        assert executor.default_timeout_ms == SandboxExecutor.DEFAULT_TIMEOUT_MS


class TestExecute:
    """Tests for code execution."""

    @pytest.mark.asyncio
    async def test_python_exception(self, executor):
        result = await executor.execute(
            SandboxExecutionRequest(name="div", code="print(1/0)", language="python")
        )

        assert result.success is False
        assert result.exit_code != 0
        assert "ZeroDivisionError" in result.stderr
        assert result.isolated is False

    @requires_bash
    @pytest.mark.asyncio
    async def test_shell_success(self, executor):
        result = await executor.execute(
            SandboxExecutionRequest(name="echo", code="echo hello; echo oops >&2", language="bash")
        )

        assert result.success is True
        assert result.exit_code == 0
        assert result.stdout.strip() == "hello"
        assert result.stderr.strip() == "oops"

    @requires_bash
    @pytest.mark.asyncio
    async def test_env_is_passed(self, executor):
        result = await executor.execute(
            SandboxExecutionRequest(name="env", code='echo "$DEBUG_FLAG"', env={"DEBUG_FLAG": "on"})
        )
        assert result.stdout.strip() == "on"

    @requires_bash
    @pytest.mark.asyncio
    async def test_timeout(self, executor):
        result = await executor.execute(
            SandboxExecutionRequest(name="slow", code="sleep 10", timeout_ms=200)
        )

        assert result.success is False
        assert result.timed_out is True
        assert result.stderr == TIMEOUT_MESSAGE

    @requires_bash
    @pytest.mark.asyncio
    async def test_timeout_kills_background_children(self, executor, tmp_path):
        marker = tmp_path / "survived"
        code = f"(sleep 1; echo survived > {marker}) &\nexit 0\n"

        result = await executor.execute(
            SandboxExecutionRequest(name="bg", code=code, timeout_ms=300)
        )
        await asyncio.sleep(1.5)

        assert result.timed_out is True
        assert result.stderr == TIMEOUT_MESSAGE
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_unsupported_language_has_no_side_effects(self, executor):
        with pytest.raises(UnsupportedLanguageError):
            await executor.execute(
                SandboxExecutionRequest(name="x", code="x", language="cobol", session_id="s1")
            )
        assert not (executor.work_dir / "sessions" / "s1").exists()

    @requires_bash
    @pytest.mark.asyncio
    async def test_transcript_written(self, executor):
        result = await executor.execute(
            SandboxExecutionRequest(
                name="audit me", code="echo transcript", session_id="session-1", scenario_id="scenario-1"
            )
        )

        run_dir = Path(result.run_dir)
        assert run_dir.parent == executor.work_dir / "sessions" / "session-1" / "sandbox"
        assert run_dir.name.startswith("audit_me-")
        assert (run_dir / "script.sh").read_text() == "echo transcript"
        assert (run_dir / "stdout.log").read_text().strip() == "transcript"
        record = json.loads((run_dir / "result.json").read_text())
        assert record["scenario_id"] == "scenario-1"
        assert record["result"]["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_provisioning_failure_is_executor_failure(self, tmp_path):
        provisioner = MagicMock()
        provisioner.provision.side_effect = ProvisioningError("No runtime for node found on host")
        executor = SandboxExecutor(work_dir=str(tmp_path), isolation="none", provisioner=provisioner)

        result = await executor.execute(SandboxExecutionRequest(name="n", code="1", language="node"))

        assert result.success is False
        assert result.exit_code == -1
        assert "No runtime for node" in result.stderr

    @pytest.mark.asyncio
    async def test_script_write_failure_is_executor_failure(self, executor):
        with patch.object(executor_module.aiofiles, "open", side_effect=OSError("disk full")):
            result = await executor.execute(
                SandboxExecutionRequest(name="w", code="print(1)", language="python")
            )

        assert result.success is False
        assert result.exit_code == -1
        assert "failed to write script: disk full" in result.stderr


class TestExecuteGit:
    """Tests for git execution."""

    @requires_git
    @pytest.mark.asyncio
    async def test_commands_run_in_order(self, executor, git_repo):
        result = await executor.execute_git(str(git_repo), ["log --oneline", "git status --short"])

        assert result.success is True
        assert result.stdout.index("$ git log --oneline") < result.stdout.index("$ git status --short")
        assert "initial commit" in result.stdout

    @requires_git
    @pytest.mark.asyncio
    async def test_failing_command_sets_exit_code(self, executor, git_repo):
        result = await executor.execute_git(str(git_repo), ["show no-such-ref", "log --oneline"])

        assert result.success is False
        assert result.exit_code != 0
        assert "initial commit" in result.stdout

    @pytest.mark.asyncio
    async def test_empty_command_list(self, executor):
        result = await executor.execute_git("/repo", [])

        assert result.success is False
        assert result.exit_code == -1


class TestExecuteTool:
    """Tests for host tool execution."""

    @requires_bash
    @pytest.mark.asyncio
    async def test_runs_binary_with_args(self, executor):
        result = await executor.execute_tool("echo", ["hello", "world"])

        assert result.success is True
        assert result.stdout.strip() == "hello world"

    @pytest.mark.asyncio
    async def test_missing_binary(self, executor):
        result = await executor.execute_tool("definitely-not-a-real-tool-xyz", [])

        assert result.success is False
        assert result.exit_code == -1
        assert "tool not found" in result.stderr


class TestBwrapCommand:
    """Tests for bubblewrap command construction."""

    def test_isolation_flags(self, tmp_path):
        command = build_bwrap_command(
            ["python3", "/sandbox/script.py"],
            scratch_dir=tmp_path,
            allowed_paths=[str(tmp_path), "/does/not/exist"],
            env={"PATH": "/usr/bin"},
        )

        assert command[0] == "bwrap"
        assert "--unshare-net" in command
        assert "--clearenv" in command
        assert command[-2:] == ["python3", "/sandbox/script.py"]
        bind = command.index("--bind")
        assert command[bind + 1:bind + 3] == [str(tmp_path.resolve()), "/sandbox"]
        assert "/does/not/exist" not in command
        setenv = command.index("--setenv")
        assert command[setenv + 1:setenv + 3] == ["PATH", "/usr/bin"]

    def test_allowed_paths_are_read_only(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()

        command = build_bwrap_command(["true"], tmp_path / "scratch", [str(repo), str(repo)], {})

        pairs = [command[i + 1] for i, arg in enumerate(command) if arg == "--ro-bind"]
        assert pairs.count(str(repo.resolve())) == 1
