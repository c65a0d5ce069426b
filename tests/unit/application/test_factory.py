"""
Unit tests for DebugForceFactory.

Tests verify:
- Profile loading and validation
- Adapter wiring from profile configuration
- Scenario tool set construction
- Error handling for missing or invalid configs
"""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import yaml

from debugforce.application.factory import DebugForceFactory
from debugforce.core.domain.models import ScenarioRun, Session
from debugforce.core.domain.orchestrator import MotherOrchestrator
from debugforce.infrastructure.llm.llm_service import LLMService
from debugforce.infrastructure.persistence.file_session_store import FileSessionStore
from debugforce.infrastructure.sandbox.executor import SandboxExecutor

CONFIG_DIR = Path(__file__).resolve().parents[3] / "configs"


@pytest.fixture
def profile_dir(tmp_path):
    config = {
        "profile": "test",
        "persistence": {"type": "file", "work_dir": str(tmp_path / "work")},
        "orchestrator": {"max_scenarios": 2, "match_confidence_threshold": 0.8, "kill_grace_seconds": 1},
        "scenario": {"max_iterations": 7, "wall_clock_seconds": 60, "unknown_key": True},
        "sandbox": {"isolation": "none", "default_timeout_ms": 1500},
        "tool_servers": {
            "filesystem": {"type": "local", "command": "fs-server", "args": ["{repoPath}"]},
            "tickets": {"type": "remote", "url": "http://localhost:9/sse", "disabled": True},
            "git": {"type": "local", "command": "shadowing-server"},
        },
    }
    (tmp_path / "test.yaml").write_text(yaml.safe_dump(config))
    return tmp_path


class TestDebugForceFactory:
    """Test suite for DebugForceFactory."""

    def test_factory_initialization(self):
        factory = DebugForceFactory(config_dir="configs")
        assert factory.config_dir == Path("configs")

    def test_load_profile_dev(self):
        config = DebugForceFactory(config_dir=str(CONFIG_DIR))._load_profile("dev")

        assert config["profile"] == "dev"
        assert config["persistence"]["type"] == "file"
        assert config["persistence"]["work_dir"] == ".debugforce"
        assert config["sandbox"]["isolation"] == "auto"
        assert config["tool_servers"]["issue-tracker"]["disabled"] is True

    def test_load_profile_prod(self):
        config = DebugForceFactory(config_dir=str(CONFIG_DIR))._load_profile("prod")

        assert config["profile"] == "prod"
        assert config["sandbox"]["isolation"] == "required"

    def test_load_profile_not_found(self):
        factory = DebugForceFactory(config_dir=str(CONFIG_DIR))

        with pytest.raises(FileNotFoundError, match="Profile not found"):
            factory._load_profile("nonexistent")

    def test_create_session_store_file(self, tmp_path):
        factory = DebugForceFactory(config_dir=str(CONFIG_DIR))
        config = {"persistence": {"type": "file", "work_dir": str(tmp_path / "store")}}

        store = factory._create_session_store(config)

        assert isinstance(store, FileSessionStore)
        assert store.work_dir == tmp_path / "store"

    def test_create_session_store_unknown(self):
        factory = DebugForceFactory(config_dir=str(CONFIG_DIR))

        with pytest.raises(ValueError, match="Unknown persistence type"):
            factory._create_session_store({"persistence": {"type": "database"}})

    def test_create_llm_provider_overrides(self):
        factory = DebugForceFactory(config_dir=str(CONFIG_DIR))
        config = {
            "llm": {
                "config_path": str(CONFIG_DIR / "llm_config.yaml"),
                "mother_model": "claude-sonnet-4",
            }
        }

        llm = factory._create_llm_provider(config)

        assert isinstance(llm, LLMService)
        assert llm.models["mother"] == "claude-sonnet-4"
        assert llm.models["scenario"] == "gpt-4.1-mini"

    def test_create_sandbox_executor(self, tmp_path):
        factory = DebugForceFactory(config_dir=str(CONFIG_DIR))
        config = {
            "persistence": {"work_dir": str(tmp_path)},
            "sandbox": {"isolation": "none", "default_timeout_ms": 1500},
        }

        executor = factory._create_sandbox_executor(config)

        assert isinstance(executor, SandboxExecutor)
        assert executor.isolated is False
        assert executor.default_timeout_ms == 1500


class TestCreateOrchestrator:
    """Tests for full orchestrator wiring."""

    def test_wires_profile_settings(self, profile_dir):
        factory = DebugForceFactory(config_dir=str(profile_dir))

        orchestrator = factory.create_orchestrator(profile="test", llm_provider=AsyncMock())

        assert isinstance(orchestrator, MotherOrchestrator)
        assert orchestrator.max_scenarios == 2
        assert orchestrator.match_confidence_threshold == 0.8
        assert orchestrator.kill_grace_seconds == 1
        assert orchestrator.scenario_settings == {"max_iterations": 7, "wall_clock_seconds": 60}
        assert set(orchestrator.tool_servers) == {"filesystem"}

    def test_work_dir_override(self, profile_dir, tmp_path):
        factory = DebugForceFactory(config_dir=str(profile_dir))

        orchestrator = factory.create_orchestrator(
            profile="test", work_dir=str(tmp_path / "other"), llm_provider=AsyncMock()
        )

        assert orchestrator.store.work_dir == tmp_path / "other"

    def test_scenario_tool_set(self, profile_dir):
        factory = DebugForceFactory(config_dir=str(profile_dir))
        orchestrator = factory.create_orchestrator(profile="test", llm_provider=AsyncMock())
        session = Session(original_error="boom", repo_path="/repo")
        run = ScenarioRun(session_id=session.id, hypothesis="h")

        tools = orchestrator.tool_factory(session, run)

        assert [t.name for t in tools] == ["run_code", "git", "run_tool", "filesystem", "conclude"]
        run_code = tools[0]
        assert run_code.scenario_id == run.id
        assert run_code.session_id == session.id
        assert run_code.repo_path == "/repo"
        assert run_code.timeout_ms == 1500
