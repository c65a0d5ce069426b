"""
Application Layer - Orchestrator Factory

Dependency injection factory that wires the MotherOrchestrator with its
infrastructure adapters based on a configuration profile.

Key Responsibilities:
- Load configuration profiles (configs/<profile>.yaml)
- Instantiate infrastructure adapters (session store, LLM service, sandbox
  executor, tool client registry)
- Build the per-scenario tool set (sandbox tools, tool server proxies, conclude)
"""

from pathlib import Path
from typing import Any

import structlog
import yaml

from debugforce.core.domain.models import ScenarioRun, Session
from debugforce.core.domain.orchestrator import MotherOrchestrator
from debugforce.core.interfaces.llm import LLMProviderProtocol
from debugforce.core.interfaces.tools import ToolProtocol
from debugforce.core.tools.conclude_tool import ConcludeTool
from debugforce.infrastructure.llm.llm_service import LLMService
from debugforce.infrastructure.persistence.file_session_store import FileSessionStore
from debugforce.infrastructure.sandbox.executor import SandboxExecutor
from debugforce.infrastructure.sandbox.provisioner import create_provisioner
from debugforce.infrastructure.tools.native import (
    GitTool,
    RunCodeTool,
    RunToolTool,
    ToolServerTool,
)
from debugforce.infrastructure.tools.registry import ToolClientRegistry

_RESERVED_TOOL_NAMES = ("run_code", "git", "run_tool", "conclude")

_SCENARIO_SETTINGS = (
    "max_iterations",
    "wall_clock_seconds",
    "max_protocol_errors",
    "max_consecutive_tool_failures",
)


class DebugForceFactory:
    """
    Factory for creating orchestrators with dependency injection.

    Example:
        >>> factory = DebugForceFactory(config_dir="configs")
        >>> orchestrator = factory.create_orchestrator(profile="dev")
    """

    def __init__(self, config_dir: str = "configs"):
        self.config_dir = Path(config_dir)
        self.logger = structlog.get_logger().bind(component="debugforce_factory")

    def create_orchestrator(
        self,
        profile: str = "dev",
        work_dir: str | None = None,
        llm_provider: LLMProviderProtocol | None = None,
    ) -> MotherOrchestrator:
        """
        Create a fully wired MotherOrchestrator.

        Args:
            profile: Configuration profile name
            work_dir: Optional override for the persistence directory
            llm_provider: Optional provider replacing the configured LLMService

        Raises:
            FileNotFoundError: If the profile YAML is missing
            ValueError: If the configuration is invalid
            IsolationUnavailableError: If the profile requires isolation the
                host cannot provide
        """
        config = self._load_profile(profile)
        if work_dir:
            config.setdefault("persistence", {})["work_dir"] = work_dir

        persistence = config.get("persistence") or {}
        orchestrator_config = config.get("orchestrator") or {}
        scenario_config = config.get("scenario") or {}
        self.logger.info(
            "creating_orchestrator",
            profile=profile,
            work_dir=persistence.get("work_dir", ".debugforce"),
        )

        store = self._create_session_store(config)
        llm = llm_provider or self._create_llm_provider(config)
        executor = self._create_sandbox_executor(config)
        registry = self._create_tool_registry(config)

        sandbox_timeout = (config.get("sandbox") or {}).get("default_timeout_ms")

        def tool_factory(session: Session, run: ScenarioRun) -> list[ToolProtocol]:
            return self._create_scenario_tools(
                session, run, executor, registry, timeout_ms=sandbox_timeout
            )

        return MotherOrchestrator(
            llm_provider=llm,
            store=store,
            tool_factory=tool_factory,
            tool_registry=registry,
            tool_servers={
                d.name: d.description
                for d in registry.list_available()
                if not d.disabled and d.name not in _RESERVED_TOOL_NAMES
            },
            max_scenarios=orchestrator_config.get("max_scenarios", 3),
            match_confidence_threshold=orchestrator_config.get("match_confidence_threshold"),
            kill_grace_seconds=orchestrator_config.get("kill_grace_seconds", 5),
            scenario_settings={
                key: scenario_config[key] for key in _SCENARIO_SETTINGS if key in scenario_config
            },
        )

    def _load_profile(self, profile: str) -> dict:
        """
        Load configuration profile from YAML file.

        Raises:
            FileNotFoundError: If profile YAML not found
        """
        profile_path = self.config_dir / f"{profile}.yaml"

        if not profile_path.exists():
            self.logger.error(
                "profile_not_found",
                profile=profile,
                path=str(profile_path),
                hint="Ensure profile YAML exists in configs directory",
            )
            raise FileNotFoundError(f"Profile not found: {profile_path}")

        with open(profile_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}

        self.logger.debug("profile_loaded", profile=profile, config_keys=list(config.keys()))
        return config

    def _create_session_store(self, config: dict) -> FileSessionStore:
        persistence = config.get("persistence") or {}
        persistence_type = persistence.get("type", "file")
        if persistence_type != "file":
            raise ValueError(f"Unknown persistence type: {persistence_type}")
        return FileSessionStore(work_dir=persistence.get("work_dir", ".debugforce"))

    def _create_llm_provider(self, config: dict) -> LLMProviderProtocol:
        llm_config = config.get("llm") or {}
        config_path = llm_config.get("config_path") or str(self.config_dir / "llm_config.yaml")
        return LLMService(
            config_path=config_path,
            model_overrides={
                "mother": llm_config.get("mother_model"),
                "scenario": llm_config.get("scenario_model"),
            },
        )

    def _create_sandbox_executor(self, config: dict) -> SandboxExecutor:
        sandbox = config.get("sandbox") or {}
        persistence = config.get("persistence") or {}
        return SandboxExecutor(
            work_dir=persistence.get("work_dir", ".debugforce"),
            isolation=sandbox.get("isolation", "auto"),
            default_timeout_ms=sandbox.get("default_timeout_ms", SandboxExecutor.DEFAULT_TIMEOUT_MS),
            provisioner=create_provisioner(sandbox.get("provisioner", "host")),
        )

    def _create_tool_registry(self, config: dict) -> ToolClientRegistry:
        tool_servers = config.get("tool_servers") or {}
        registry = ToolClientRegistry.from_config(tool_servers)
        for name in tool_servers:
            if name in _RESERVED_TOOL_NAMES:
                self.logger.warning(
                    "tool_server_name_reserved",
                    tool=name,
                    hint="Rename the server; it is not exposed to agents",
                )
        self.logger.debug(
            "tool_registry_created",
            servers=[d.name for d in registry.list_available()],
            disabled=[d.name for d in registry.list_available() if d.disabled],
        )
        return registry

    def _create_scenario_tools(
        self,
        session: Session,
        run: ScenarioRun,
        executor: SandboxExecutor,
        registry: ToolClientRegistry,
        timeout_ms: int | None = None,
    ) -> list[ToolProtocol]:
        """Tool set of one scenario, bound to its session and scenario ids."""
        bound: dict[str, Any] = {
            "executor": executor,
            "repo_path": session.repo_path,
            "session_id": session.id,
            "scenario_id": run.id,
            "timeout_ms": timeout_ms,
        }
        tools: list[ToolProtocol] = [
            RunCodeTool(**bound),
            GitTool(**bound),
            RunToolTool(**bound),
        ]
        context = {"repo_path": session.repo_path}
        for descriptor in registry.list_available():
            if descriptor.disabled or descriptor.name in _RESERVED_TOOL_NAMES:
                continue
            tools.append(ToolServerTool(registry, descriptor.name, session.id, context))
        tools.append(ConcludeTool())
        return tools
