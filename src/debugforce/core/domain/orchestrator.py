"""
Mother Orchestrator

Accepts debugging requests and supervises their investigation:
1. StartSession records a pending session and returns its id immediately
2. A supervisor task triages the error with one model call into hypotheses
3. One ScenarioAgent per hypothesis runs concurrently
4. When every scenario is terminal, the session concludes with a summary
   presenting all conclusions

The orchestrator is the only writer of session-level state. Scenario agents
report through an update callback; every session mutation and its
persistence happen under that session's lock.

Cancellation sets each live scenario's kill flag, waits a grace period for
agents to notice it between iterations, then force-cancels stragglers.
"""

import asyncio
import json
import re
from collections.abc import Callable
from typing import Any

import structlog

from debugforce.core.domain.errors import InvalidTransitionError
from debugforce.core.domain.models import (
    ScenarioRun,
    ScenarioStatus,
    Session,
    SessionSnapshot,
    SessionStatus,
    summarize,
)
from debugforce.core.domain.scenario_agent import ScenarioAgent
from debugforce.core.interfaces.llm import LLMProviderProtocol
from debugforce.core.interfaces.session_store import SessionStoreProtocol
from debugforce.core.interfaces.tools import ToolProtocol, ToolRegistryProtocol
from debugforce.core.prompts.debugging_prompts import (
    MOTHER_TRIAGE_PROMPT,
    build_scenario_prompt,
    build_triage_message,
)

ToolFactory = Callable[[Session, ScenarioRun], list[ToolProtocol]]

_JSON_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_triage(content: str | None, max_scenarios: int) -> tuple[str | None, list[str]]:
    """
    Extract (classification, hypotheses) from the triage reply.

    Accepts bare JSON or JSON inside a fenced block. Returns no hypotheses
    when the reply is unusable.
    """
    if not content:
        return None, []
    match = _JSON_FENCE.search(content)
    text = match.group(1) if match else content
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None, []
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None, []
    if not isinstance(data, dict):
        return None, []

    hypotheses = []
    for item in data.get("hypotheses") or []:
        if isinstance(item, dict):
            item = item.get("hypothesis") or item.get("description")
        if isinstance(item, str) and item.strip() and item.strip() not in hypotheses:
            hypotheses.append(item.strip())
    classification = data.get("classification")
    return (classification if isinstance(classification, str) else None), hypotheses[:max_scenarios]


class MotherOrchestrator:
    """
    Spawns, tracks and aggregates scenario agents for debugging sessions.

    Example:
        >>> orchestrator = MotherOrchestrator(llm, store, tool_factory)
        >>> session_id = await orchestrator.start_session("TypeError: x is undefined", "/repo")
        >>> snapshot = await orchestrator.get_status(session_id)
        >>> await orchestrator.add_observation(session_id, "only fails on Node 18")
        >>> await orchestrator.cancel_session(session_id)
    """

    def __init__(
        self,
        llm_provider: LLMProviderProtocol,
        store: SessionStoreProtocol,
        tool_factory: ToolFactory,
        tool_registry: ToolRegistryProtocol | None = None,
        tool_servers: dict[str, str] | None = None,
        mother_model: str = "mother",
        scenario_model: str = "scenario",
        max_scenarios: int = 3,
        match_confidence_threshold: float | None = None,
        kill_grace_seconds: float = 5.0,
        scenario_settings: dict[str, Any] | None = None,
    ):
        """
        Initialize MotherOrchestrator with injected dependencies.

        Args:
            llm_provider: Protocol for LLM completions (triage and scenarios)
            store: Durable session store
            tool_factory: Builds the tool set of one scenario
            tool_registry: Registry whose per-session connections are closed
                when a session ends
            tool_servers: Tool server name -> description, listed in scenario prompts
            mother_model: Model alias for triage
            scenario_model: Model alias for scenario agents
            max_scenarios: Upper bound on hypotheses investigated per session
            match_confidence_threshold: Stop remaining scenarios once one
                confirms its hypothesis with at least this confidence
                (None explores every hypothesis to completion)
            kill_grace_seconds: Time agents get to honor a kill flag
            scenario_settings: Budget overrides passed to every ScenarioAgent
        """
        self.llm_provider = llm_provider
        self.store = store
        self.tool_factory = tool_factory
        self.tool_registry = tool_registry
        self.tool_servers = dict(tool_servers or {})
        self.mother_model = mother_model
        self.scenario_model = scenario_model
        self.max_scenarios = max(1, max_scenarios)
        self.match_confidence_threshold = match_confidence_threshold
        self.kill_grace_seconds = kill_grace_seconds
        self.scenario_settings = dict(scenario_settings or {})
        self.logger = structlog.get_logger().bind(component="mother_orchestrator")

        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._supervisors: dict[str, asyncio.Task] = {}
        self._scenario_tasks: dict[str, dict[str, asyncio.Task]] = {}
        self._kill_events: dict[str, asyncio.Event] = {}
        self._done_events: dict[str, asyncio.Event] = {}
        self._cancel_requested: set[str] = set()

    async def start_session(
        self,
        error: str,
        repo_path: str,
        context: str = "",
        language: str | None = None,
        file_path: str | None = None,
    ) -> str:
        """
        Register a debugging request and start investigating it in the background.

        Returns:
            Session id, immediately retrievable via get_status

        Raises:
            ValueError: If error or repo_path is empty
        """
        if not error or not error.strip():
            raise ValueError("error must not be empty")
        if not repo_path or not repo_path.strip():
            raise ValueError("repo_path must not be empty")

        session = Session(
            original_error=error,
            repo_path=repo_path,
            context=context or "",
            language=language,
            file_path=file_path,
        )
        self._sessions[session.id] = session
        self._locks[session.id] = asyncio.Lock()
        self._done_events[session.id] = asyncio.Event()

        await self._persist(session)
        self._supervisors[session.id] = asyncio.create_task(
            self._run_session(session), name=f"session-{session.id}"
        )
        self.logger.info(
            "session_started",
            session_id=session.id,
            repo_path=repo_path,
            language=language,
        )
        return session.id

    async def get_status(self, session_id: str) -> SessionSnapshot:
        """
        Snapshot of a session; never waits on a running scenario.

        Sessions unknown to this process are served from the session store.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        session = self._sessions.get(session_id)
        if session is not None:
            return session.snapshot()

        session = await self.store.load(session_id)
        for run in session.scenarios.values():
            if run.latest_log is None:
                entries = await self.store.read_log(session_id, run.id)
                if entries:
                    run.latest_log = entries[-1].get("message")
        return session.snapshot()

    async def add_observation(self, session_id: str, text: str) -> None:
        """
        Append an observation; live agents see it on their next iteration.

        Raises:
            SessionNotFoundError: If the session does not exist
            InvalidTransitionError: If the session is no longer being investigated
            ValueError: If text is empty
        """
        if not text or not text.strip():
            raise ValueError("observation text must not be empty")

        session = self._sessions.get(session_id)
        if session is None:
            persisted = await self.store.load(session_id)
            raise InvalidTransitionError(
                f"Session {session_id} is {persisted.status.value} and not active in this process"
            )

        async with self._locks[session_id]:
            if session.status.is_terminal:
                raise InvalidTransitionError(
                    f"Session {session_id} is {session.status.value}; observations are closed"
                )
            session.add_observation(text.strip())
            await self.store.persist(session)

        for run in session.scenarios.values():
            if not run.status.is_terminal:
                await self.store.append_log(
                    session_id, run.id, "observation added", payload={"text": text.strip()}
                )
        self.logger.info("observation_added", session_id=session_id, length=len(text))

    async def cancel_session(self, session_id: str) -> SessionStatus:
        """
        Kill every live scenario and mark the session cancelled.

        Cancelling an already cancelled session is a no-op.

        Raises:
            SessionNotFoundError: If the session does not exist
            InvalidTransitionError: If the session already concluded
        """
        session = self._sessions.get(session_id)
        if session is None:
            return await self._cancel_persisted(session_id)

        if session.status == SessionStatus.CANCELLED:
            return session.status
        if session.status == SessionStatus.CONCLUDED:
            raise InvalidTransitionError(f"Session {session_id} already concluded")

        self._cancel_requested.add(session_id)
        self.logger.info("session_cancel_requested", session_id=session_id)

        supervisor = self._supervisors.get(session_id)
        if session_id not in self._scenario_tasks and supervisor is not None and not supervisor.done():
            # still triaging: nothing to kill yet
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)
            if not self._done_events[session_id].is_set():
                # cancelled before its first step, so it never finalized
                await self._finalize(session)
        else:
            await self._kill_scenarios(session)

        try:
            await asyncio.wait_for(
                self._done_events[session_id].wait(),
                timeout=self.kill_grace_seconds + 10,
            )
        except asyncio.TimeoutError:
            self.logger.error("session_cancel_timeout", session_id=session_id)
        return session.status

    async def wait_for_session(
        self,
        session_id: str,
        timeout: float | None = None,
    ) -> SessionSnapshot:
        """
        Wait until the session is terminal and return its final snapshot.

        Raises:
            SessionNotFoundError: If the session does not exist
            asyncio.TimeoutError: If it is still running after ``timeout`` seconds
        """
        if session_id in self._done_events:
            await asyncio.wait_for(self._done_events[session_id].wait(), timeout=timeout)
        return await self.get_status(session_id)

    async def close(self) -> None:
        """Cancel all live sessions and release tool connections."""
        for session_id, session in list(self._sessions.items()):
            if not session.status.is_terminal:
                await self.cancel_session(session_id)
        if self.tool_registry is not None and hasattr(self.tool_registry, "close"):
            await self.tool_registry.close()
        self.logger.info("orchestrator_closed", sessions=len(self._sessions))

    async def _run_session(self, session: Session) -> None:
        try:
            await self._investigate(session)
        except asyncio.CancelledError:
            if session.id not in self._cancel_requested:
                await self._finalize(session)
                raise
            self.logger.info("session_cancelled_during_triage", session_id=session.id)
        except Exception as e:
            self.logger.error(
                "session_supervisor_failed",
                session_id=session.id,
                error=str(e),
                error_type=type(e).__name__,
            )
        await self._finalize(session)

    async def _investigate(self, session: Session) -> None:
        hypotheses = await self._triage(session)
        if session.id in self._cancel_requested:
            return

        async with self._locks[session.id]:
            session.transition(SessionStatus.RUNNING)
            runs = [ScenarioRun(session_id=session.id, hypothesis=h) for h in hypotheses]
            for run in runs:
                session.add_scenario(run)
                self._kill_events[run.id] = asyncio.Event()
            self._scenario_tasks[session.id] = {
                run.id: asyncio.create_task(
                    self._run_scenario(session, run), name=f"scenario-{run.id}"
                )
                for run in runs
            }
            await self.store.persist(session)

        self.logger.info(
            "scenarios_spawned",
            session_id=session.id,
            count=len(runs),
            hypotheses=[h[:80] for h in hypotheses],
        )
        await self._supervise(session)

    async def _triage(self, session: Session) -> list[str]:
        """Single model call deciding which hypotheses to investigate."""
        messages = [
            {
                "role": "system",
                "content": MOTHER_TRIAGE_PROMPT.format(max_scenarios=self.max_scenarios),
            },
            {
                "role": "user",
                "content": build_triage_message(
                    session.original_error,
                    session.repo_path,
                    context=session.context,
                    language=session.language,
                    file_path=session.file_path,
                    observations=[o.text for o in session.observations],
                ),
            },
        ]
        result = await self.llm_provider.complete(
            messages=messages,
            model=self.mother_model,
            temperature=0.3,
        )

        classification, hypotheses = (None, [])
        if result.get("success"):
            classification, hypotheses = parse_triage(result.get("content"), self.max_scenarios)

        if not hypotheses:
            self.logger.warning(
                "triage_unusable",
                session_id=session.id,
                error=result.get("error"),
                hint="Falling back to a single hypothesis derived from the error",
            )
            hypotheses = [
                "The reported error is caused by the code path named in the error "
                f"message itself: {session.original_error.strip()[:300]}"
            ]

        self.logger.info(
            "triage_complete",
            session_id=session.id,
            classification=classification,
            hypotheses=len(hypotheses),
        )
        return hypotheses

    async def _run_scenario(self, session: Session, run: ScenarioRun) -> None:
        agent = None
        try:
            tools = self.tool_factory(session, run)
            agent = ScenarioAgent(
                run=run,
                session=session,
                llm_provider=self.llm_provider,
                tools=tools,
                store=self.store,
                system_prompt=build_scenario_prompt(
                    run.hypothesis,
                    session.repo_path,
                    language=session.language,
                    tool_servers=self.tool_servers,
                ),
                model_alias=self.scenario_model,
                kill_event=self._kill_events[run.id],
                on_update=lambda _run: self._persist(session),
                **self.scenario_settings,
            )
            await agent.investigate()
        except asyncio.CancelledError:
            if not run.status.is_terminal:
                run.failure_reason = "killed (forced after grace period)"
                run.conclusion = run.conclusion or (agent.partial_conclusion if agent else None)
                run.transition(ScenarioStatus.KILLED)
                run.latest_log = "killed (forced)"
                await self.store.append_log(session.id, run.id, "killed (forced)", level="warning")
                await self._persist(session)
            raise
        except Exception as e:
            self.logger.error(
                "scenario_setup_failed" if agent is None else "scenario_crashed",
                session_id=session.id,
                scenario_id=run.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if not run.status.is_terminal:
                run.failure_reason = f"{type(e).__name__}: {e}"
                run.transition(ScenarioStatus.FAILED)
                run.latest_log = f"failed: {run.failure_reason}"
                await self.store.append_log(
                    session.id, run.id, run.latest_log, level="error",
                    payload={"reason": run.failure_reason},
                )
                await self._persist(session)

    async def _supervise(self, session: Session) -> None:
        pending = set(self._scenario_tasks[session.id].values())
        match_announced = False
        while pending:
            _, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            if pending and not match_announced and self._match_found(session):
                match_announced = True
                self.logger.info(
                    "match_found",
                    session_id=session.id,
                    threshold=self.match_confidence_threshold,
                )
                await self._kill_scenarios(session)

    def _match_found(self, session: Session) -> bool:
        if self.match_confidence_threshold is None:
            return False
        return any(
            run.status == ScenarioStatus.CONCLUDED
            and run.confirmed
            and (run.confidence or 0.0) >= self.match_confidence_threshold
            for run in session.scenarios.values()
        )

    async def _kill_scenarios(self, session: Session) -> None:
        for run in session.scenarios.values():
            if not run.status.is_terminal and run.id in self._kill_events:
                self._kill_events[run.id].set()

        tasks = [
            task
            for task in self._scenario_tasks.get(session.id, {}).values()
            if not task.done()
        ]
        if not tasks:
            return

        _, stragglers = await asyncio.wait(tasks, timeout=self.kill_grace_seconds)
        for task in stragglers:
            task.cancel()
        if stragglers:
            self.logger.warning(
                "scenarios_force_killed", session_id=session.id, count=len(stragglers)
            )
            await asyncio.gather(*stragglers, return_exceptions=True)

    async def _finalize(self, session: Session) -> None:
        if any(not t.done() for t in self._scenario_tasks.get(session.id, {}).values()):
            await self._kill_scenarios(session)

        async with self._locks[session.id]:
            if not session.status.is_terminal:
                if session.id in self._cancel_requested:
                    session.transition(SessionStatus.CANCELLED)
                else:
                    if session.status == SessionStatus.PENDING:
                        session.transition(SessionStatus.RUNNING)
                    session.transition(SessionStatus.CONCLUDED)
            session.summary = summarize(session)
            await self.store.persist(session)
            await self.store.persist_summary(session.id, session.summary)

        if self.tool_registry is not None:
            await self.tool_registry.close_session(session.id)

        self._done_events[session.id].set()
        self.logger.info(
            "session_finished",
            session_id=session.id,
            status=session.status.value,
            verdict=session.summary.verdict,
        )

    async def _cancel_persisted(self, session_id: str) -> SessionStatus:
        """Cancel a session left non-terminal by a previous process."""
        session = await self.store.load(session_id)
        if session.status == SessionStatus.CANCELLED:
            return session.status
        if session.status == SessionStatus.CONCLUDED:
            raise InvalidTransitionError(f"Session {session_id} already concluded")

        for run in session.scenarios.values():
            if not run.status.is_terminal:
                run.failure_reason = "killed (owning process gone)"
                run.transition(ScenarioStatus.KILLED)
        session.transition(SessionStatus.CANCELLED)
        session.summary = summarize(session)
        await self.store.persist(session)
        await self.store.persist_summary(session_id, session.summary)
        self.logger.info("persisted_session_cancelled", session_id=session_id)
        return session.status

    async def _persist(self, session: Session) -> None:
        async with self._locks[session.id]:
            await self.store.persist(session)
