"""
Core Domain Models

This module defines the data model of a debugging session:
- Session: one debugging request and everything investigated for it
- ScenarioRun: one hypothesis under investigation by a dedicated agent
- ToolInvocation: an append-only record of a single tool call
- SandboxExecutionRequest / SandboxExecutionResult: ephemeral sandbox I/O

Sessions and scenario runs move through their lifecycles only forward; the
transition helpers enforce that. Snapshots are immutable copies handed out to
callers so that status queries never expose live, mutating state.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from debugforce.core.domain.errors import InvalidTransitionError

NO_HYPOTHESIS_CONFIRMED = "no hypothesis confirmed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class SessionStatus(str, Enum):
    """Lifecycle of a debugging session."""

    PENDING = "pending"
    RUNNING = "running"
    CONCLUDED = "concluded"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.CONCLUDED, SessionStatus.CANCELLED)


class ScenarioStatus(str, Enum):
    """Lifecycle of a scenario agent."""

    SPAWNED = "spawned"
    INVESTIGATING = "investigating"
    CONCLUDED = "concluded"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ScenarioStatus.CONCLUDED,
            ScenarioStatus.FAILED,
            ScenarioStatus.KILLED,
        )


_SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.PENDING: {SessionStatus.RUNNING, SessionStatus.CANCELLED},
    SessionStatus.RUNNING: {SessionStatus.CONCLUDED, SessionStatus.CANCELLED},
    SessionStatus.CONCLUDED: set(),
    SessionStatus.CANCELLED: set(),
}

_SCENARIO_TRANSITIONS: dict[ScenarioStatus, set[ScenarioStatus]] = {
    ScenarioStatus.SPAWNED: {
        ScenarioStatus.INVESTIGATING,
        ScenarioStatus.FAILED,
        ScenarioStatus.KILLED,
    },
    ScenarioStatus.INVESTIGATING: {
        ScenarioStatus.CONCLUDED,
        ScenarioStatus.FAILED,
        ScenarioStatus.KILLED,
    },
    ScenarioStatus.CONCLUDED: set(),
    ScenarioStatus.FAILED: set(),
    ScenarioStatus.KILLED: set(),
}


@dataclass
class Observation:
    """Free-text observation added to a session while it is being investigated."""

    text: str
    inserted_at: datetime = field(default_factory=utcnow)


@dataclass
class ToolInvocation:
    """
    Record of a single tool call made by a scenario agent.

    Attributes:
        tool_name: Name of the invoked tool
        arguments: Arguments passed to the tool
        ok: True for Ok(output), False for Err(reason)
        output: Tool output when ok
        error: Failure reason when not ok
        error_code: Taxonomy code of the failure, if known
        timestamp: When the invocation completed
    """

    tool_name: str
    arguments: dict[str, Any]
    ok: bool
    output: Any = None
    error: str | None = None
    error_code: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ScenarioRun:
    """
    One hypothesis under investigation.

    Mutated only by the owning ScenarioAgent, except when the orchestrator
    force-kills it. ``tool_call_log`` only ever grows.
    """

    session_id: str
    hypothesis: str
    id: str = field(default_factory=lambda: new_id("scenario"))
    status: ScenarioStatus = ScenarioStatus.SPAWNED
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    tool_call_log: list[ToolInvocation] = field(default_factory=list)
    conclusion: str | None = None
    confirmed: bool = False
    confidence: float | None = None
    failure_reason: str | None = None
    iterations: int = 0
    latest_log: str | None = None

    def transition(self, new_status: ScenarioStatus) -> None:
        if new_status == self.status:
            return
        if new_status not in _SCENARIO_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Scenario {self.id}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        if new_status.is_terminal:
            self.ended_at = utcnow()

    def record_invocation(self, invocation: ToolInvocation) -> None:
        """Append to the tool call log, keeping it ordered by completion time."""
        if self.tool_call_log and invocation.timestamp < self.tool_call_log[-1].timestamp:
            invocation.timestamp = self.tool_call_log[-1].timestamp
        self.tool_call_log.append(invocation)

    def snapshot(self) -> ScenarioSnapshot:
        return ScenarioSnapshot(
            scenario_id=self.id,
            hypothesis=self.hypothesis,
            status=self.status,
            latest_log=self.latest_log,
            conclusion=self.conclusion,
            confirmed=self.confirmed,
            confidence=self.confidence,
            failure_reason=self.failure_reason,
            tool_calls=len(self.tool_call_log),
            iterations=self.iterations,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )


@dataclass
class Session:
    """
    One debugging request.

    Owned by the MotherOrchestrator; the session store only keeps a durable
    projection of it.
    """

    original_error: str
    repo_path: str
    context: str = ""
    language: str | None = None
    file_path: str | None = None
    id: str = field(default_factory=lambda: new_id("session"))
    status: SessionStatus = SessionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    observations: list[Observation] = field(default_factory=list)
    scenarios: dict[str, ScenarioRun] = field(default_factory=dict)
    summary: SessionSummary | None = None

    def transition(self, new_status: SessionStatus) -> None:
        if new_status == self.status:
            return
        if new_status not in _SESSION_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Session {self.id}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status

    def add_observation(self, text: str) -> Observation:
        observation = Observation(text=text)
        self.observations.append(observation)
        return observation

    def add_scenario(self, run: ScenarioRun) -> None:
        if run.session_id != self.id:
            raise ValueError(f"Scenario {run.id} belongs to session {run.session_id}")
        self.scenarios[run.id] = run

    @property
    def all_scenarios_terminal(self) -> bool:
        return all(run.status.is_terminal for run in self.scenarios.values())

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.id,
            status=self.status,
            original_error=self.original_error,
            repo_path=self.repo_path,
            created_at=self.created_at,
            observations=tuple(o.text for o in self.observations),
            scenarios=tuple(run.snapshot() for run in self.scenarios.values()),
            summary=self.summary,
        )

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Rebuild a session from its persisted projection."""
        session = cls(
            original_error=data["original_error"],
            repo_path=data["repo_path"],
            context=data.get("context", ""),
            language=data.get("language"),
            file_path=data.get("file_path"),
            id=data["id"],
            status=SessionStatus(data["status"]),
            created_at=_parse_dt(data["created_at"]),
        )
        session.observations = [
            Observation(text=o["text"], inserted_at=_parse_dt(o["inserted_at"]))
            for o in data.get("observations", [])
        ]
        for run_data in data.get("scenarios", {}).values():
            run = ScenarioRun(
                session_id=session.id,
                hypothesis=run_data["hypothesis"],
                id=run_data["id"],
                status=ScenarioStatus(run_data["status"]),
                started_at=_parse_dt(run_data["started_at"]),
                ended_at=_parse_dt(run_data.get("ended_at")),
                conclusion=run_data.get("conclusion"),
                confirmed=run_data.get("confirmed", False),
                confidence=run_data.get("confidence"),
                failure_reason=run_data.get("failure_reason"),
                iterations=run_data.get("iterations", 0),
                latest_log=run_data.get("latest_log"),
            )
            run.tool_call_log = [
                ToolInvocation(
                    tool_name=inv["tool_name"],
                    arguments=inv.get("arguments", {}),
                    ok=inv["ok"],
                    output=inv.get("output"),
                    error=inv.get("error"),
                    error_code=inv.get("error_code"),
                    timestamp=_parse_dt(inv["timestamp"]),
                )
                for inv in run_data.get("tool_call_log", [])
            ]
            session.scenarios[run.id] = run
        if data.get("summary"):
            session.summary = SessionSummary.from_dict(data["summary"])
        return session


@dataclass(frozen=True)
class ScenarioSnapshot:
    scenario_id: str
    hypothesis: str
    status: ScenarioStatus
    latest_log: str | None
    conclusion: str | None
    confirmed: bool
    confidence: float | None
    failure_reason: str | None
    tool_calls: int
    iterations: int
    started_at: datetime
    ended_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScenarioSnapshot:
        return cls(
            scenario_id=data["scenario_id"],
            hypothesis=data["hypothesis"],
            status=ScenarioStatus(data["status"]),
            latest_log=data.get("latest_log"),
            conclusion=data.get("conclusion"),
            confirmed=data.get("confirmed", False),
            confidence=data.get("confidence"),
            failure_reason=data.get("failure_reason"),
            tool_calls=data.get("tool_calls", 0),
            iterations=data.get("iterations", 0),
            started_at=_parse_dt(data["started_at"]),
            ended_at=_parse_dt(data.get("ended_at")),
        )


@dataclass(frozen=True)
class SessionSummary:
    """
    Aggregated outcome of a session.

    All conclusions are presented; nothing is discarded when hypotheses
    disagree. ``conflict`` is set when more than one scenario confirmed its
    hypothesis.
    """

    verdict: str
    confirmed_hypotheses: tuple[str, ...]
    conflict: bool
    outcomes: tuple[ScenarioSnapshot, ...]

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSummary:
        return cls(
            verdict=data["verdict"],
            confirmed_hypotheses=tuple(data.get("confirmed_hypotheses", [])),
            conflict=data.get("conflict", False),
            outcomes=tuple(ScenarioSnapshot.from_dict(o) for o in data.get("outcomes", [])),
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable point-in-time view of a session returned by status queries."""

    session_id: str
    status: SessionStatus
    original_error: str
    repo_path: str
    created_at: datetime
    observations: tuple[str, ...]
    scenarios: tuple[ScenarioSnapshot, ...]
    summary: SessionSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)


def summarize(session: Session) -> SessionSummary:
    """
    Build the "present all conclusions" summary for a session.

    Outcomes are ranked confirmed-first, then by descending confidence.
    """
    outcomes = sorted(
        (run.snapshot() for run in session.scenarios.values()),
        key=lambda s: (not s.confirmed, -(s.confidence or 0.0)),
    )
    confirmed = tuple(
        s.hypothesis
        for s in outcomes
        if s.status == ScenarioStatus.CONCLUDED and s.confirmed
    )

    if not confirmed:
        verdict = NO_HYPOTHESIS_CONFIRMED
    elif len(confirmed) == 1:
        verdict = f"confirmed: {confirmed[0]}"
    else:
        verdict = f"{len(confirmed)} hypotheses confirmed; review all conclusions"

    return SessionSummary(
        verdict=verdict,
        confirmed_hypotheses=confirmed,
        conflict=len(confirmed) > 1,
        outcomes=tuple(outcomes),
    )


@dataclass
class SandboxExecutionRequest:
    """
    Request to run a code snippet in the sandbox.

    Attributes:
        name: Human-readable name, used in the run directory name
        code: Source code or shell script to run
        language: One of shell, python, node, typescript (aliases bash, nodejs)
        allowed_paths: Host paths made visible (read-only) to the execution
        env: Extra environment variables
        timeout_ms: Per-call timeout; non-positive or None selects the default
        session_id: Session owning the logs area
        scenario_id: Scenario issuing the request (one in-flight run per scenario)
    """

    name: str
    code: str
    language: str = "shell"
    allowed_paths: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    timeout_ms: int | None = None
    session_id: str = "adhoc"
    scenario_id: str | None = None


@dataclass
class SandboxExecutionResult:
    success: bool
    exit_code: int
    stdout: str
    stderr: str
    isolated: bool
    run_dir: str | None = None
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-safe structures."""
    if is_dataclass(value) and not isinstance(value, type):
        return {k: to_jsonable(getattr(value, k)) for k in value.__dataclass_fields__}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


def _parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)
