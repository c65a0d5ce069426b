"""
Session API Schemas
===================

Pydantic request/response models of the debugging control surface.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from debugforce.core.domain.models import (
    ScenarioSnapshot,
    SessionSnapshot,
    SessionSummary,
)


class StartSessionRequest(BaseModel):
    """Request to start a debugging session."""

    error: str = Field(..., min_length=1, description="Error message or stack trace")
    repo_path: str = Field(..., min_length=1, description="Path of the repository to investigate")
    context: str = ""
    language: Optional[str] = None
    file_path: Optional[str] = None


class StartSessionResponse(BaseModel):
    session_id: str
    status: str


class ObservationRequest(BaseModel):
    text: str = Field(..., min_length=1)


class AcknowledgementResponse(BaseModel):
    acknowledged: bool = True
    status: Optional[str] = None


class ScenarioResponse(BaseModel):
    scenario_id: str
    hypothesis: str
    status: str
    latest_log: Optional[str] = None
    conclusion: Optional[str] = None
    confirmed: bool = False
    confidence: Optional[float] = None
    failure_reason: Optional[str] = None
    tool_calls: int = 0
    iterations: int = 0
    started_at: datetime
    ended_at: Optional[datetime] = None

    @classmethod
    def from_snapshot(cls, snapshot: ScenarioSnapshot) -> "ScenarioResponse":
        return cls(
            scenario_id=snapshot.scenario_id,
            hypothesis=snapshot.hypothesis,
            status=snapshot.status.value,
            latest_log=snapshot.latest_log,
            conclusion=snapshot.conclusion,
            confirmed=snapshot.confirmed,
            confidence=snapshot.confidence,
            failure_reason=snapshot.failure_reason,
            tool_calls=snapshot.tool_calls,
            iterations=snapshot.iterations,
            started_at=snapshot.started_at,
            ended_at=snapshot.ended_at,
        )


class SummaryResponse(BaseModel):
    verdict: str
    confirmed_hypotheses: list[str]
    conflict: bool
    outcomes: list[ScenarioResponse]

    @classmethod
    def from_summary(cls, summary: SessionSummary) -> "SummaryResponse":
        return cls(
            verdict=summary.verdict,
            confirmed_hypotheses=list(summary.confirmed_hypotheses),
            conflict=summary.conflict,
            outcomes=[ScenarioResponse.from_snapshot(o) for o in summary.outcomes],
        )


class SessionStatusResponse(BaseModel):
    """Point-in-time view of a debugging session."""

    session_id: str
    status: str
    original_error: str
    repo_path: str
    created_at: datetime
    observations: list[str]
    scenarios: list[ScenarioResponse]
    summary: Optional[SummaryResponse] = None

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> "SessionStatusResponse":
        return cls(
            session_id=snapshot.session_id,
            status=snapshot.status.value,
            original_error=snapshot.original_error,
            repo_path=snapshot.repo_path,
            created_at=snapshot.created_at,
            observations=list(snapshot.observations),
            scenarios=[ScenarioResponse.from_snapshot(s) for s in snapshot.scenarios],
            summary=SummaryResponse.from_summary(snapshot.summary) if snapshot.summary else None,
        )


class HealthResponse(BaseModel):
    status: str
    details: dict[str, Any] = {}
