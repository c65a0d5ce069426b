"""
Session Store Protocol

Durable projection of debugging sessions plus an append-only log per
scenario, keyed by ``{session_id}/{scenario_id}``.
"""

from typing import Any, Protocol

from debugforce.core.domain.models import Session, SessionSummary


class SessionStoreProtocol(Protocol):
    """
    Writes never raise; they return False after logging the failure so that
    a full disk cannot take down an investigation.
    """

    async def persist(self, session: Session) -> bool:
        ...

    async def load(self, session_id: str) -> Session:
        """Return the persisted session or raise SessionNotFoundError."""
        ...

    async def append_log(
        self,
        session_id: str,
        scenario_id: str,
        message: str,
        level: str = "info",
        payload: dict[str, Any] | None = None,
    ) -> bool:
        ...

    async def read_log(self, session_id: str, scenario_id: str) -> list[dict[str, Any]]:
        ...

    async def persist_summary(self, session_id: str, summary: SessionSummary) -> bool:
        ...
