"""
File-Based Session Store
========================

Durable projection of debugging sessions.

Directory structure:
    <work_dir>/sessions/<session_id>/session.json        latest session projection
    <work_dir>/sessions/<session_id>/<scenario_id>.log   append-only scenario log
    <work_dir>/sessions/<session_id>/summary.json        final summary record

Scenario logs are newline-delimited JSON entries:
    {"timestamp": "...", "level": "info", "message": "...", "payload": {...}}

The store trusts the orchestrator as its only writer and does not validate
beyond structural shape. Writes are serialized per session with an
asyncio.Lock; JSON documents are replaced atomically (temp file + rename).
"""

import asyncio
import json
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from debugforce.core.domain.errors import SessionNotFoundError
from debugforce.core.domain.models import Session, SessionSummary

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

logger = structlog.get_logger()


class FileSessionStore:
    """
    Session store persisting to the local filesystem.

    Example:
        >>> store = FileSessionStore(".debugforce")
        >>> await store.persist(session)
        >>> await store.append_log(session.id, run.id, "step 1: git log")
        >>> restored = await store.load(session.id)
    """

    def __init__(self, work_dir: str = ".debugforce"):
        self.work_dir = Path(work_dir)
        self.sessions_dir = self.work_dir / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}
        self.logger = logger.bind(component="file_session_store")

    def _get_lock(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    def session_dir(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id) or ".." in session_id:
            raise SessionNotFoundError(session_id)
        return self.sessions_dir / session_id

    async def persist(self, session: Session) -> bool:
        async with self._get_lock(session.id):
            try:
                path = self.session_dir(session.id) / "session.json"
                await self._write_json(path, session.to_dict())
                self.logger.debug("session_persisted", session_id=session.id, status=session.status.value)
                return True
            except OSError as e:
                self.logger.error("session_persist_failed", session_id=session.id, error=str(e))
                return False

    async def load(self, session_id: str) -> Session:
        path = self.session_dir(session_id) / "session.json"
        if not path.exists():
            raise SessionNotFoundError(session_id)

        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            self.logger.error("session_file_corrupt", session_id=session_id, error=str(e))
            raise SessionNotFoundError(session_id) from e

        self.logger.debug("session_loaded", session_id=session_id)
        return Session.from_dict(data)

    async def append_log(
        self,
        session_id: str,
        scenario_id: str,
        message: str,
        level: str = "info",
        payload: dict[str, Any] | None = None,
    ) -> bool:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "message": message,
        }
        if payload is not None:
            entry["payload"] = payload

        async with self._get_lock(session_id):
            try:
                path = self._log_path(session_id, scenario_id)
                path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(path, "a", encoding="utf-8") as f:
                    await f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
                return True
            except (OSError, SessionNotFoundError) as e:
                self.logger.error(
                    "scenario_log_append_failed",
                    session_id=session_id,
                    scenario_id=scenario_id,
                    error=str(e),
                )
                return False

    async def read_log(self, session_id: str, scenario_id: str) -> list[dict[str, Any]]:
        path = self._log_path(session_id, scenario_id)
        if not path.exists():
            return []

        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()

        entries = []
        for line in content.splitlines():
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                # a crash mid-append leaves at most one torn trailing line
                self.logger.warning("scenario_log_line_corrupt", session_id=session_id, scenario_id=scenario_id)
        return entries

    async def persist_summary(self, session_id: str, summary: SessionSummary) -> bool:
        async with self._get_lock(session_id):
            try:
                path = self.session_dir(session_id) / "summary.json"
                await self._write_json(path, summary.to_dict())
                self.logger.info("session_summary_persisted", session_id=session_id, verdict=summary.verdict)
                return True
            except OSError as e:
                self.logger.error("session_summary_persist_failed", session_id=session_id, error=str(e))
                return False

    async def load_summary(self, session_id: str) -> SessionSummary | None:
        path = self.session_dir(session_id) / "summary.json"
        if not path.exists():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return SessionSummary.from_dict(json.loads(await f.read()))

    def list_sessions(self) -> list[str]:
        return sorted(
            p.name for p in self.sessions_dir.iterdir() if (p / "session.json").exists()
        )

    def _log_path(self, session_id: str, scenario_id: str) -> Path:
        if not _SAFE_ID.match(scenario_id) or ".." in scenario_id:
            raise SessionNotFoundError(f"{session_id}/{scenario_id}")
        return self.session_dir(session_id) / f"{scenario_id}.log"

    async def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        """Replace ``path`` atomically with ``data`` serialized as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=f".{path.stem}_")
        os.close(temp_fd)
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2, ensure_ascii=False, default=str))
            os.replace(temp_path, path)
        except Exception:
            if Path(temp_path).exists():
                Path(temp_path).unlink()
            raise
