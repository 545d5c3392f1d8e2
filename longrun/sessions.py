"""
LONGRUN Session Store — The Logbook

One JSON file per agent invocation in .agent-sessions/. Status only moves
forward: pending -> running -> completed | failed | timeout.

There is no "current session" held here; whoever creates a session keeps
its id and passes it along.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from longrun.errors import CorruptDataError, InvalidTransitionError, LongrunError, NotFoundError
from longrun.storage import CamelModel, read_json, utc_now, write_json

AgentType = Literal["initializer", "coding", "testing", "cleanup"]
SessionStatus = Literal["pending", "running", "completed", "failed", "timeout"]

AGENT_TYPES: tuple[str, ...] = ("initializer", "coding", "testing", "cleanup")
TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed", "timeout")


class SessionMetadata(CamelModel):
    model_used: str | None = None
    tokens_used: int | None = None
    context_window_usage: float | None = None
    tools_invoked: list[str] | None = None
    errors: list[str] | None = None


class SessionResult(CamelModel):
    success: bool
    summary: str = ""
    files_modified: list[str] = Field(default_factory=list)
    tests_run: int = 0
    tests_passed: int = 0
    feature_completed: bool = False


class Session(CamelModel):
    id: str
    type: AgentType
    status: SessionStatus = "pending"
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    feature_id: str | None = None
    parent_session_id: str | None = None
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    result: SessionResult | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def duration_ms(self) -> int | None:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)


class SessionFilter(BaseModel):
    type: AgentType | None = None
    status: SessionStatus | None = None
    feature_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    def matches(self, session: Session) -> bool:
        if self.type and session.type != self.type:
            return False
        if self.status and session.status != self.status:
            return False
        if self.feature_id and session.feature_id != self.feature_id:
            return False
        if self.start_date and session.start_time < self.start_date:
            return False
        if self.end_date and session.start_time > self.end_date:
            return False
        return True


class SessionStatistics(BaseModel):
    total_sessions: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    total_features_completed: int = 0
    total_tests_run: int = 0
    total_tests_passed: int = 0
    test_pass_rate: int = 0
    average_session_duration_ms: float = 0.0
    sessions_by_type: dict[str, int] = Field(default_factory=dict)


def generate_session_id(agent_type: str, now: datetime | None = None) -> str:
    """<type>-<YYYYMMDD>-<8 hex>, e.g. coding-20250114-3f9a1c2e."""
    now = now or utc_now()
    return f"{agent_type}-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8]}"


class SessionStore:
    def __init__(self, directory: Path):
        self.directory = directory

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def _save(self, session: Session) -> Session:
        write_json(self._path(session.id), session)
        return session

    def get(self, session_id: str) -> Session | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            return Session.model_validate(read_json(path))
        except ValidationError as e:
            raise CorruptDataError(path, f"{e.error_count()} validation error(s)") from e

    def _require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    # -- Lifecycle --------------------------------------------------------

    def create(
        self,
        agent_type: AgentType,
        parent_session_id: str | None = None,
        feature_id: str | None = None,
    ) -> Session:
        session = Session(
            id=generate_session_id(agent_type),
            type=agent_type,
            parent_session_id=parent_session_id,
            feature_id=feature_id,
        )
        self._save(session)
        logger.info(f"[SESSION] Created {session.id}")
        return session

    def start(self, session_id: str) -> Session:
        session = self._require(session_id)
        if session.status != "pending":
            raise InvalidTransitionError(session_id, session.status, "running")
        session.status = "running"
        return self._save(session)

    def end(
        self,
        session_id: str,
        status: Literal["completed", "failed", "timeout"],
        result: SessionResult | None = None,
    ) -> Session:
        session = self._require(session_id)
        if status not in TERMINAL_STATUSES or session.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(session_id, session.status, status)
        session.status = status
        session.end_time = utc_now()
        if result is not None:
            session.result = result
        self._save(session)
        logger.info(f"[SESSION] {session_id} ended: {status}")
        return session

    def update_metadata(self, session_id: str, **metadata: Any) -> Session:
        session = self._require(session_id)
        session.metadata = session.metadata.model_copy(update=metadata)
        return self._save(session)

    def set_feature(self, session_id: str, feature_id: str) -> Session:
        session = self._require(session_id)
        session.feature_id = feature_id
        return self._save(session)

    # -- Queries ----------------------------------------------------------

    def list(self, filter: SessionFilter | None = None) -> list[Session]:
        """All readable sessions, newest first. Unreadable files are skipped."""
        if not self.directory.exists():
            return []

        sessions = []
        for path in self.directory.glob("*.json"):
            try:
                session = Session.model_validate(read_json(path))
            except (LongrunError, ValidationError) as e:
                logger.warning(f"[SESSION] Skipping unreadable session file {path.name}: {e}")
                continue
            if filter is None or filter.matches(session):
                sessions.append(session)

        sessions.sort(key=lambda s: s.start_time, reverse=True)
        return sessions

    def recent(self, count: int = 5) -> list[Session]:
        return self.list()[:count]

    def statistics(self) -> SessionStatistics:
        sessions = self.list()
        results = [s.result for s in sessions if s.result is not None]
        tests_run = sum(r.tests_run for r in results)
        tests_passed = sum(r.tests_passed for r in results)
        durations = [s.duration_ms for s in sessions if s.duration_ms is not None]

        return SessionStatistics(
            total_sessions=len(sessions),
            completed_sessions=sum(1 for s in sessions if s.status == "completed"),
            failed_sessions=sum(1 for s in sessions if s.status == "failed"),
            total_features_completed=sum(1 for r in results if r.feature_completed),
            total_tests_run=tests_run,
            total_tests_passed=tests_passed,
            test_pass_rate=round(tests_passed * 100 / tests_run) if tests_run else 0,
            average_session_duration_ms=sum(durations) / len(durations) if durations else 0.0,
            sessions_by_type={t: sum(1 for s in sessions if s.type == t) for t in AGENT_TYPES},
        )

    def cleanup_old(self, days_to_keep: int = 30) -> int:
        """Delete sessions older than the cutoff. Running sessions are kept."""
        cutoff = utc_now() - timedelta(days=days_to_keep)
        deleted = 0
        for session in self.list():
            if session.start_time < cutoff and session.status != "running":
                self._path(session.id).unlink(missing_ok=True)
                deleted += 1
        if deleted:
            logger.info(f"[SESSION] Removed {deleted} session(s) older than {days_to_keep} days")
        return deleted
