"""
LONGRUN State Store — The Switch

agent_state.json answers one question at the start of every session:
should I keep running? Reading it never raises. Anything unreadable or
unrecognised falls back toward `pause`, never toward continuing.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from longrun.errors import LongrunError
from longrun.storage import dump_model, read_json, utc_now, write_json


class AgentMode(str, Enum):
    CONTINUOUS = "continuous"
    RUN_ONCE = "run_once"
    RUN_CLEANUP = "run_cleanup"
    PAUSE = "pause"
    TERMINATED = "terminated"

    @classmethod
    def coerce(cls, value: Any) -> tuple["AgentMode", bool]:
        """Map a raw value to a mode. Returns (mode, was_valid); invalid maps to PAUSE."""
        try:
            return cls(value), True
        except ValueError:
            return cls.PAUSE, False


AgentPhase = Literal["initializer", "building", "enhancing", "cleanup", "complete"]
SetBy = Literal["agent", "human", "system"]

_MODE_FIELDS = ("desired_state", "current_state")


class AgentStateRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    desired_state: AgentMode = AgentMode.PAUSE
    current_state: AgentMode = AgentMode.PAUSE
    timestamp: datetime = Field(default_factory=utc_now)
    set_by: SetBy = Field(default="agent", alias="setBy")
    note: str = ""
    phase: AgentPhase | None = None
    current_issue: int | None = None
    restart_count: int | None = None
    last_commit: str | None = None


def default_state(note: str) -> AgentStateRecord:
    return AgentStateRecord(note=note)


class StateStore:
    """Read/write agent_state.json with coercion on read and partial writes."""

    def __init__(self, path: Path):
        self.path = path
        self.last_warnings: list[str] = []

    def _warn(self, message: str) -> None:
        self.last_warnings.append(message)
        logger.warning(f"[STATE] {message}")

    def read(self) -> AgentStateRecord:
        self.last_warnings = []

        if not self.path.exists():
            self._warn(f"{self.path.name} does not exist, using default pause state")
            return default_state("Default state (file did not exist)")

        try:
            raw = read_json(self.path)
        except LongrunError as e:
            self._warn(f"Error reading {self.path.name}: {e.message}, using default pause state")
            return default_state("Read error")

        if not isinstance(raw, dict):
            self._warn(f"{self.path.name} is not an object, using default pause state")
            return default_state("Malformed state file")

        if not raw.get("desired_state") or not raw.get("current_state"):
            self._warn(f"{self.path.name} missing required fields, using default pause state")
            return default_state("Malformed state file")

        data = dict(raw)
        for field in _MODE_FIELDS:
            mode, valid = AgentMode.coerce(data[field])
            if not valid:
                self._warn(f"Unknown {field} '{data[field]}', treating as 'pause'")
            data[field] = mode

        return self._validate_lenient(data)

    def _validate_lenient(self, data: dict[str, Any]) -> AgentStateRecord:
        """Validate, dropping optional fields that do not fit the schema."""
        try:
            return AgentStateRecord.model_validate(data)
        except ValidationError as e:
            bad = {str(err["loc"][0]) for err in e.errors() if err["loc"]}
            for key in sorted(bad):
                self._warn(f"Ignoring invalid {key} value {data.get(key)!r}")
                data.pop(key, None)
            try:
                return AgentStateRecord.model_validate(data)
            except ValidationError:
                self._warn("State file could not be validated, using default pause state")
                return default_state("Malformed state file")

    def write(self, **updates: Any) -> AgentStateRecord:
        """
        Merge a partial update onto the current record and persist it.

        Omitted fields are preserved. An invalid enum value is discarded with
        a warning; the rest of the write still goes through.
        """
        current = self.read()
        merged = dump_model(current)
        set_by = updates.pop("set_by", None) or "agent"

        for key, value in updates.items():
            if key in _MODE_FIELDS:
                mode, valid = AgentMode.coerce(value)
                if not valid:
                    self._warn(f"Attempting to set invalid {key} '{value}', ignoring")
                    continue
                merged[key] = mode.value
                continue
            if key not in AgentStateRecord.model_fields:
                self._warn(f"Unknown state field '{key}', ignoring")
                continue
            candidate = {**merged, key: value}
            try:
                AgentStateRecord.model_validate(candidate)
            except ValidationError:
                self._warn(f"Attempting to set invalid {key} '{value}', ignoring")
                continue
            merged[key] = value

        merged["timestamp"] = utc_now()
        merged["setBy"] = set_by
        try:
            record = AgentStateRecord.model_validate(merged)
        except ValidationError:
            self._warn(f"Invalid set_by '{set_by}', using 'agent'")
            merged["setBy"] = "agent"
            record = AgentStateRecord.model_validate(merged)

        write_json(self.path, record)
        logger.debug(f"[STATE] {self.summary_of(record)}")
        return record

    # -- Shorthands -------------------------------------------------------

    def update_current_state(self, current: AgentMode | str, note: str | None = None) -> AgentStateRecord:
        value = current.value if isinstance(current, AgentMode) else current
        return self.write(current_state=value, note=note or f"State updated to {value}")

    def pause(self, note: str | None = None, set_by: SetBy = "agent") -> AgentStateRecord:
        return self.write(
            desired_state="pause", current_state="pause",
            note=note or "Agent paused", set_by=set_by,
        )

    def start_continuous(self, note: str | None = None, set_by: SetBy = "agent") -> AgentStateRecord:
        return self.write(
            desired_state="continuous", current_state="continuous",
            note=note or "Starting continuous mode", set_by=set_by,
        )

    def request_run_once(self, note: str | None = None, set_by: SetBy = "agent") -> AgentStateRecord:
        return self.write(desired_state="run_once", note=note or "Single run requested", set_by=set_by)

    def request_cleanup(self, note: str | None = None, set_by: SetBy = "agent") -> AgentStateRecord:
        return self.write(
            desired_state="run_cleanup", note=note or "Cleanup session requested", set_by=set_by,
        )

    def terminate(self, note: str | None = None, set_by: SetBy = "agent") -> AgentStateRecord:
        return self.write(
            desired_state="terminated", current_state="terminated",
            note=note or "Agent terminated", set_by=set_by,
        )

    def set_phase(self, phase: AgentPhase, note: str | None = None) -> AgentStateRecord:
        updates: dict[str, Any] = {"phase": phase}
        if note:
            updates["note"] = note
        return self.write(**updates)

    def record_restart(self, last_commit: str | None = None) -> AgentStateRecord:
        count = (self.read().restart_count or 0) + 1
        updates: dict[str, Any] = {"restart_count": count}
        if last_commit:
            updates["last_commit"] = last_commit
        return self.write(**updates)

    # -- Queries ----------------------------------------------------------

    def should_pause(self) -> bool:
        return self.read().desired_state in (AgentMode.PAUSE, AgentMode.TERMINATED)

    def should_continue(self) -> bool:
        return self.read().desired_state == AgentMode.CONTINUOUS

    def is_run_once(self) -> bool:
        return self.read().desired_state == AgentMode.RUN_ONCE

    def is_cleanup_requested(self) -> bool:
        return self.read().desired_state == AgentMode.RUN_CLEANUP

    @staticmethod
    def summary_of(record: AgentStateRecord) -> str:
        return (
            f"desired='{record.desired_state.value}', "
            f"current='{record.current_state.value}', "
            f"phase='{record.phase or 'unknown'}'"
        )

    def summary(self) -> str:
        return self.summary_of(self.read())
