"""
LONGRUN Progress Log — The Handoff Note

What a fresh session reads first to learn what happened before it.

Two files:
  .longrun/progress.jsonl   structured entries, one per line (authoritative)
  progress.txt              the human journal, appended from the same entries

The journal parser exists for journals that predate the structured log;
once structured records exist they win.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from longrun.sessions import AGENT_TYPES, AgentType
from longrun.storage import CamelModel, append_line, atomic_write_text, read_jsonl, utc_now

SESSION_MARKER = "### Session:"
RECENT_WINDOW = 5


class ProgressEntry(CamelModel):
    timestamp: datetime | None = Field(default_factory=utc_now)
    session_id: str
    agent_type: AgentType | None = None
    summary: str = ""
    feature_worked_on: str | None = None
    feature_completed: bool | None = None
    files_modified: list[str] = Field(default_factory=list)
    tests_run: int = 0
    tests_passed: int = 0
    issues_encountered: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)

    @property
    def made_progress(self) -> bool:
        return bool(self.feature_completed) or self.tests_passed > 0


class ProgressSnapshot(BaseModel):
    total_sessions: int = 0
    total_features_completed: int = 0
    current_streak: int = 0
    last_session_at: datetime | None = None
    recent: list[ProgressEntry] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Journal format
# ---------------------------------------------------------------------------

def journal_header(project_name: str) -> str:
    return (
        f"# Progress Log: {project_name}\n"
        "\n"
        "This file tracks the progress of long-running agent sessions.\n"
        "Each session adds an entry to help the next session understand what was done.\n"
        "\n"
        f"Created: {utc_now().isoformat()}\n"
        f"{'=' * 80}\n"
        "\n"
        "## SESSION LOG\n"
        "\n"
    )


def format_entry(entry: ProgressEntry) -> str:
    lines = [f"{SESSION_MARKER} {entry.session_id}"]
    if entry.timestamp:
        lines.append(f"**Time:** {entry.timestamp.isoformat()}")
    if entry.agent_type:
        lines.append(f"**Agent Type:** {entry.agent_type}")
    lines += ["", f"**Summary:** {entry.summary}", ""]

    if entry.feature_worked_on:
        lines.append(f"**Feature:** {entry.feature_worked_on}")
        if entry.feature_completed is not None:
            lines.append(f"**Status:** {'Completed' if entry.feature_completed else 'In Progress'}")
        lines.append("")

    if entry.files_modified:
        lines.append(f"**Files Modified:** {len(entry.files_modified)}")
        lines.extend(f"  - {path}" for path in entry.files_modified)
        lines.append("")

    if entry.tests_run > 0:
        rate = round(entry.tests_passed * 100 / entry.tests_run)
        lines.append(f"**Tests:** {entry.tests_passed}/{entry.tests_run} passed ({rate}%)")
        lines.append("")

    if entry.issues_encountered:
        lines.append("**Issues Encountered:**")
        lines.extend(f"  - {issue}" for issue in entry.issues_encountered)
        lines.append("")

    if entry.next_steps:
        lines.append("**Next Steps:**")
        lines.extend(f"  - {step}" for step in entry.next_steps)
        lines.append("")

    lines += ["---", ""]
    return "\n".join(lines)


_LABEL = re.compile(r"^\*\*(?P<label>[^*]+):\*\*\s*(?P<value>.*)$")
_TESTS = re.compile(r"(\d+)/(\d+)")
_LIST_FIELDS = {
    "Files Modified": "files_modified",
    "Issues Encountered": "issues_encountered",
    "Next Steps": "next_steps",
}


def _parse_time(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_section(section: str) -> ProgressEntry | None:
    lines = section.strip().splitlines()
    if not lines or not lines[0].split():
        return None

    fields: dict = {
        "session_id": lines[0].split()[0],
        "timestamp": None,
        "files_modified": [],
        "issues_encountered": [],
        "next_steps": [],
    }
    current_list: str | None = None

    for line in lines[1:]:
        stripped = line.strip()
        if stripped == "---":
            break
        if stripped.startswith("- ") and current_list:
            fields[current_list].append(stripped[2:].strip())
            continue

        match = _LABEL.match(stripped)
        if not match:
            continue
        label, value = match.group("label").strip(), match.group("value").strip()
        current_list = _LIST_FIELDS.get(label)

        if label == "Time":
            fields["timestamp"] = _parse_time(value)
        elif label == "Agent Type" and value in AGENT_TYPES:
            fields["agent_type"] = value
        elif label == "Summary":
            fields["summary"] = value
        elif label == "Feature":
            fields["feature_worked_on"] = value
        elif label == "Status":
            fields["feature_completed"] = "Completed" in value
        elif label == "Tests":
            tests = _TESTS.search(value)
            if tests:
                fields["tests_passed"] = int(tests.group(1))
                fields["tests_run"] = int(tests.group(2))

    try:
        return ProgressEntry(**fields)
    except ValidationError:
        return None


def parse_journal(text: str) -> list[ProgressEntry]:
    """
    Re-parse a prose journal into entries.

    Missing fields stay at their defaults; the session id is the first token
    after the marker even when the header line is otherwise malformed.
    """
    entries = []
    for section in text.split(SESSION_MARKER)[1:]:
        entry = _parse_section(section)
        if entry is not None:
            entries.append(entry)
    return entries


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ProgressLog:
    def __init__(self, journal_path: Path, records_path: Path):
        self.journal_path = journal_path
        self.records_path = records_path

    def initialize(self, project_name: str, overwrite: bool = False) -> bool:
        """Write the journal header. Returns False if a journal already exists."""
        if self.journal_path.exists() and not overwrite:
            return False
        atomic_write_text(self.journal_path, journal_header(project_name))
        return True

    def record(self, entry: ProgressEntry) -> None:
        payload = entry.model_dump(mode="json", by_alias=True, exclude_none=True)
        append_line(self.records_path, json.dumps(payload, ensure_ascii=False))
        with open(self.journal_path, "a", encoding="utf-8") as f:
            f.write(format_entry(entry))
        logger.debug(f"[PROGRESS] Recorded {entry.session_id}")

    def add_note(self, note: str) -> None:
        with open(self.journal_path, "a", encoding="utf-8") as f:
            f.write(f"\n### Note [{utc_now().isoformat()}]\n{note}\n---\n")

    def entries(self) -> list[ProgressEntry]:
        records = read_jsonl(self.records_path)
        if records:
            entries = []
            for record in records:
                try:
                    entries.append(ProgressEntry.model_validate(record))
                except ValidationError:
                    logger.warning("[PROGRESS] Skipping invalid progress record")
            return entries

        if self.journal_path.exists():
            return parse_journal(self.journal_path.read_text(encoding="utf-8"))
        return []

    def snapshot(self, recent_window: int = RECENT_WINDOW) -> ProgressSnapshot:
        entries = self.entries()

        streak = 0
        for entry in reversed(entries):
            if not entry.made_progress:
                break
            streak += 1

        issues: list[str] = []
        for entry in entries:
            for issue in entry.issues_encountered:
                if issue not in issues:
                    issues.append(issue)

        return ProgressSnapshot(
            total_sessions=len(entries),
            total_features_completed=sum(1 for e in entries if e.feature_completed),
            current_streak=streak,
            last_session_at=entries[-1].timestamp if entries else None,
            recent=entries[-recent_window:] if recent_window > 0 else [],
            issues=issues,
        )

    def startup_summary(self) -> str:
        snapshot = self.snapshot()
        lines = [
            "## Current Project Status",
            "",
            f"- **Total Sessions:** {snapshot.total_sessions}",
            f"- **Features Completed:** {snapshot.total_features_completed}",
            f"- **Current Streak:** {snapshot.current_streak} sessions",
        ]
        if snapshot.last_session_at:
            lines.append(f"- **Last Session:** {snapshot.last_session_at.date().isoformat()}")

        if snapshot.issues:
            lines += ["", "### Known Issues"]
            lines.extend(f"- {issue}" for issue in snapshot.issues[:5])

        if snapshot.recent:
            lines += ["", "### Recent Activity"]
            for entry in snapshot.recent:
                day = entry.timestamp.date().isoformat() if entry.timestamp else "unknown"
                lines.append(f"- **{day}:** {entry.summary}")

        return "\n".join(lines)
