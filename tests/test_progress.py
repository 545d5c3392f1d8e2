import json

import pytest

from longrun.progress import ProgressEntry, ProgressLog, format_entry, parse_journal


@pytest.fixture()
def log(tmp_path) -> ProgressLog:
    return ProgressLog(tmp_path / "progress.txt", tmp_path / ".longrun" / "progress.jsonl")


def _entry(session_id: str, **kwargs) -> ProgressEntry:
    return ProgressEntry(session_id=session_id, agent_type="coding", summary=f"Worked in {session_id}", **kwargs)


def test_initialize_writes_header_once(log):
    assert log.initialize("demo") is True
    assert log.journal_path.read_text().startswith("# Progress Log: demo")
    assert log.initialize("other") is False
    assert "other" not in log.journal_path.read_text()


def test_record_appends_structured_and_journal(log):
    log.initialize("demo")
    log.record(_entry("coding-1", feature_worked_on="F001", feature_completed=True,
                      files_modified=["src/app.ts"], tests_run=3, tests_passed=3))

    line = log.records_path.read_text().strip()
    assert json.loads(line)["featureWorkedOn"] == "F001"

    journal = log.journal_path.read_text()
    assert "### Session: coding-1" in journal
    assert "**Status:** Completed" in journal
    assert "  - src/app.ts" in journal
    assert "**Tests:** 3/3 passed (100%)" in journal


def test_entries_prefer_structured_records(log):
    log.initialize("demo")
    log.record(_entry("coding-1"))
    log.record(_entry("coding-2"))
    assert [e.session_id for e in log.entries()] == ["coding-1", "coding-2"]


def test_journal_parsed_when_no_records(log):
    entry = _entry("coding-7", feature_worked_on="F003", feature_completed=False,
                   tests_run=4, tests_passed=2, issues_encountered=["build check failed"],
                   next_steps=["Fix failing checks for F003"])
    log.journal_path.write_text("# Progress Log: demo\n\n" + format_entry(entry))

    parsed = log.entries()
    assert len(parsed) == 1
    got = parsed[0]
    assert got.session_id == "coding-7"
    assert got.agent_type == "coding"
    assert got.feature_worked_on == "F003"
    assert got.feature_completed is False
    assert (got.tests_passed, got.tests_run) == (2, 4)
    assert got.issues_encountered == ["build check failed"]
    assert got.next_steps == ["Fix failing checks for F003"]


def test_parse_journal_tolerates_sparse_sections():
    text = (
        "### Session: legacy-1 (hand written)\n"
        "**Summary:** Set up the repo\n"
        "---\n"
        "### Session:\n"
        "### Session: legacy-2\n"
        "**Time:** not a date\n"
        "**Summary:** Tried the login page\n"
    )
    entries = parse_journal(text)
    assert [e.session_id for e in entries] == ["legacy-1", "legacy-2"]
    assert entries[0].timestamp is None
    assert entries[1].summary == "Tried the login page"


def test_snapshot_streak_counts_from_latest(log):
    log.initialize("demo")
    log.record(_entry("s1", feature_worked_on="F1", feature_completed=True))
    log.record(_entry("s2", issues_encountered=["lint check failed"]))
    log.record(_entry("s3", tests_run=2, tests_passed=1))
    log.record(_entry("s4", feature_worked_on="F2", feature_completed=True))

    snapshot = log.snapshot(recent_window=2)
    assert snapshot.total_sessions == 4
    assert snapshot.total_features_completed == 2
    assert snapshot.current_streak == 2
    assert [e.session_id for e in snapshot.recent] == ["s3", "s4"]
    assert snapshot.issues == ["lint check failed"]
    assert snapshot.last_session_at is not None


def test_startup_summary(log):
    log.initialize("demo")
    log.record(_entry("s1", feature_completed=True))
    summary = log.startup_summary()
    assert "**Total Sessions:** 1" in summary
    assert "Worked in s1" in summary


def test_add_note(log):
    log.initialize("demo")
    log.add_note("Switched the dev server to port 4000")
    assert "Switched the dev server to port 4000" in log.journal_path.read_text()
    assert log.entries() == []
