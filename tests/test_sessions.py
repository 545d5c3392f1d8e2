import json
from datetime import timedelta

import pytest

from longrun.errors import InvalidTransitionError, NotFoundError
from longrun.sessions import SessionFilter, SessionResult, SessionStore, generate_session_id
from longrun.storage import utc_now


@pytest.fixture()
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / ".agent-sessions")


def test_session_id_format():
    session_id = generate_session_id("coding")
    prefix, day, suffix = session_id.split("-")
    assert prefix == "coding"
    assert len(day) == 8 and day.isdigit()
    assert len(suffix) == 8


def test_create_writes_camel_case_file(store):
    session = store.create("coding", feature_id="F001")
    data = json.loads((store.directory / f"{session.id}.json").read_text())

    assert data["status"] == "pending"
    assert data["featureId"] == "F001"
    assert "startTime" in data


def test_lifecycle_moves_forward_only(store):
    session = store.create("testing")
    assert store.start(session.id).status == "running"

    with pytest.raises(InvalidTransitionError):
        store.start(session.id)

    ended = store.end(session.id, "completed", SessionResult(success=True, summary="ok"))
    assert ended.status == "completed"
    assert ended.end_time is not None
    assert ended.duration_ms is not None

    with pytest.raises(InvalidTransitionError):
        store.end(session.id, "failed")


def test_unknown_session(store):
    assert store.get("coding-20250101-deadbeef") is None
    with pytest.raises(NotFoundError):
        store.start("coding-20250101-deadbeef")


def test_update_metadata_merges(store):
    session = store.create("coding")
    store.update_metadata(session.id, model_used="local", tokens_used=1200)
    store.update_metadata(session.id, tokens_used=1500)

    metadata = store.get(session.id).metadata
    assert metadata.model_used == "local"
    assert metadata.tokens_used == 1500


def test_list_filters_and_skips_unreadable(store):
    coding = store.create("coding")
    store.create("cleanup")
    (store.directory / "broken.json").write_text("{")

    assert len(store.list()) == 2
    assert [s.id for s in store.list(SessionFilter(type="coding"))] == [coding.id]


def test_statistics(store):
    a = store.create("coding")
    store.start(a.id)
    store.end(a.id, "completed", SessionResult(
        success=True, tests_run=3, tests_passed=3, feature_completed=True
    ))
    b = store.create("coding")
    store.start(b.id)
    store.end(b.id, "failed", SessionResult(success=False, tests_run=3, tests_passed=1))

    stats = store.statistics()
    assert stats.total_sessions == 2
    assert stats.completed_sessions == 1
    assert stats.failed_sessions == 1
    assert stats.total_features_completed == 1
    assert stats.test_pass_rate == 67
    assert stats.sessions_by_type["coding"] == 2


def test_cleanup_old_keeps_running_sessions(store):
    old_done = store.create("coding")
    old_running = store.create("coding")
    store.start(old_running.id)
    fresh = store.create("coding")

    stamp = (utc_now() - timedelta(days=45)).isoformat()
    for session_id in (old_done.id, old_running.id):
        path = store.directory / f"{session_id}.json"
        data = json.loads(path.read_text())
        data["startTime"] = stamp
        path.write_text(json.dumps(data))

    assert store.cleanup_old(30) == 1
    remaining = {s.id for s in store.list()}
    assert remaining == {old_running.id, fresh.id}
