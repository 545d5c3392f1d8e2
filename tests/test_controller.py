import json

import pytest

from longrun.agents import AgentReport, CodingAgent, CodingRequest, NullAgent
from longrun.controller import WorkflowController
from longrun.environment import EnvironmentResult
from longrun.errors import StoreMissingError
from longrun.event_bus import EventBus
from longrun.state import AgentMode
from longrun.verification import CHECK_ORDER, CheckResult, VerificationReport


def report(*failed: str) -> VerificationReport:
    checks = [
        CheckResult(name=name, status="failed" if name in failed else "passed", output=f"{name} output")
        for name in CHECK_ORDER
    ]
    return VerificationReport(
        checks=checks, all_passed=not failed, failed_checks=list(failed), total_duration_ms=5
    )


class FakeEnvironment:
    def __init__(self, success: bool = True):
        self.success = success
        self.calls = 0

    def start(self) -> EnvironmentResult:
        self.calls += 1
        if self.success:
            return EnvironmentResult(True, output="Server running")
        return EnvironmentResult(False, error="http://localhost:3000 did not respond")


class FakeVerifier:
    def __init__(self, *reports: VerificationReport):
        self.reports = list(reports)
        self.calls = 0

    def run(self) -> VerificationReport:
        self.calls += 1
        if len(self.reports) > 1:
            return self.reports.pop(0)
        return self.reports[0]


class ScriptedAgent(CodingAgent):
    def __init__(self, *reports: AgentReport):
        self.reports = list(reports) or [AgentReport(success=True)]
        self.requests: list[CodingRequest] = []

    def run(self, request: CodingRequest) -> AgentReport:
        self.requests.append(request)
        if len(self.reports) > 1:
            return self.reports.pop(0)
        return self.reports[0]


@pytest.fixture()
def seeded(project, make_feature):
    project.features.initialize("app", [make_feature("F001", 10), make_feature("F002", 20)])
    return project


def _controller(project, agent=None, env=None, verifier=None, bus=None):
    return WorkflowController(
        project,
        agent or NullAgent(),
        environment=env or FakeEnvironment(),
        verifier=verifier or FakeVerifier(report()),
        bus=bus,
    )


def test_missing_feature_list_raises(project):
    with pytest.raises(StoreMissingError):
        _controller(project).run()
    assert project.sessions.list() == []


def test_first_pass_success_marks_feature_complete(seeded):
    result = _controller(seeded).run()

    assert result.success is True
    assert result.status == "completed"
    assert result.feature_id == "F001"
    assert result.feature_completed is True
    assert result.iterations == 1
    assert [s.name for s in result.steps] == ["init", "select", "code", "verify"]

    feature = seeded.features.get("F001")
    assert feature.passes is True
    assert "lint: PASS" in feature.verification_notes
    assert seeded.features.next_incomplete().id == "F002"


def test_success_closes_session_and_records_progress(seeded):
    result = _controller(seeded).run()

    session = seeded.sessions.get(result.session_id)
    assert session.status == "completed"
    assert session.feature_id == "F001"
    assert session.result.feature_completed is True
    assert session.result.tests_run == 3

    entries = seeded.progress.entries()
    assert entries[-1].session_id == result.session_id
    assert entries[-1].feature_completed is True
    assert seeded.state.read().phase == "building"


def test_retry_then_pass(seeded):
    agent = ScriptedAgent()
    verifier = FakeVerifier(report("build"), report())
    result = _controller(seeded, agent=agent, verifier=verifier).run()

    assert result.status == "completed"
    assert result.iterations == 2
    assert verifier.calls == 2
    assert agent.requests[0].previous_failure is None
    assert "build: FAILED" in agent.requests[1].previous_failure


def test_retries_exhausted(seeded):
    agent = ScriptedAgent()
    result = _controller(seeded, agent=agent, verifier=FakeVerifier(report("build"))).run()

    assert result.success is False
    assert result.status == "failed"
    assert result.iterations == seeded.config.workflow.max_iterations
    assert result.failed_checks == ["build"]
    assert len(agent.requests) == 3
    assert [s.name for s in result.steps] == ["init", "select"] + ["code", "verify"] * 3
    assert seeded.features.get("F001").passes is False
    assert seeded.sessions.get(result.session_id).status == "failed"
    assert "build check failed" in seeded.progress.entries()[-1].issues_encountered


def test_agent_failure_retries_without_verifying(seeded):
    agent = ScriptedAgent(AgentReport(success=False, summary="compile error"), AgentReport(success=True))
    verifier = FakeVerifier(report())
    result = _controller(seeded, agent=agent, verifier=verifier).run()

    assert result.status == "completed"
    assert result.iterations == 2
    assert verifier.calls == 1
    assert agent.requests[1].previous_failure == "compile error"


def test_agent_abort_stops_immediately(seeded):
    agent = ScriptedAgent(AgentReport(success=False, abort=True, summary="cannot continue"))
    verifier = FakeVerifier(report())
    result = _controller(seeded, agent=agent, verifier=verifier).run()

    assert result.status == "aborted"
    assert result.success is False
    assert result.iterations == 1
    assert verifier.calls == 0


def test_environment_failure_aborts_before_coding(seeded):
    agent = ScriptedAgent()
    result = _controller(seeded, agent=agent, env=FakeEnvironment(success=False)).run()

    assert result.status == "failed"
    assert result.feature_id is None
    assert [s.name for s in result.steps] == ["init"]
    assert agent.requests == []
    assert seeded.features.get("F001").last_attempted_at is None


def test_nothing_to_do_when_all_features_pass(project, make_feature):
    project.features.initialize("app", [make_feature("F001", passes=True)])
    result = _controller(project).run()

    assert result.success is True
    assert result.status == "nothing_to_do"
    assert project.state.read().phase == "complete"


def test_run_once_reverts_to_pause(seeded):
    seeded.state.request_run_once(set_by="human")
    _controller(seeded).run()

    record = seeded.state.read()
    assert record.desired_state == AgentMode.PAUSE
    assert record.current_state == AgentMode.PAUSE


def test_continuous_sets_current_state(seeded):
    seeded.state.write(desired_state="continuous")
    _controller(seeded).run()
    assert seeded.state.read().current_state == AgentMode.CONTINUOUS


def test_events_are_emitted(seeded):
    bus = EventBus()
    seen = []
    bus.subscribe(lambda event: seen.append(event.event_type))
    _controller(seeded, bus=bus).run()

    assert seen[0] == "workflow_started"
    assert seen.count("step_completed") == 4
    assert "feature_completed" in seen
    assert seen[-1] == "workflow_finished"


def test_auto_mark_disabled_leaves_feature_failing(seeded):
    seeded.config.workflow.auto_mark_complete = False
    result = _controller(seeded).run()

    assert result.status == "completed"
    assert result.feature_completed is False
    assert seeded.features.get("F001").passes is False


def test_session_files_are_camel_case(seeded):
    result = _controller(seeded).run()
    data = json.loads((seeded.sessions.directory / f"{result.session_id}.json").read_text())
    assert data["result"]["featureCompleted"] is True
    assert "endTime" in data
