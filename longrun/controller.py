"""
LONGRUN Workflow Controller — The Loop

One invocation, four steps:

  1. Init     start the environment, wait for liveness   (failure: abort)
  2. Select   next incomplete feature                     (none: nothing to do)
  3. Code     hand the feature to the coding agent        (failure: retry)
  4. Verify   lint + build + behavior                     (failure: retry)

Steps 3 and 4 repeat at most `max_iterations` times. `abort` always stops
immediately. Persisted state written along the way is not rolled back;
the next session picks up from whatever is on disk.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Literal, Protocol

from loguru import logger
from pydantic import BaseModel, Field

from longrun.agents import CodingAgent, CodingRequest
from longrun.coordinator import ROLE_BRIEFS
from longrun.environment import Environment, EnvironmentResult
from longrun.errors import StoreMissingError
from longrun.event_bus import EventBus
from longrun.features import Feature, VerificationStep
from longrun.progress import ProgressEntry
from longrun.project import Project
from longrun.sessions import SessionResult
from longrun.state import AgentMode
from longrun.storage import utc_now
from longrun.verification import VerificationReport, VerificationRunner

NextAction = Literal["continue", "retry", "abort"]
WorkflowState = Literal[
    "idle", "initializing", "selecting", "coding", "verifying", "completed", "failed"
]

STEP_NAMES = {1: "init", 2: "select", 3: "code", 4: "verify"}


class WorkflowContext(BaseModel):
    """Ephemeral state of one controller invocation."""
    session_id: str
    current_step: int = 1
    state: WorkflowState = "idle"
    feature_id: str | None = None
    iteration: int = 0
    max_iterations: int = 3
    started_at: datetime = Field(default_factory=utc_now)
    last_step_completed_at: datetime | None = None

    def describe(self) -> str:
        return f"Step {self.current_step}: {STEP_NAMES[self.current_step]} ({self.state})"


class StepResult(BaseModel):
    step: int
    name: str
    success: bool
    output: str = ""
    error: str | None = None
    duration_ms: int = 0
    next_action: NextAction = "continue"


class WorkflowResult(BaseModel):
    session_id: str
    success: bool
    status: Literal["completed", "failed", "aborted", "nothing_to_do"]
    feature_completed: bool = False
    feature_id: str | None = None
    iterations: int = 0
    steps: list[StepResult] = Field(default_factory=list)
    verification: VerificationReport | None = None
    failed_checks: list[str] = Field(default_factory=list)
    last_output: str = ""
    files_modified: list[str] = Field(default_factory=list)
    total_duration_ms: int = 0


class EnvironmentStarter(Protocol):
    def start(self) -> EnvironmentResult: ...


class Verifier(Protocol):
    def run(self) -> VerificationReport: ...


def _ms_since(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class WorkflowController:
    def __init__(
        self,
        project: Project,
        agent: CodingAgent,
        environment: EnvironmentStarter | None = None,
        verifier: Verifier | None = None,
        bus: EventBus | None = None,
    ):
        self.project = project
        self.agent = agent
        cfg = project.config
        self.environment = environment or Environment(project.root, cfg.environment, project.log_dir)
        self.verifier = verifier or VerificationRunner(
            project.root, cfg.verification, cfg.environment.base_url
        )
        self.bus = bus or EventBus()
        self.max_iterations = cfg.workflow.max_iterations

    # -- Public -----------------------------------------------------------

    def run(self) -> WorkflowResult:
        features = self.project.features
        if not features.exists():
            raise StoreMissingError(features.path)

        sessions = self.project.sessions
        session = sessions.create("coding")
        sessions.start(session.id)
        ctx = WorkflowContext(session_id=session.id, max_iterations=self.max_iterations)
        self.bus.emit("workflow_started", {"max_iterations": ctx.max_iterations}, ctx.session_id)
        logger.info(f"[WORKFLOW] Session {ctx.session_id} started")

        try:
            result = self._execute(ctx)
        except Exception as e:
            sessions.end(ctx.session_id, "failed", SessionResult(success=False, summary=str(e)))
            self.bus.emit("workflow_finished", {"status": "error", "error": str(e)}, ctx.session_id)
            raise

        self._finish(ctx, result)
        return result

    # -- Steps ------------------------------------------------------------

    def _record(self, ctx: WorkflowContext, steps: list[StepResult], step: StepResult) -> StepResult:
        steps.append(step)
        ctx.last_step_completed_at = utc_now()
        self.bus.emit("step_completed", step.model_dump(), ctx.session_id)
        level = "INFO" if step.success else "WARNING"
        logger.log(level, f"[WORKFLOW] {ctx.describe()}: {'ok' if step.success else step.error}")
        return step

    def _init(self, ctx: WorkflowContext) -> StepResult:
        ctx.current_step, ctx.state = 1, "initializing"
        env = self.environment.start()
        return StepResult(
            step=1,
            name="init",
            success=env.success,
            output=env.output,
            error=env.error,
            duration_ms=env.duration_ms,
            next_action="continue" if env.success else "abort",
        )

    def _select(self, ctx: WorkflowContext) -> tuple[StepResult, Feature | None]:
        ctx.current_step, ctx.state = 2, "selecting"
        start = time.monotonic()
        feature = self.project.features.next_incomplete()
        if feature is None:
            return StepResult(
                step=2,
                name="select",
                success=True,
                output="No incomplete features found",
                duration_ms=_ms_since(start),
                next_action="abort",
            ), None

        ctx.feature_id = feature.id
        self.project.sessions.set_feature(ctx.session_id, feature.id)
        return StepResult(
            step=2,
            name="select",
            success=True,
            output=f"Selected feature: {feature.id} - {feature.description}",
            duration_ms=_ms_since(start),
        ), feature

    def _code(
        self, ctx: WorkflowContext, feature: Feature, previous_failure: str | None
    ) -> tuple[StepResult, list[str]]:
        ctx.current_step, ctx.state = 3, "coding"
        start = time.monotonic()
        self.project.features.mark_attempted(feature.id)
        report = self.agent.run(CodingRequest(
            session_id=ctx.session_id,
            feature=feature,
            iteration=ctx.iteration,
            max_iterations=ctx.max_iterations,
            project_root=str(self.project.root),
            previous_failure=previous_failure,
            brief=ROLE_BRIEFS["coding"],
        ))

        if report.abort:
            next_action: NextAction = "abort"
        elif report.success:
            next_action = "continue"
        else:
            next_action = "retry"
        return StepResult(
            step=3,
            name="code",
            success=report.success and not report.abort,
            output=report.summary,
            error=None if report.success else (report.summary or "Coding agent failed"),
            duration_ms=_ms_since(start),
            next_action=next_action,
        ), report.files_modified

    def _verify(self, ctx: WorkflowContext) -> tuple[StepResult, VerificationReport]:
        ctx.current_step, ctx.state = 4, "verifying"
        report = self.verifier.run()
        return StepResult(
            step=4,
            name="verify",
            success=report.all_passed,
            output=report.describe(),
            error=None if report.all_passed else ", ".join(report.failed_checks),
            duration_ms=report.total_duration_ms,
            next_action="continue" if report.all_passed else "retry",
        ), report

    # -- Orchestration ----------------------------------------------------

    def _execute(self, ctx: WorkflowContext) -> WorkflowResult:
        start = time.monotonic()
        steps: list[StepResult] = []
        files_modified: list[str] = []

        def result(**kwargs) -> WorkflowResult:
            return WorkflowResult(
                session_id=ctx.session_id,
                feature_id=ctx.feature_id,
                iterations=ctx.iteration,
                steps=steps,
                files_modified=files_modified,
                total_duration_ms=_ms_since(start),
                **kwargs,
            )

        init = self._record(ctx, steps, self._init(ctx))
        if init.next_action == "abort":
            ctx.state = "failed"
            return result(success=False, status="failed", last_output=init.error or init.output)

        select, feature = self._select(ctx)
        self._record(ctx, steps, select)
        if feature is None:
            ctx.state = "completed"
            return result(success=True, status="nothing_to_do", last_output=select.output)

        previous_failure: str | None = None
        report: VerificationReport | None = None

        while ctx.iteration < ctx.max_iterations:
            ctx.iteration += 1

            code, files = self._code(ctx, feature, previous_failure)
            self._record(ctx, steps, code)
            files_modified.extend(f for f in files if f not in files_modified)
            if code.next_action == "abort":
                ctx.state = "failed"
                return result(
                    success=False, status="aborted", verification=report,
                    failed_checks=report.failed_checks if report else [],
                    last_output=code.output,
                )
            if not code.success:
                previous_failure = code.error
                continue

            verify, report = self._verify(ctx)
            self._record(ctx, steps, verify)
            if verify.success:
                ctx.state = "completed"
                completed = self._complete_feature(ctx, feature, report)
                return result(
                    success=True, status="completed", feature_completed=completed,
                    verification=report, last_output=verify.output,
                )
            previous_failure = verify.output
            logger.info(f"[WORKFLOW] Iteration {ctx.iteration} failed, retrying")

        ctx.state = "failed"
        return result(
            success=False,
            status="failed",
            verification=report,
            failed_checks=report.failed_checks if report else [],
            last_output=previous_failure or "",
        )

    def _complete_feature(
        self, ctx: WorkflowContext, feature: Feature, report: VerificationReport
    ) -> bool:
        if not self.project.config.workflow.auto_mark_complete:
            return False
        evidence = [
            VerificationStep(step=check.name, passed=check.passed, evidence=check.output[:200] or None)
            for check in report.checks
        ]
        self.project.features.mark_complete(feature.id, evidence)
        self.bus.emit("feature_completed", {"feature_id": feature.id}, ctx.session_id)
        return True

    def _finish(self, ctx: WorkflowContext, result: WorkflowResult) -> None:
        """Close the session, append progress, update the agent state."""
        project = self.project
        summary = _summarize(result)
        checks = [c for c in result.verification.checks if c.status != "skipped"] if result.verification else []

        project.sessions.end(
            ctx.session_id,
            "completed" if result.success else "failed",
            SessionResult(
                success=result.success,
                summary=summary,
                files_modified=result.files_modified,
                tests_run=len(checks),
                tests_passed=sum(1 for c in checks if c.passed),
                feature_completed=result.feature_completed,
            ),
        )

        issues = [f"{name} check failed" for name in result.failed_checks]
        if result.status == "failed" and not result.failed_checks and result.last_output:
            issues.append(result.last_output.splitlines()[0])
        project.progress.record(ProgressEntry(
            session_id=ctx.session_id,
            agent_type="coding",
            summary=summary,
            feature_worked_on=result.feature_id,
            feature_completed=result.feature_completed if result.feature_id else None,
            tests_run=len(checks),
            tests_passed=sum(1 for c in checks if c.passed),
            issues_encountered=issues,
            next_steps=_next_steps(result),
        ))

        remaining = project.features.incomplete_count()
        state = project.state
        record = state.read()
        updates: dict = {"phase": "complete" if remaining == 0 else "building", "note": summary}
        if record.desired_state == AgentMode.RUN_ONCE:
            updates.update(desired_state="pause", current_state="pause")
        elif record.desired_state == AgentMode.CONTINUOUS:
            updates["current_state"] = "continuous"
        state.write(**updates)

        self.bus.emit(
            "workflow_finished",
            {"status": result.status, "success": result.success, "iterations": result.iterations},
            ctx.session_id,
        )
        logger.info(f"[WORKFLOW] {summary}")


def _summarize(result: WorkflowResult) -> str:
    if result.status == "nothing_to_do":
        return "All features complete; nothing to do"
    if result.status == "completed":
        verb = "Completed" if result.feature_completed else "Verified"
        return f"{verb} {result.feature_id} in {result.iterations} iteration(s)"
    if result.status == "aborted":
        return f"Aborted {result.feature_id} at iteration {result.iterations}"
    if result.feature_id is None:
        return "Environment failed to start"
    checks = ", ".join(result.failed_checks) or "coding agent"
    return f"Failed {result.feature_id} after {result.iterations} iteration(s): {checks}"


def _next_steps(result: WorkflowResult) -> list[str]:
    if result.status == "completed":
        return ["Select the next incomplete feature"]
    if result.status == "failed" and result.feature_id:
        return [f"Fix failing checks for {result.feature_id}"]
    if result.status == "failed":
        return ["Check the environment start command and base URL"]
    return []
