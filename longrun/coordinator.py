"""
LONGRUN Coordinator — The Dispatcher

Decides what the next session should be: which role runs, which queue it
pulls from, and what it is told. Inputs, in precedence order:

  1. agent_state.json   a human can pause, stop, or request cleanup
  2. human backlog      explicit requests pre-empt generated work
  3. feature list       the next incomplete feature

The phase is derived, never stored: it falls out of the session history
and the feature list every time it is asked for.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from longrun.config_loader import CoordinatorConfig
from longrun.features import Feature
from longrun.project import Project
from longrun.sessions import AgentType
from longrun.state import AgentMode

ProjectPhase = Literal["initialization", "development", "refinement", "completion"]


class RoleProfile(BaseModel):
    priority: int
    max_concurrent: int
    timeout_s: int
    capabilities: list[str]


ROLE_PROFILES: dict[str, RoleProfile] = {
    "initializer": RoleProfile(
        priority=100, max_concurrent=1, timeout_s=30 * 60,
        capabilities=["project_setup", "environment_config"],
    ),
    "coding": RoleProfile(
        priority=50, max_concurrent=1, timeout_s=60 * 60,
        capabilities=["code_writing", "debugging", "testing"],
    ),
    "testing": RoleProfile(
        priority=60, max_concurrent=2, timeout_s=30 * 60,
        capabilities=["test_writing", "browser_automation", "verification"],
    ),
    "cleanup": RoleProfile(
        priority=30, max_concurrent=1, timeout_s=15 * 60,
        capabilities=["refactoring", "documentation"],
    ),
}


class Directive(BaseModel):
    action: Literal["run", "stop"]
    role: AgentType | None = None
    source: Literal["state", "human_backlog", "feature_list"]
    phase: ProjectPhase
    item_id: str | None = None
    feature_id: str | None = None
    reason: str


# ---------------------------------------------------------------------------
# Role briefs
# ---------------------------------------------------------------------------

ROLE_BRIEFS: dict[str, str] = {
    "initializer": """\
You are the initializer. Set the project up so later sessions can make steady progress.

1. Write init.sh so it starts the development server
2. Expand the project description into feature_list.json, every feature failing
3. Make the first commit with the scaffolding
4. Start the progress journal

Do not implement features. Later sessions do that, one at a time.""",

    "coding": """\
You are the coding agent. Move exactly one feature from failing to passing.

1. Read the progress journal and recent git history
2. Start the environment with init.sh and check the app still works
3. Implement the selected feature
4. Verify it end to end, as a user would
5. Commit with a descriptive message and update the progress journal

Rules:
- One feature per session
- Leave the codebase clean and working
- Never remove or edit existing tests""",

    "testing": """\
You are the testing agent. Confirm that what is marked passing really passes.

1. Review recently completed features
2. Exercise them end to end in the browser
3. Capture a screenshot and the console log for each test
4. Mark tests failing, with notes, where the evidence says so
5. Report bugs you find to the human backlog""",

    "cleanup": """\
You are the cleanup agent. Improve code quality without changing behavior.

1. Review for clarity and dead code
2. Add missing documentation
3. Keep the code style consistent

Do not change functionality and do not remove working tests.""",
}


class Coordinator:
    def __init__(self, project: Project, config: CoordinatorConfig | None = None):
        self.project = project
        self.config = config or project.config.coordinator

    def determine_phase(self) -> ProjectPhase:
        snapshot = self.project.progress.snapshot(self.config.recent_window)
        if snapshot.total_sessions == 0:
            return "initialization"
        if self.project.features.incomplete_count() == 0:
            return "completion"
        if snapshot.current_streak == 0 and snapshot.total_sessions > self.config.refinement_threshold:
            return "refinement"
        return "development"

    def next_agent_type(self) -> AgentType:
        phase = self.determine_phase()
        if phase == "initialization":
            return "initializer"
        if phase == "refinement":
            return "testing"
        if phase == "completion":
            return "cleanup"

        entries = self.project.progress.entries()
        last = entries[-1] if entries else None
        if last is not None and last.agent_type == "coding" and last.tests_run == 0:
            return "testing"
        return "coding"

    def directive(self) -> Directive:
        phase = self.determine_phase()
        state = self.project.state.read()

        if state.desired_state in (AgentMode.PAUSE, AgentMode.TERMINATED):
            return Directive(
                action="stop", source="state", phase=phase,
                reason=f"Agent state is '{state.desired_state.value}'",
            )
        if state.desired_state == AgentMode.RUN_CLEANUP:
            return Directive(
                action="run", role="cleanup", source="state", phase=phase,
                reason="Cleanup session requested",
            )

        item = self.project.backlog.next_item()
        if item is not None:
            return Directive(
                action="run", role="coding", source="human_backlog", phase=phase,
                item_id=item.id,
                reason=f"Human {item.type} ({item.priority}): {item.description}",
            )

        role = self.next_agent_type()
        feature = self.project.features.next_incomplete() if role == "coding" else None
        if feature is not None:
            reason = f"Next feature {feature.id}: {feature.description}"
        elif phase == "completion":
            reason = "All features complete"
        else:
            reason = f"{phase.capitalize()} phase"
        return Directive(
            action="run", role=role, source="feature_list", phase=phase,
            feature_id=feature.id if feature else None, reason=reason,
        )

    # -- Prompt -----------------------------------------------------------

    def _context_section(self, phase: ProjectPhase) -> str:
        snapshot = self.project.progress.snapshot(self.config.recent_window)
        recent = [
            f"- {e.timestamp.date().isoformat() if e.timestamp else 'unknown'}: {e.summary}"
            for e in snapshot.recent
        ]
        return "\n".join([
            "## Current Context",
            "",
            f"**Project Phase:** {phase}",
            f"**Total Sessions:** {snapshot.total_sessions}",
            f"**Features Completed:** {snapshot.total_features_completed}",
            f"**Current Streak:** {snapshot.current_streak} sessions",
            "",
            "### Recent Progress",
            "\n".join(recent) or "No recent progress",
        ])

    def _task_section(self, agent_type: AgentType, feature: Feature | None) -> str:
        paths = self.project.config.paths
        item = self.project.backlog.next_item() if agent_type == "coding" else None
        if item is not None:
            lines = [
                "## Your Task",
                "",
                f"**Human Request:** {item.id} ({item.type}, {item.priority})",
                f"**Description:** {item.description}",
            ]
            if item.details:
                lines += ["", item.details]
            lines += ["", f"Mark it in progress in {paths.backlog} before you start."]
            return "\n".join(lines)

        if agent_type == "coding" and feature is not None:
            steps = "\n".join(f"{i}. {s}" for i, s in enumerate(feature.steps, start=1))
            return "\n".join([
                "## Your Task",
                "",
                f"**Feature to Implement:** {feature.id}",
                f"**Description:** {feature.description}",
                "",
                "### Test Steps",
                steps,
                "",
                "### Startup Checklist",
                "1. Run `pwd` to confirm the working directory",
                f"2. Read `{paths.progress_journal}` for recent work",
                "3. Run `git log --oneline -10` for recent commits",
                f"4. Run `{self.project.config.environment.start_command or './init.sh'}`",
                "5. Check the app works before changing anything",
            ])

        return "\n".join([
            "## Your Task",
            "",
            "Follow the responsibilities above. Start by understanding the current project state.",
        ])

    def build_prompt(self, agent_type: AgentType | None = None) -> str:
        agent_type = agent_type or self.next_agent_type()
        phase = self.determine_phase()
        feature = self.project.features.next_incomplete()
        return "\n\n".join([
            ROLE_BRIEFS[agent_type],
            self._context_section(phase),
            self._task_section(agent_type, feature),
        ])
