"""
LONGRUN Coding Agents — Step 3

The coding agent is opaque. The controller hands it a request, gets back
a report, and learns what actually changed by re-reading the stores and
running verification afterwards.

Agents are stateless between runs. State lives in the project files.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from longrun.commands import run_command
from longrun.features import Feature


class CodingRequest(BaseModel):
    """Everything the agent is told for one code attempt."""
    session_id: str
    feature: Feature
    iteration: int
    max_iterations: int
    project_root: str
    previous_failure: str | None = None
    brief: str = ""


class AgentReport(BaseModel):
    success: bool
    summary: str = ""
    files_modified: list[str] = []
    abort: bool = False


def render_request(request: CodingRequest) -> str:
    """The text prompt a command-line agent receives on stdin."""
    feature = request.feature
    lines = []
    if request.brief:
        lines += [request.brief, ""]
    lines += [
        f"## Task: {feature.id} ({feature.category}, priority {feature.priority})",
        "",
        feature.description,
        "",
        "### Verification steps",
    ]
    lines += [f"{i}. {step}" for i, step in enumerate(feature.steps, start=1)]
    lines += ["", f"Attempt {request.iteration} of {request.max_iterations}."]
    if request.previous_failure:
        lines += [
            "",
            "### The previous attempt failed verification",
            "```",
            request.previous_failure,
            "```",
        ]
    return "\n".join(lines)


class CodingAgent(ABC):
    name: str = "agent"

    @abstractmethod
    def run(self, request: CodingRequest) -> AgentReport:
        """Attempt the requested feature and report back."""
        ...


class CommandAgent(CodingAgent):
    """Runs a configured shell command with the rendered prompt on stdin."""

    name = "command"

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout

    def run(self, request: CodingRequest) -> AgentReport:
        logger.info(f"[AGENT] {self.command} on {request.feature.id} (iteration {request.iteration})")
        result = run_command(
            self.command,
            cwd=Path(request.project_root),
            timeout=self.timeout,
            input_text=render_request(request),
        )
        if result.timed_out:
            return AgentReport(success=False, summary=f"Agent timed out after {self.timeout}s")
        if not result.success:
            return AgentReport(
                success=False,
                summary=result.output[-2000:] or f"Agent exited with {result.returncode}",
            )
        return AgentReport(success=True, summary=result.stdout.strip()[-2000:])


class NullAgent(CodingAgent):
    """Stands in when code is written outside LONGRUN; every attempt 'succeeds'."""

    name = "none"

    def run(self, request: CodingRequest) -> AgentReport:
        if request.iteration == 1:
            summary = f"Starting implementation of feature: {request.feature.id}"
        else:
            summary = f"Retrying implementation (iteration {request.iteration}): {request.feature.id}"
        return AgentReport(success=True, summary=summary)
