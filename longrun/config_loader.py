"""
Configuration loader for LONGRUN.
Merges defaults with per-project .longrun/config.yaml overrides.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from longrun.errors import CorruptDataError


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class PathsConfig(BaseModel):
    feature_list: str = "feature_list.json"
    backlog: str = "human_backlog.json"
    tests: str = "tests.json"
    state: str = "agent_state.json"
    sessions_dir: str = ".agent-sessions"
    progress_journal: str = "progress.txt"
    progress_records: str = ".longrun/progress.jsonl"
    log_dir: str = ".longrun/logs"


class WorkflowConfig(BaseModel):
    max_iterations: int = Field(default=3, ge=1)
    auto_mark_complete: bool = True


class EnvironmentConfig(BaseModel):
    start_command: str | None = "./init.sh"
    base_url: str = "http://localhost:3000"
    startup_timeout: float = 30.0
    poll_interval: float = 1.0
    probe_timeout: float = 1.0


class VerificationConfig(BaseModel):
    lint_command: str | None = "npm run lint"
    build_command: str | None = "npm run build"
    behavior_command: str | None = None
    lint_timeout: float = 120.0
    build_timeout: float = 300.0
    behavior_timeout: float = 60.0
    probe_timeout: float = 5.0
    parallel: bool = False


class AgentConfig(BaseModel):
    command: str | None = None
    timeout: float = 3600.0


class CoordinatorConfig(BaseModel):
    refinement_threshold: int = 5
    recent_window: int = 5


class LongrunConfig(BaseModel):
    paths: PathsConfig = Field(default_factory=PathsConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

PROJECT_CONFIG_DIR = ".longrun"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(project_root: Path | None = None) -> LongrunConfig:
    """
    Load config by merging:
      1. Built-in defaults (longrun/config.yaml)
      2. Project-level overrides (<project>/.longrun/config.yaml)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    project_config = None
    if project_root:
        project_config = project_root / PROJECT_CONFIG_DIR / "config.yaml"
        if project_config.exists():
            try:
                with open(project_config, "r") as f:
                    overrides: dict[str, Any] = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise CorruptDataError(project_config, f"invalid YAML: {e}") from e
            if not isinstance(overrides, dict):
                raise CorruptDataError(project_config, "expected a mapping at the top level")
            base = _deep_merge(base, overrides)

    try:
        return LongrunConfig(**base)
    except ValidationError as e:
        if project_config is None or not project_config.exists():
            raise
        raise CorruptDataError(project_config, str(e)) from e
