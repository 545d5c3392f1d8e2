"""Shared fixtures: a fresh project directory per test."""

from pathlib import Path

import pytest

from longrun.features import Feature
from longrun.project import Project


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "app"
    root.mkdir()
    return root


@pytest.fixture()
def project(project_root: Path) -> Project:
    return Project(project_root)


@pytest.fixture()
def make_feature():
    """Factory for minimal valid features."""

    def _make(feature_id: str, priority: int = 50, passes: bool = False, **kwargs) -> Feature:
        return Feature(
            id=feature_id,
            category=kwargs.pop("category", "functional"),
            description=kwargs.pop("description", f"Feature {feature_id}"),
            steps=kwargs.pop("steps", ["Open the page", "Check the result"]),
            priority=priority,
            passes=passes,
            **kwargs,
        )

    return _make
