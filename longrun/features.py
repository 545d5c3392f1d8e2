"""
LONGRUN Feature Backlog — The Map

The feature list is the outline of what "done" looks like. It is generated
in bulk at project start with every feature failing, and each later session
flips exactly one feature to passing after verification.

Selection is deterministic: lowest priority number first, original order
breaks ties, and a feature waits for its dependencies unless nothing else
is eligible. A blocked agent still gets a task rather than stalling.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Literal

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from longrun.errors import (
    CorruptDataError,
    DuplicateIdError,
    NotFoundError,
    StoreExistsError,
    StoreMissingError,
    VerificationIncompleteError,
)
from longrun.storage import CamelModel, read_json, utc_now, write_json

FeatureCategory = Literal[
    "functional",
    "ui",
    "ux",
    "performance",
    "security",
    "accessibility",
    "integration",
    "error-handling",
]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class Feature(CamelModel):
    """A discrete, independently testable unit of product functionality."""
    id: str
    category: FeatureCategory
    description: str
    steps: list[str] = Field(min_length=1)
    passes: bool = False
    priority: int = 50
    dependencies: list[str] | None = None
    verification_notes: str | None = None
    last_attempted_at: datetime | None = None
    completed_at: datetime | None = None


class FeatureList(CamelModel):
    project_name: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    total_features: int = 0
    completed_features: int = 0
    features: list[Feature] = Field(default_factory=list)

    def recount(self) -> None:
        self.total_features = len(self.features)
        self.completed_features = sum(1 for f in self.features if f.passes)

    def find(self, feature_id: str) -> Feature | None:
        return next((f for f in self.features if f.id == feature_id), None)


class VerificationStep(BaseModel):
    """One checked step of a feature's verification."""
    step: str
    passed: bool
    evidence: str | None = None


class CategoryProgress(BaseModel):
    total: int = 0
    completed: int = 0


class FeatureSummary(BaseModel):
    total: int
    completed: int
    remaining: int
    percentage: int
    by_category: dict[str, CategoryProgress] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def dependencies_met(feature: Feature, by_id: dict[str, Feature]) -> bool:
    """True when every dependency exists and passes. Unknown ids are unmet."""
    for dep_id in feature.dependencies or []:
        dep = by_id.get(dep_id)
        if dep is None or not dep.passes:
            return False
    return True


def select_next(features: list[Feature]) -> Feature | None:
    """
    Pick the next feature to work on.

    1. keep features with passes == False
    2. stable sort by ascending priority
    3. return the first whose dependencies all pass
    4. if none qualify, return the first of the sorted list anyway
    """
    incomplete = sorted((f for f in features if not f.passes), key=lambda f: f.priority)
    if not incomplete:
        return None

    by_id = {f.id: f for f in features}
    for feature in incomplete:
        if dependencies_met(feature, by_id):
            return feature

    fallback = incomplete[0]
    logger.warning(
        f"[FEATURES] No incomplete feature has its dependencies met; "
        f"falling back to {fallback.id}"
    )
    return fallback


# ---------------------------------------------------------------------------
# Backlog Store
# ---------------------------------------------------------------------------

class FeatureBacklog:
    """
    The persisted feature collection (feature_list.json).

    Read-only queries treat a missing file as zero features. Mutations on a
    missing file raise StoreMissingError: that is misconfiguration, not an
    empty project. Malformed content always raises CorruptDataError.
    """

    def __init__(self, path: Path):
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> FeatureList:
        data = read_json(self.path)
        try:
            return FeatureList.model_validate(data)
        except ValidationError as e:
            raise CorruptDataError(self.path, f"{e.error_count()} validation error(s)") from e

    def _load_or_empty(self) -> FeatureList:
        try:
            return self.load()
        except StoreMissingError:
            return FeatureList(project_name=self.path.parent.name)

    def _write(self, feature_list: FeatureList) -> FeatureList:
        seen: set[str] = set()
        dupes = []
        for f in feature_list.features:
            if f.id in seen:
                dupes.append(f.id)
            seen.add(f.id)
        if dupes:
            raise DuplicateIdError("feature", sorted(set(dupes)))

        feature_list.recount()
        feature_list.updated_at = utc_now()
        write_json(self.path, feature_list)
        return feature_list

    def initialize(
        self,
        project_name: str,
        features: list[Feature],
        overwrite: bool = False,
    ) -> FeatureList:
        """Create the feature list. Refuses to clobber an existing one."""
        if self.exists() and not overwrite:
            raise StoreExistsError(self.path)
        feature_list = FeatureList(project_name=project_name, features=list(features))
        self._write(feature_list)
        logger.info(f"[FEATURES] Initialized {len(features)} features in {self.path.name}")
        return feature_list

    def save(self, features: list[Feature], project_name: str | None = None) -> FeatureList:
        """
        Replace the feature records, keeping project metadata.

        With a project_name a missing file is created; without one the
        store must already exist.
        """
        try:
            feature_list = self.load()
        except StoreMissingError:
            if project_name is None:
                raise
            feature_list = FeatureList(project_name=project_name)
        if project_name is not None:
            feature_list.project_name = project_name
        feature_list.features = list(features)
        return self._write(feature_list)

    # -- Queries ----------------------------------------------------------

    def all(self) -> list[Feature]:
        return self._load_or_empty().features

    def get(self, feature_id: str) -> Feature | None:
        return self._load_or_empty().find(feature_id)

    def by_category(self, category: str) -> list[Feature]:
        return [f for f in self.all() if f.category == category]

    def incomplete_count(self) -> int:
        return sum(1 for f in self.all() if not f.passes)

    def next_incomplete(self) -> Feature | None:
        return select_next(self.all())

    def summary(self) -> FeatureSummary:
        features = self.all()
        by_category: dict[str, CategoryProgress] = {}
        for f in features:
            progress = by_category.setdefault(f.category, CategoryProgress())
            progress.total += 1
            if f.passes:
                progress.completed += 1

        total = len(features)
        completed = sum(1 for f in features if f.passes)
        return FeatureSummary(
            total=total,
            completed=completed,
            remaining=total - completed,
            percentage=round(completed * 100 / total) if total else 0,
            by_category=by_category,
        )

    def validate(self) -> list[str]:
        """Return integrity issues without modifying anything."""
        issues = []
        feature_list = self._load_or_empty()
        ids = [f.id for f in feature_list.features]
        for dup in sorted({i for i in ids if ids.count(i) > 1}):
            issues.append(f"Duplicate feature id: {dup}")
        known = set(ids)
        for f in feature_list.features:
            for dep in f.dependencies or []:
                if dep not in known:
                    issues.append(f"Feature {f.id} depends on unknown feature {dep}")
            if f.passes and (not f.completed_at or not f.verification_notes):
                issues.append(f"Passing feature {f.id} has no verification record")
        if feature_list.completed_features != sum(1 for f in feature_list.features if f.passes):
            issues.append("Cached completed count does not match feature records")
        return issues

    # -- Mutations --------------------------------------------------------

    def mark_complete(self, feature_id: str, evidence: list[VerificationStep]) -> Feature:
        """Flip a feature to passing. Every supplied step must have passed."""
        feature_list = self.load()
        feature = feature_list.find(feature_id)
        if feature is None:
            raise NotFoundError("Feature", feature_id)

        failed = [s.step for s in evidence if not s.passed]
        if not evidence or failed:
            raise VerificationIncompleteError(feature_id, failed)

        feature.passes = True
        feature.completed_at = utc_now()
        feature.verification_notes = "\n".join(
            f"{s.step}: {'PASS' if s.passed else 'FAIL'}" for s in evidence
        )
        self._write(feature_list)
        logger.info(f"[FEATURES] {feature_id} marked complete")
        return feature

    def mark_failing(self, feature_id: str, reason: str | None = None) -> Feature:
        """Reverse a completion invalidated by a later verification."""
        feature_list = self.load()
        feature = feature_list.find(feature_id)
        if feature is None:
            raise NotFoundError("Feature", feature_id)

        feature.passes = False
        feature.completed_at = None
        feature.verification_notes = reason
        self._write(feature_list)
        logger.info(f"[FEATURES] {feature_id} marked failing")
        return feature

    def mark_attempted(self, feature_id: str) -> Feature:
        feature_list = self.load()
        feature = feature_list.find(feature_id)
        if feature is None:
            raise NotFoundError("Feature", feature_id)
        feature.last_attempted_at = utc_now()
        self._write(feature_list)
        return feature


# ---------------------------------------------------------------------------
# Generation from a project spec
# ---------------------------------------------------------------------------

class SpecFeature(BaseModel):
    name: str
    description: str
    category: FeatureCategory = "functional"
    priority: Literal["high", "medium", "low"] = "medium"
    steps: list[str] | None = None
    include_error_handling: bool = True


class ProjectSpec(BaseModel):
    """High-level project description the initializer expands into features."""
    name: str
    description: str = ""
    type: Literal["web-app", "api", "cli", "library"] = "web-app"
    features: list[SpecFeature] = Field(default_factory=list)
    tech_stack: list[str] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: Path) -> "ProjectSpec":
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise CorruptDataError(path, f"invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise CorruptDataError(path, "expected a mapping at the top level")
        try:
            return cls(**data)
        except ValidationError as e:
            raise CorruptDataError(path, str(e)) from e


PRIORITY_LEVELS = {"high": 10, "medium": 50, "low": 100}


def _default_steps(spec_feature: SpecFeature) -> list[str]:
    if "user can" in spec_feature.description.lower():
        return [
            "Navigate to the relevant interface",
            "Perform the user action described",
            "Verify the expected result occurs",
            "Verify no errors are thrown",
            "Verify the UI updates appropriately",
        ]
    return [
        f"Set up test environment for: {spec_feature.description}",
        "Execute the functionality",
        "Verify expected outcome",
        "Verify no regressions",
    ]


def _infrastructure_features(spec: ProjectSpec, start_id: int) -> list[Feature]:
    items = [
        ("Development server starts successfully", 1, [
            "Run init.sh or npm run dev",
            "Verify server starts without errors",
            "Verify app is accessible at expected URL",
            "Verify hot reload works",
        ]),
        ("Production build completes successfully", 1, [
            "Run build command",
            "Verify no build errors",
            "Verify output files are generated",
            "Verify build size is reasonable",
        ]),
    ]
    if "typescript" in [t.lower() for t in spec.tech_stack]:
        items.append(("TypeScript compilation passes without errors", 1, [
            "Run tsc --noEmit",
            "Verify no type errors",
            "Verify no implicit any warnings",
        ]))
    items.append(("Linting passes without errors", 2, [
        "Run linter (eslint/prettier)",
        "Verify no lint errors",
        "Verify code style is consistent",
    ]))

    return [
        Feature(
            id=f"I{start_id + i:03d}",
            category="functional",
            description=description,
            steps=steps,
            priority=priority,
        )
        for i, (description, priority, steps) in enumerate(items)
    ]


def generate_features(spec: ProjectSpec) -> list[Feature]:
    """Expand a project spec into granular, initially failing features."""
    features: list[Feature] = []
    next_id = 1

    for spec_feature in spec.features:
        priority = PRIORITY_LEVELS[spec_feature.priority]
        base = Feature(
            id=f"F{next_id:03d}",
            category=spec_feature.category,
            description=spec_feature.description,
            steps=spec_feature.steps or _default_steps(spec_feature),
            priority=priority,
        )
        features.append(base)
        next_id += 1

        if spec_feature.include_error_handling:
            features.append(Feature(
                id=f"F{next_id:03d}",
                category="error-handling",
                description=f"Error handling for: {spec_feature.description}",
                steps=[
                    f"Trigger error condition for {spec_feature.name}",
                    "Verify appropriate error message is displayed",
                    "Verify system remains in stable state",
                    "Verify user can recover from error",
                ],
                priority=priority + 10,
                dependencies=[base.id],
            ))
            next_id += 1

    features.extend(_infrastructure_features(spec, next_id))
    return sorted(features, key=lambda f: f.priority)
