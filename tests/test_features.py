import json

import pytest

from longrun.errors import (
    CorruptDataError,
    DuplicateIdError,
    NotFoundError,
    StoreExistsError,
    StoreMissingError,
    VerificationIncompleteError,
)
from longrun.features import (
    FeatureBacklog,
    ProjectSpec,
    SpecFeature,
    VerificationStep,
    generate_features,
    select_next,
)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def test_select_next_lowest_priority_first(make_feature):
    features = [make_feature("F2", 20), make_feature("F1", 10), make_feature("F3", 30)]
    assert select_next(features).id == "F1"


def test_select_next_ties_keep_file_order(make_feature):
    features = [make_feature("B", 10), make_feature("A", 10)]
    assert select_next(features).id == "B"


def test_select_next_skips_passing(make_feature):
    features = [make_feature("F1", 1, passes=True), make_feature("F2", 5)]
    assert select_next(features).id == "F2"


def test_select_next_waits_for_dependencies(make_feature):
    features = [
        make_feature("F1", 5, dependencies=["F2"]),
        make_feature("F2", 10),
    ]
    assert select_next(features).id == "F2"


def test_select_next_falls_back_when_everything_is_blocked(make_feature):
    features = [
        make_feature("F1", 5, dependencies=["F9"]),
        make_feature("F2", 10, dependencies=["F1"]),
    ]
    assert select_next(features).id == "F1"


def test_select_next_none_when_all_pass(make_feature):
    assert select_next([make_feature("F1", passes=True)]) is None
    assert select_next([]) is None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

def test_missing_file_reads_as_empty(tmp_path):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    assert backlog.all() == []
    assert backlog.next_incomplete() is None
    assert backlog.summary().total == 0


def test_mutation_on_missing_file_raises(tmp_path):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    with pytest.raises(StoreMissingError):
        backlog.mark_complete("F1", [VerificationStep(step="lint", passed=True)])
    with pytest.raises(StoreMissingError):
        backlog.save([])


def test_save_with_project_name_creates_file(tmp_path, make_feature):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    backlog.save([make_feature("F1")], project_name="demo")
    assert backlog.load().project_name == "demo"


def test_corrupt_file_raises(tmp_path):
    path = tmp_path / "feature_list.json"
    path.write_text("{ not json")
    with pytest.raises(CorruptDataError):
        FeatureBacklog(path).all()


def test_initialize_refuses_to_clobber(tmp_path, make_feature):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    backlog.initialize("demo", [make_feature("F1")])
    with pytest.raises(StoreExistsError, match="--force"):
        backlog.initialize("demo", [make_feature("F2")])
    backlog.initialize("demo", [make_feature("F2")], overwrite=True)
    assert [f.id for f in backlog.all()] == ["F2"]


def test_feature_list_round_trip(tmp_path, make_feature):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    backlog.initialize("demo", [
        make_feature("F1", 10, dependencies=["F0"]),
        make_feature("F2", 20, category="security"),
    ])
    backlog.mark_complete("F1", [VerificationStep(step="lint", passed=True)])

    loaded = backlog.load()
    backlog.save(loaded.features)
    reloaded = backlog.load()

    assert [f.model_dump() for f in reloaded.features] == [f.model_dump() for f in loaded.features]
    assert reloaded.project_name == "demo"
    assert reloaded.created_at == loaded.created_at
    assert reloaded.total_features == 2
    assert reloaded.completed_features == 1


def test_duplicate_ids_rejected(tmp_path, make_feature):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    with pytest.raises(DuplicateIdError):
        backlog.initialize("demo", [make_feature("F1"), make_feature("F1")])


def test_on_disk_keys_are_camel_case(tmp_path, make_feature):
    path = tmp_path / "feature_list.json"
    FeatureBacklog(path).initialize("demo", [make_feature("F1"), make_feature("F2", passes=True)])

    data = json.loads(path.read_text())
    assert data["projectName"] == "demo"
    assert data["totalFeatures"] == 2
    assert data["completedFeatures"] == 1
    assert "createdAt" in data


def test_mark_complete_requires_every_step_to_pass(tmp_path, make_feature):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    backlog.initialize("demo", [make_feature("F1")])

    evidence = [
        VerificationStep(step="lint", passed=True),
        VerificationStep(step="build", passed=False),
    ]
    with pytest.raises(VerificationIncompleteError) as exc:
        backlog.mark_complete("F1", evidence)
    assert exc.value.failed_steps == ["build"]
    assert backlog.get("F1").passes is False


def test_mark_complete_rejects_empty_evidence(tmp_path, make_feature):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    backlog.initialize("demo", [make_feature("F1")])
    with pytest.raises(VerificationIncompleteError):
        backlog.mark_complete("F1", [])


def test_mark_complete_records_evidence_and_counts(tmp_path, make_feature):
    path = tmp_path / "feature_list.json"
    backlog = FeatureBacklog(path)
    backlog.initialize("demo", [make_feature("F1"), make_feature("F2")])

    feature = backlog.mark_complete("F1", [
        VerificationStep(step="lint", passed=True),
        VerificationStep(step="build", passed=True),
    ])

    assert feature.passes is True
    assert feature.completed_at is not None
    assert feature.verification_notes == "lint: PASS\nbuild: PASS"
    assert json.loads(path.read_text())["completedFeatures"] == 1
    assert backlog.summary().percentage == 50
    assert backlog.next_incomplete().id == "F2"


def test_mark_complete_unknown_id(tmp_path, make_feature):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    backlog.initialize("demo", [make_feature("F1")])
    with pytest.raises(NotFoundError):
        backlog.mark_complete("F404", [VerificationStep(step="lint", passed=True)])


def test_mark_failing_reverses_completion(tmp_path, make_feature):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    backlog.initialize("demo", [make_feature("F1")])
    backlog.mark_complete("F1", [VerificationStep(step="lint", passed=True)])

    feature = backlog.mark_failing("F1", "Regressed in e2e run")
    assert feature.passes is False
    assert feature.completed_at is None
    assert backlog.load().completed_features == 0


def test_validate_reports_unknown_dependency(tmp_path, make_feature):
    backlog = FeatureBacklog(tmp_path / "feature_list.json")
    backlog.initialize("demo", [make_feature("F1", dependencies=["F7"])])
    assert backlog.validate() == ["Feature F1 depends on unknown feature F7"]


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def test_generate_features_expands_spec():
    spec = ProjectSpec(
        name="demo",
        features=[SpecFeature(name="login", description="User can log in", priority="high")],
    )
    features = generate_features(spec)
    by_id = {f.id: f for f in features}

    assert by_id["F001"].priority == 10
    assert len(by_id["F001"].steps) == 5
    assert by_id["F002"].category == "error-handling"
    assert by_id["F002"].dependencies == ["F001"]
    assert all(not f.passes for f in features)
    assert [f.priority for f in features] == sorted(f.priority for f in features)
    assert any(f.id.startswith("I") for f in features)


def test_generate_features_typescript_check():
    plain = generate_features(ProjectSpec(name="demo"))
    typed = generate_features(ProjectSpec(name="demo", tech_stack=["TypeScript"]))
    assert len(typed) == len(plain) + 1
    assert any("TypeScript" in f.description for f in typed)


def test_project_spec_from_yaml(tmp_path):
    path = tmp_path / "spec.yaml"
    path.write_text(
        "name: shop\n"
        "features:\n"
        "  - name: cart\n"
        "    description: Items can be added to the cart\n"
        "    include_error_handling: false\n"
    )
    spec = ProjectSpec.from_yaml(path)
    features = generate_features(spec)
    assert spec.name == "shop"
    assert [f.id for f in features if f.id.startswith("F")] == ["F001"]


@pytest.mark.parametrize("content", [
    "name: [unclosed\n",
    "- just\n- a list\n",
    "name: shop\nfeatures:\n  - name: cart\n",
])
def test_project_spec_from_bad_yaml_is_corrupt(tmp_path, content):
    path = tmp_path / "spec.yaml"
    path.write_text(content)
    with pytest.raises(CorruptDataError):
        ProjectSpec.from_yaml(path)
