import json

import pytest
from typer.testing import CliRunner

from longrun import __version__
from longrun.cli import app
from longrun.errors import CorruptDataError

runner = CliRunner()

SPEC = """\
name: shop
features:
  - name: cart
    description: User can add items to the cart
    priority: high
"""


@pytest.fixture()
def initialized(tmp_path):
    root = tmp_path / "shop"
    spec = tmp_path / "spec.yaml"
    spec.write_text(SPEC)
    result = runner.invoke(app, ["init", str(root), "--spec", str(spec)])
    assert result.exit_code == 0, result.stdout
    return root


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"LONGRUN v{__version__}" in result.stdout


def test_init_creates_stores(initialized):
    assert (initialized / ".longrun" / "config.yaml").exists()
    assert (initialized / "progress.txt").exists()
    assert (initialized / "tests.json").exists()

    state = json.loads((initialized / "agent_state.json").read_text())
    assert state["desired_state"] == "pause"
    assert state["setBy"] == "human"

    features = json.loads((initialized / "feature_list.json").read_text())
    assert features["projectName"] == "shop"
    assert features["completedFeatures"] == 0
    assert any(f["id"] == "F001" for f in features["features"])


def test_init_refuses_to_replace_feature_list(tmp_path, initialized):
    result = runner.invoke(app, ["init", str(initialized), "--spec", str(tmp_path / "spec.yaml")])
    assert result.exit_code == 1
    assert "already exists" in result.stdout
    assert "--force" in result.stdout


def test_init_with_malformed_spec(tmp_path):
    spec = tmp_path / "spec.yaml"
    spec.write_text("name: shop\nfeatures:\n  - name: cart\n")
    result = runner.invoke(app, ["init", str(tmp_path / "shop"), "--spec", str(spec)])
    assert result.exit_code == 1
    assert "Corrupt data" in result.stdout
    assert not (tmp_path / "shop" / "feature_list.json").exists()


@pytest.mark.parametrize("command", [
    ["state", "show"],
    ["state", "pause"],
    ["backlog", "next"],
    ["backlog", "report"],
    ["tests", "list"],
    ["tests", "validate"],
    ["tests", "report"],
])
def test_bad_project_config_exits_cleanly(initialized, command):
    (initialized / ".longrun" / "config.yaml").write_text("workflow:\n  max_iterations: 0\n")
    result = runner.invoke(app, [*command, "-p", str(initialized)])
    assert result.exit_code == 1
    assert "Corrupt data" in result.stdout
    assert not isinstance(result.exception, CorruptDataError)


def test_status(initialized):
    result = runner.invoke(app, ["status", "--project", str(initialized)])
    assert result.exit_code == 0
    assert "initialization" in result.stdout


def test_features_incomplete(initialized):
    result = runner.invoke(app, ["features", "-p", str(initialized), "--incomplete"])
    assert result.exit_code == 0
    assert "F001" in result.stdout


def test_prompt_for_coding(initialized):
    result = runner.invoke(app, ["prompt", "-p", str(initialized), "--type", "coding"])
    assert result.exit_code == 0
    assert "You are the coding agent" in result.stdout


def test_state_once(initialized):
    result = runner.invoke(app, ["state", "once", "-p", str(initialized), "--note", "one more"])
    assert result.exit_code == 0
    state = json.loads((initialized / "agent_state.json").read_text())
    assert state["desired_state"] == "run_once"
    assert state["note"] == "one more"


def test_run_respects_pause(initialized):
    result = runner.invoke(app, ["run", "-p", str(initialized)])
    assert result.exit_code == 0
    assert not (initialized / ".agent-sessions").exists()


def test_run_fails_without_start_script(initialized):
    result = runner.invoke(app, ["run", "-p", str(initialized), "--force"])
    assert result.exit_code == 1

    sessions = list((initialized / ".agent-sessions").glob("*.json"))
    assert len(sessions) == 1
    assert json.loads(sessions[0].read_text())["status"] == "failed"
    assert (initialized / ".longrun" / "logs" / "events.jsonl").exists()


def test_run_without_feature_list(tmp_path):
    result = runner.invoke(app, ["run", "-p", str(tmp_path), "--force"])
    assert result.exit_code == 1
    assert "longrun init" in result.stdout


def test_backlog_add_and_next(initialized):
    result = runner.invoke(app, ["backlog", "add", "Fix login", "-p", str(initialized), "--type", "bug"])
    assert result.exit_code == 0

    items = json.loads((initialized / "human_backlog.json").read_text())
    assert items[0]["description"] == "Fix login"
    assert items[0]["type"] == "bug"

    result = runner.invoke(app, ["backlog", "next", "-p", str(initialized)])
    assert "Fix login" in result.stdout


def test_backlog_list_by_priority(initialized):
    runner.invoke(app, ["backlog", "add", "Fix login", "-p", str(initialized), "--priority", "high"])
    runner.invoke(app, ["backlog", "add", "Tidy docs", "-p", str(initialized), "--priority", "low"])

    result = runner.invoke(app, ["backlog", "list", "-p", str(initialized), "--priority", "high"])
    assert result.exit_code == 0
    assert "Fix login" in result.stdout
    assert "Tidy docs" not in result.stdout


def test_backlog_unknown_item(initialized):
    result = runner.invoke(app, ["backlog", "done", "nope", "-p", str(initialized)])
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_tests_pass_requires_evidence(initialized):
    result = runner.invoke(app, [
        "tests", "pass", "FUN-x-0000",
        "--screenshot", "a.png", "--console-log", "a.log",
        "-p", str(initialized),
    ])
    assert result.exit_code == 1


def test_note(initialized):
    result = runner.invoke(app, ["note", "Dev server moved to 4000", "-p", str(initialized)])
    assert result.exit_code == 0
    assert "Dev server moved to 4000" in (initialized / "progress.txt").read_text()
