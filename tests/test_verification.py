import json
from unittest.mock import patch

import pytest

from longrun.config_loader import VerificationConfig
from longrun.verification import VerificationRunner


class FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code

    @property
    def ok(self) -> bool:
        return self.status_code < 400


def _runner(root, **overrides) -> VerificationRunner:
    return VerificationRunner(root, VerificationConfig(**overrides), "http://localhost:3000")


def _package_json(root, scripts: dict):
    (root / "package.json").write_text(json.dumps({"name": "app", "scripts": scripts}))


def test_npm_checks_skipped_without_package_json(tmp_path):
    report = _runner(tmp_path).run()

    assert [c.status for c in report.checks] == ["skipped", "skipped", "skipped"]
    assert report.all_passed is True
    assert report.failed_checks == []


def test_unset_command_is_skipped(tmp_path):
    check = _runner(tmp_path, lint_command=None).run_lint()
    assert check.status == "skipped"
    assert check.passed is True


def test_failing_command_fails_the_report(tmp_path):
    report = _runner(
        tmp_path,
        lint_command="echo lint ok",
        build_command="echo 'missing module' >&2; exit 2",
        behavior_command="exit 0",
    ).run()

    assert report.get("lint").status == "passed"
    assert "lint ok" in report.get("lint").output
    build = report.get("build")
    assert build.status == "failed"
    assert build.error == "Build failed"
    assert "missing module" in build.output
    assert report.all_passed is False
    assert report.failed_checks == ["build"]
    assert "build: FAILED" in report.describe()


def test_parallel_run_keeps_check_order(tmp_path):
    report = _runner(
        tmp_path,
        lint_command="exit 1",
        build_command="exit 0",
        behavior_command="exit 1",
        parallel=True,
    ).run()

    assert [c.name for c in report.checks] == ["lint", "build", "behavior"]
    assert report.failed_checks == ["lint", "behavior"]


def test_command_timeout_reported(tmp_path):
    check = _runner(tmp_path, lint_command="sleep 5", lint_timeout=0.2).run_lint()
    assert check.status == "failed"
    assert "timed out" in check.error


@pytest.mark.parametrize("scripts, expected", [
    ({"test:e2e": "playwright test"}, "npm run test:e2e"),
    ({"test": "playwright test"}, "npm test"),
    ({"test": "jest"}, None),
    ({}, None),
])
def test_detect_e2e_command(tmp_path, scripts, expected):
    _package_json(tmp_path, scripts)
    assert _runner(tmp_path).detect_e2e_command() == expected


def test_invalid_package_json_fails_behavior(tmp_path):
    (tmp_path / "package.json").write_text("{ nope")
    check = _runner(tmp_path).run_behavior()
    assert check.status == "failed"
    assert "not valid JSON" in check.error


def test_behavior_falls_back_to_server_check(tmp_path):
    _package_json(tmp_path, {"dev": "vite"})
    with patch("longrun.verification.requests.get", return_value=FakeResponse(200)) as get:
        check = _runner(tmp_path).run_behavior()
    get.assert_called_once_with("http://localhost:3000", timeout=5.0)
    assert check.status == "passed"
    assert "server responding" in check.output


def test_behavior_server_check_rejects_error_status(tmp_path):
    _package_json(tmp_path, {"dev": "vite"})
    with patch("longrun.verification.requests.get", return_value=FakeResponse(500)):
        check = _runner(tmp_path).run_behavior()
    assert check.status == "failed"
    assert "500" in check.error


def test_blank_command_is_skipped(tmp_path):
    check = _runner(tmp_path, lint_command="   ").run_lint()
    assert check.status == "skipped"
    assert check.passed is True


@pytest.mark.parametrize("content", ["[]", '"app"', '{"scripts": ["test"]}'])
def test_non_object_package_json_fails_behavior(tmp_path, content):
    (tmp_path / "package.json").write_text(content)
    check = _runner(tmp_path).run_behavior()
    assert check.status == "failed"
    assert "package.json is malformed" in check.error
