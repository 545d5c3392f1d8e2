"""
LONGRUN Verification Runner — Step 4

Three independent checks, aggregated with a plain AND:

  lint      static/style check     (default `npm run lint`)
  build     build/compile check    (default `npm run build`)
  behavior  e2e command, detected e2e script, or an HTTP probe fallback

A check that cannot be attempted is `skipped` and does not block. The runner
never retries; that belongs to the workflow controller.
"""

from __future__ import annotations

import concurrent.futures
import json
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Literal

import requests
from loguru import logger
from pydantic import BaseModel, Field

from longrun.commands import run_command
from longrun.config_loader import VerificationConfig
from longrun.storage import utc_now

CheckName = Literal["lint", "build", "behavior"]
CHECK_ORDER: tuple[str, ...] = ("lint", "build", "behavior")

_OUTPUT_PREVIEW = 200


class CheckResult(BaseModel):
    name: CheckName
    status: Literal["passed", "failed", "skipped"]
    output: str = ""
    error: str | None = None
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def passed(self) -> bool:
        return self.status != "failed"


class VerificationReport(BaseModel):
    checks: list[CheckResult]
    all_passed: bool
    failed_checks: list[str]
    total_duration_ms: int

    def get(self, name: str) -> CheckResult | None:
        return next((c for c in self.checks if c.name == name), None)

    def describe(self) -> str:
        lines = ["=== Verification Results ==="]
        for check in self.checks:
            lines.append(f"{check.name}: {check.status.upper()}")
            detail = check.error if check.status == "failed" and check.error else check.output
            if detail:
                lines.append(f"  {detail[:_OUTPUT_PREVIEW]}")
        lines.append(f"Overall: {'ALL PASSED' if self.all_passed else 'SOME FAILED'}")
        if self.failed_checks:
            lines.append(f"Failed: {', '.join(self.failed_checks)}")
        return "\n".join(lines)


class VerificationRunner:
    def __init__(self, project_root: Path, config: VerificationConfig, base_url: str):
        self.project_root = project_root
        self.config = config
        self.base_url = base_url

    @property
    def package_json(self) -> Path:
        return self.project_root / "package.json"

    # -- Individual checks ------------------------------------------------

    def _run_configured(
        self, name: CheckName, command: str | None, timeout: float, failure: str
    ) -> CheckResult:
        if not command or not command.strip():
            return CheckResult(name=name, status="skipped", output=f"No {name} command configured")
        if command.split()[0] in ("npm", "npx") and not self.package_json.exists():
            return CheckResult(
                name=name, status="skipped", output=f"No package.json found - {name} skipped"
            )

        result = run_command(command, self.project_root, timeout)
        if result.success:
            return CheckResult(
                name=name,
                status="passed",
                output=result.output or f"{command} passed",
                duration_ms=result.duration_ms,
            )
        error = f"{failure} (timed out after {timeout}s)" if result.timed_out else failure
        return CheckResult(
            name=name,
            status="failed",
            output=result.output,
            error=error,
            duration_ms=result.duration_ms,
        )

    def run_lint(self) -> CheckResult:
        cfg = self.config
        return self._run_configured("lint", cfg.lint_command, cfg.lint_timeout, "Lint check failed")

    def run_build(self) -> CheckResult:
        cfg = self.config
        return self._run_configured("build", cfg.build_command, cfg.build_timeout, "Build failed")

    def detect_e2e_command(self) -> str | None:
        """`npm run test:e2e` if defined, `npm test` if it runs playwright, else None."""
        data = json.loads(self.package_json.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        scripts = data.get("scripts") or {}
        if not isinstance(scripts, dict):
            raise ValueError(f"\"scripts\" must be an object, got {type(scripts).__name__}")
        if scripts.get("test:e2e"):
            return "npm run test:e2e"
        if "playwright" in (scripts.get("test") or ""):
            return "npm test"
        return None

    def probe(self) -> CheckResult:
        start = time.monotonic()
        try:
            response = requests.get(self.base_url, timeout=self.config.probe_timeout)
        except requests.RequestException as e:
            return CheckResult(
                name="behavior",
                status="failed",
                error=f"Behavior probe failed: {e}",
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        elapsed = int((time.monotonic() - start) * 1000)
        if response.ok:
            return CheckResult(
                name="behavior",
                status="passed",
                output=f"Basic probe passed - server responding on {self.base_url}",
                duration_ms=elapsed,
            )
        return CheckResult(
            name="behavior",
            status="failed",
            error=f"Behavior probe failed: status code {response.status_code}",
            duration_ms=elapsed,
        )

    def run_behavior(self) -> CheckResult:
        cfg = self.config
        if cfg.behavior_command:
            return self._run_configured(
                "behavior", cfg.behavior_command, cfg.behavior_timeout, "Behavior tests failed"
            )

        if not self.package_json.exists():
            return CheckResult(
                name="behavior",
                status="skipped",
                output="No package.json found - behavior tests skipped",
            )

        try:
            command = self.detect_e2e_command()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return CheckResult(
                name="behavior", status="failed", error=f"package.json is not valid JSON: {e}"
            )
        except ValueError as e:
            return CheckResult(
                name="behavior", status="failed", error=f"package.json is malformed: {e}"
            )

        if command is None:
            return self.probe()
        return self._run_configured(
            "behavior", command, cfg.behavior_timeout, "Behavior tests failed"
        )

    # -- Aggregate --------------------------------------------------------

    def _checks(self) -> dict[str, Callable[[], CheckResult]]:
        return {"lint": self.run_lint, "build": self.run_build, "behavior": self.run_behavior}

    def run(self) -> VerificationReport:
        start = time.monotonic()
        checks = self._checks()

        if self.config.parallel:
            with concurrent.futures.ThreadPoolExecutor(max_workers=len(checks)) as executor:
                futures = {name: executor.submit(fn) for name, fn in checks.items()}
                results = {name: future.result() for name, future in futures.items()}
        else:
            results = {name: fn() for name, fn in checks.items()}

        ordered = [results[name] for name in CHECK_ORDER]
        failed = [c.name for c in ordered if not c.passed]
        report = VerificationReport(
            checks=ordered,
            all_passed=not failed,
            failed_checks=failed,
            total_duration_ms=int((time.monotonic() - start) * 1000),
        )
        if failed:
            logger.warning(f"[VERIFY] Failed: {', '.join(failed)}")
        else:
            logger.info("[VERIFY] All checks passed")
        return report
