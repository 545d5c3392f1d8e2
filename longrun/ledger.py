"""
LONGRUN Test Ledger — The Evidence Locker

Granular test cases that only turn green with proof. A test is marked
passing through mark_passing() and nothing else: both evidence files must
exist on disk and the console log must be free of failure markers,
whatever the caller claims.
"""

from __future__ import annotations

import secrets
import time
from datetime import datetime
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from longrun.errors import CorruptDataError, EvidenceError, NotFoundError, StoreMissingError
from longrun.storage import read_json, utc_now, write_json

TestCategory = Literal["functional", "style", "accessibility", "performance", "security"]
TestPriority = Literal["critical", "high", "medium", "low"]

SUITE_VERSION = "1.0.0"
FAILURE_MARKERS = ("ERROR", "FAIL")
PRIORITY_ORDER: tuple[str, ...] = ("critical", "high", "medium", "low")


class TestCase(BaseModel):
    __test__ = False

    id: str
    category: TestCategory
    description: str
    steps: list[str] = Field(min_length=1)
    passes: bool = False
    priority: TestPriority = "medium"
    verified_at: datetime | None = None
    screenshot_path: str | None = None
    console_log_path: str | None = None
    notes: str | None = None


class TestSuite(BaseModel):
    __test__ = False

    version: str = SUITE_VERSION
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    total_tests: int = 0
    passed_tests: int = 0
    tests: list[TestCase] = Field(default_factory=list)


class NewTest(BaseModel):
    """A test case before it has an id or a status."""
    __test__ = False

    category: TestCategory
    description: str
    steps: list[str] = Field(min_length=1)
    priority: TestPriority = "medium"


class LedgerSummary(BaseModel):
    total: int
    passed: int
    failed: int
    percentage: int
    by_category: dict[str, dict[str, int]]
    by_priority: dict[str, dict[str, int]]


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"


def generate_test_id(category: str) -> str:
    """CATEGORY prefix, base-36 timestamp, random suffix: FUN-lq2x8k1c-3f9a."""
    return f"{category[:3].upper()}-{_base36(int(time.time() * 1000))}-{secrets.token_hex(2)}"


def _rate(passed: int, total: int) -> int:
    return round(passed * 100 / total) if total else 0


class TestLedger:
    """tests.json, wrapped in a TestSuite."""

    __test__ = False

    def __init__(self, path: Path):
        self.path = path

    def _resolve(self, evidence_path: str) -> Path:
        p = Path(evidence_path)
        return p if p.is_absolute() else self.path.parent / p

    def _read_strict(self) -> TestSuite:
        data = read_json(self.path)
        try:
            return TestSuite.model_validate(data)
        except ValidationError as e:
            raise CorruptDataError(self.path, f"{e.error_count()} validation error(s)") from e

    def _load_for_update(self) -> TestSuite:
        try:
            return self._read_strict()
        except StoreMissingError:
            return TestSuite()

    def _save(self, suite: TestSuite) -> None:
        suite.updated_at = utc_now()
        suite.total_tests = len(suite.tests)
        suite.passed_tests = sum(1 for t in suite.tests if t.passes)
        write_json(self.path, suite)

    def initialize(self) -> TestSuite:
        suite = TestSuite()
        self._save(suite)
        return suite

    def load(self) -> TestSuite:
        """The suite. Missing or corrupt files read as empty (corrupt with a warning)."""
        try:
            return self._read_strict()
        except StoreMissingError:
            return TestSuite()
        except CorruptDataError as e:
            logger.warning(f"[TESTS] {e.message}; treating test ledger as empty")
            return TestSuite()

    def _find(self, suite: TestSuite, test_id: str) -> TestCase:
        for test in suite.tests:
            if test.id == test_id:
                return test
        raise NotFoundError("Test", test_id)

    # -- Mutations --------------------------------------------------------

    def add_tests(self, tests: list[NewTest]) -> list[TestCase]:
        suite = self._load_for_update()
        taken = {t.id for t in suite.tests}
        created = []
        for new in tests:
            test_id = generate_test_id(new.category)
            while test_id in taken:
                test_id = generate_test_id(new.category)
            taken.add(test_id)
            test = TestCase(id=test_id, **new.model_dump())
            suite.tests.append(test)
            created.append(test)
        self._save(suite)
        logger.info(f"[TESTS] Added {len(created)} test case(s)")
        return created

    def add_test(self, test: NewTest) -> TestCase:
        return self.add_tests([test])[0]

    def mark_passing(
        self,
        test_id: str,
        screenshot_path: str,
        console_log_path: str,
        notes: str | None = None,
    ) -> TestCase:
        """
        Flip a test to passing once the evidence holds up.

        Raises:
            NotFoundError: unknown test id.
            EvidenceError: an evidence file is missing, or the console log
                contains a failure marker. The record is left unchanged.
        """
        suite = self._read_strict()
        test = self._find(suite, test_id)

        screenshot = self._resolve(screenshot_path)
        if not screenshot.exists():
            raise EvidenceError(test_id, f"screenshot not found: {screenshot_path}")

        console_log = self._resolve(console_log_path)
        if not console_log.exists():
            raise EvidenceError(test_id, f"console log not found: {console_log_path}")

        content = console_log.read_text(encoding="utf-8", errors="replace")
        marker = next((m for m in FAILURE_MARKERS if m in content), None)
        if marker:
            raise EvidenceError(test_id, f"console log contains {marker}")

        test.passes = True
        test.verified_at = utc_now()
        test.screenshot_path = screenshot_path
        test.console_log_path = console_log_path
        test.notes = notes
        self._save(suite)
        logger.info(f"[TESTS] {test_id} marked passing")
        return test

    def mark_failing(self, test_id: str, reason: str | None = None) -> TestCase:
        suite = self._read_strict()
        test = self._find(suite, test_id)
        test.passes = False
        test.verified_at = None
        test.notes = reason or "Marked as failing"
        self._save(suite)
        logger.info(f"[TESTS] {test_id} marked failing")
        return test

    # -- Queries ----------------------------------------------------------

    def get(self, test_id: str) -> TestCase | None:
        return next((t for t in self.load().tests if t.id == test_id), None)

    def failing(self) -> list[TestCase]:
        return [t for t in self.load().tests if not t.passes]

    def passing(self) -> list[TestCase]:
        return [t for t in self.load().tests if t.passes]

    def by_category(self, category: str) -> list[TestCase]:
        return [t for t in self.load().tests if t.category == category]

    def next_test(self) -> TestCase | None:
        failing = self.failing()
        for priority in PRIORITY_ORDER:
            for test in failing:
                if test.priority == priority:
                    return test
        return failing[0] if failing else None

    def summary(self) -> LedgerSummary:
        tests = self.load().tests
        by_category = {
            c: {"total": 0, "passed": 0}
            for c in ("functional", "style", "accessibility", "performance", "security")
        }
        by_priority = {p: {"total": 0, "passed": 0} for p in PRIORITY_ORDER}
        for test in tests:
            by_category[test.category]["total"] += 1
            by_priority[test.priority]["total"] += 1
            if test.passes:
                by_category[test.category]["passed"] += 1
                by_priority[test.priority]["passed"] += 1

        total = len(tests)
        passed = sum(1 for t in tests if t.passes)
        return LedgerSummary(
            total=total,
            passed=passed,
            failed=total - passed,
            percentage=_rate(passed, total),
            by_category=by_category,
            by_priority=by_priority,
        )

    def validate(self) -> list[str]:
        """Integrity issues: duplicate ids, passing tests without evidence."""
        issues = []
        seen: set[str] = set()
        tests = self.load().tests
        for test in tests:
            if test.id in seen:
                issues.append(f"Duplicate test ID: {test.id}")
            seen.add(test.id)
            if not test.description:
                issues.append(f"Test {test.id} missing description")
        for test in tests:
            if not test.passes:
                continue
            if not test.screenshot_path:
                issues.append(f"Passing test {test.id} missing screenshot_path")
            if not test.console_log_path:
                issues.append(f"Passing test {test.id} missing console_log_path")
        return issues

    def export_report(self) -> str:
        suite = self.load()
        summary = self.summary()
        lines = [
            "# Test Suite Report",
            "",
            f"**Generated:** {utc_now().isoformat()}",
            "",
            "## Summary",
            "",
            "| Metric | Value |",
            "|--------|-------|",
            f"| Total Tests | {summary.total} |",
            f"| Passed | {summary.passed} |",
            f"| Failed | {summary.failed} |",
            f"| Pass Rate | {summary.percentage}% |",
            "",
            "## By Category",
            "",
            "| Category | Total | Passed | Pass Rate |",
            "|----------|-------|--------|-----------|",
        ]
        for category, stats in summary.by_category.items():
            lines.append(
                f"| {category} | {stats['total']} | {stats['passed']} | "
                f"{_rate(stats['passed'], stats['total'])}% |"
            )

        lines += ["", "## Failing Tests", ""]
        failing = [t for t in suite.tests if not t.passes]
        if not failing:
            lines.append("All tests passing!")
        for test in failing:
            lines.append(f"### {test.id}")
            lines.append(f"**Priority:** {test.priority} | **Category:** {test.category}")
            lines.append("")
            lines.append(test.description)
            lines.append("")
            lines.append("**Steps:**")
            lines.extend(f"{i}. {step}" for i, step in enumerate(test.steps, start=1))
            lines.append("")

        return "\n".join(lines)
