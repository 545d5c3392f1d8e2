"""
LONGRUN Errors

One hierarchy for every store and the workflow. Each error carries an
optional remediation hint so the CLI can tell the human what to do next.
"""

from __future__ import annotations

from pathlib import Path


class LongrunError(Exception):
    """Base exception for all LONGRUN errors."""

    def __init__(self, message: str, remediation: str | None = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def __str__(self) -> str:
        if self.remediation:
            return f"{self.message}\nTo fix: {self.remediation}"
        return self.message


class StoreMissingError(LongrunError):
    """A required persisted file does not exist (misconfiguration, not empty state)."""

    def __init__(self, path: Path, remediation: str | None = None):
        self.path = path
        super().__init__(
            f"Required store not found: {path}",
            remediation or "Run `longrun init` in the project directory first.",
        )


class CorruptDataError(LongrunError):
    """A persisted file exists but cannot be parsed or validated."""

    def __init__(self, path: Path, details: str = ""):
        self.path = path
        self.details = details
        message = f"Corrupt data in {path}"
        if details:
            message += f": {details}"
        super().__init__(message, "Inspect or restore the file; it is never rewritten automatically.")


class NotFoundError(LongrunError):
    """A record looked up by id does not exist."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class DuplicateIdError(LongrunError):
    """An identifier appears more than once in a collection."""

    def __init__(self, kind: str, record_ids: list[str]):
        self.kind = kind
        self.record_ids = record_ids
        super().__init__(f"Duplicate {kind} id(s): {', '.join(record_ids)}")


class VerificationIncompleteError(LongrunError):
    """A completion was attempted with missing or failing verification steps."""

    def __init__(self, record_id: str, failed_steps: list[str]):
        self.record_id = record_id
        self.failed_steps = failed_steps
        if failed_steps:
            detail = "failed steps: " + ", ".join(failed_steps)
        else:
            detail = "no verification steps supplied"
        super().__init__(f"Cannot mark {record_id} complete ({detail})")


class EvidenceError(LongrunError):
    """A test case was marked passing without acceptable evidence."""

    def __init__(self, test_id: str, reason: str):
        self.test_id = test_id
        self.reason = reason
        super().__init__(
            f"Test {test_id} cannot pass: {reason}",
            "Capture a screenshot and a clean console log, then retry.",
        )


class InvalidTransitionError(LongrunError):
    """A lifecycle status was moved backwards or out of a terminal state."""

    def __init__(self, record_id: str, current: str, requested: str):
        self.record_id = record_id
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid transition for {record_id}: {current} → {requested}")


class StoreExistsError(LongrunError):
    """A store would be created over one that already exists."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(
            f"Store already exists: {path}",
            "Pass --force to replace it, or remove the file first.",
        )
