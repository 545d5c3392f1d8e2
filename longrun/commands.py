"""
LONGRUN Command Runner

Every external invocation (lint, build, e2e, the coding agent) goes through
here. The caller owns the timeout; the invoked process is never trusted to
stop on its own.
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from loguru import logger


@dataclass
class CommandResult:
    command: str
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return not self.timed_out and self.returncode == 0

    @property
    def output(self) -> str:
        """Combined output, stdout first."""
        parts = [p.strip() for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(parts)


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def run_command(
    command: str,
    cwd: Path,
    timeout: float,
    input_text: str | None = None,
) -> CommandResult:
    """Run a shell command with a hard timeout and captured output."""
    logger.debug(f"[CMD] {command} (cwd={cwd}, timeout={timeout}s)")
    start = time.monotonic()
    try:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        elapsed = int((time.monotonic() - start) * 1000)
        logger.warning(f"[CMD] Timed out after {timeout}s: {command}")
        return CommandResult(
            command=command,
            returncode=None,
            stdout=_as_text(e.stdout),
            stderr=_as_text(e.stderr) or f"Timed out after {timeout}s",
            duration_ms=elapsed,
            timed_out=True,
        )
    except OSError as e:
        elapsed = int((time.monotonic() - start) * 1000)
        logger.warning(f"[CMD] Could not start {command}: {e}")
        return CommandResult(command=command, returncode=None, stderr=str(e), duration_ms=elapsed)

    elapsed = int((time.monotonic() - start) * 1000)
    if proc.returncode != 0:
        logger.debug(f"[CMD] exit {proc.returncode}: {command}")
    return CommandResult(
        command=command,
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        duration_ms=elapsed,
    )
