"""
LONGRUN Environment — Step 1

Starts the project's dev environment in the background and waits for it
to answer on its liveness URL. A dead environment is terminal for the
invocation: no amount of code changes will fix it.
"""

from __future__ import annotations

import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import requests
from loguru import logger
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from longrun.config_loader import EnvironmentConfig


@dataclass
class EnvironmentResult:
    success: bool
    output: str = ""
    error: str | None = None
    duration_ms: int = 0


def probe_url(url: str, timeout: float) -> tuple[bool, str]:
    """Any HTTP response counts as alive; connection errors and timeouts do not."""
    try:
        response = requests.get(url, timeout=timeout)
    except requests.Timeout:
        return False, f"Timed out after {timeout}s: {url}"
    except requests.RequestException as e:
        return False, f"No response from {url}: {e}"
    return True, f"HTTP {response.status_code} from {url}"


class Environment:
    def __init__(self, project_root: Path, config: EnvironmentConfig, log_dir: Path):
        self.project_root = project_root
        self.config = config
        self.log_dir = log_dir
        self.process: subprocess.Popen | None = None

    def _script_missing(self, command: str) -> str | None:
        """Name of a relative script the command points at, if it does not exist."""
        try:
            first = shlex.split(command)[0]
        except (ValueError, IndexError):
            return None
        if first.startswith("./") and not (self.project_root / first).exists():
            return first
        return None

    def launch(self) -> str | None:
        """Start the startup command detached. Returns an error message on failure."""
        command = self.config.start_command
        if not command:
            return None

        missing = self._script_missing(command)
        if missing:
            return f"{missing} does not exist in {self.project_root}"

        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / "environment.log"
        logger.info(f"[ENV] Starting: {command}")
        try:
            with open(log_path, "a", encoding="utf-8") as log_file:
                self.process = subprocess.Popen(
                    command,
                    shell=True,
                    cwd=self.project_root,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as e:
            return f"Could not start {command}: {e}"
        return None

    def wait_until_live(self) -> tuple[bool, str]:
        """Poll the base URL every poll_interval seconds up to startup_timeout."""
        url = self.config.base_url
        last = {"detail": ""}

        def attempt() -> bool:
            alive, detail = probe_url(url, self.config.probe_timeout)
            last["detail"] = detail
            return alive

        retrying = Retrying(
            stop=stop_after_delay(self.config.startup_timeout),
            wait=wait_fixed(self.config.poll_interval),
            retry=retry_if_result(lambda alive: not alive),
        )
        try:
            retrying(attempt)
        except RetryError:
            return False, last["detail"]
        return True, last["detail"]

    def start(self) -> EnvironmentResult:
        start = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        error = self.launch()
        if error:
            logger.error(f"[ENV] {error}")
            return EnvironmentResult(False, error=error, duration_ms=elapsed())

        alive, detail = self.wait_until_live()
        if not alive:
            message = (
                f"{self.config.base_url} did not respond within "
                f"{self.config.startup_timeout}s ({detail})"
            )
            logger.error(f"[ENV] {message}")
            return EnvironmentResult(False, output=detail, error=message, duration_ms=elapsed())

        logger.info(f"[ENV] Live at {self.config.base_url}")
        return EnvironmentResult(
            True, output=f"Server running at {self.config.base_url}", duration_ms=elapsed()
        )
