"""
A project directory and the stores that live in it.
"""

from __future__ import annotations

from pathlib import Path

from longrun.backlog import HumanBacklog
from longrun.config_loader import PROJECT_CONFIG_DIR, LongrunConfig, load_config
from longrun.features import FeatureBacklog
from longrun.ledger import TestLedger
from longrun.progress import ProgressLog
from longrun.sessions import SessionStore
from longrun.state import StateStore


class Project:
    def __init__(self, root: Path, config: LongrunConfig | None = None):
        self.root = root.resolve()
        self.config = config or load_config(self.root)
        paths = self.config.paths

        self.features = FeatureBacklog(self.root / paths.feature_list)
        self.backlog = HumanBacklog(self.root / paths.backlog)
        self.ledger = TestLedger(self.root / paths.tests)
        self.state = StateStore(self.root / paths.state)
        self.sessions = SessionStore(self.root / paths.sessions_dir)
        self.progress = ProgressLog(
            self.root / paths.progress_journal,
            self.root / paths.progress_records,
        )

    @property
    def config_dir(self) -> Path:
        return self.root / PROJECT_CONFIG_DIR

    @property
    def log_dir(self) -> Path:
        return self.root / self.config.paths.log_dir

    @property
    def name(self) -> str:
        return self.root.name
