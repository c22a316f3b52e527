"""Shared service objects for the API.

The app owns one SyncRuntime, built in create_app() and stored on
``app.state.runtime``. Routes reach it through the get_runtime dependency,
which lets tests inject services wired to fake connectors.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fastapi import Request

from core.config import Settings, get_settings
from push.service import PushService
from reconciliation.engine import PullEngine


@dataclass
class SyncRuntime:
    settings: Settings = field(default_factory=get_settings)
    pull_engine: Optional[PullEngine] = None
    push_service: Optional[PushService] = None

    def __post_init__(self):
        if self.pull_engine is None:
            self.pull_engine = PullEngine(settings=self.settings)
        if self.push_service is None:
            self.push_service = PushService(
                db_path=self.pull_engine.db_path,
                settings=self.settings,
                lock_manager=self.pull_engine.locks,
                connector_factory=self.pull_engine.connector_factory,
                ledger_factory=self.pull_engine.ledger_factory,
                pull_engine=self.pull_engine,
            )

    @property
    def db_path(self) -> Path:
        return Path(self.pull_engine.db_path)


def get_runtime(request: Request) -> SyncRuntime:
    return request.app.state.runtime
