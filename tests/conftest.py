"""
Shared pytest fixtures for toolbridge tests.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, List
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import sessionmaker

# Ensure the project root is in the Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from tests.utils.fakes import TransportRecorder
from toolbridge.auth.store import CredentialStore
from toolbridge.db.database import create_db_engine
from toolbridge.db.models import Base
from toolbridge.events import EventBus
from toolbridge.settings import BridgeSettings


# ==================== Settings / Persistence ====================


@pytest.fixture
def settings(tmp_path: Path) -> BridgeSettings:
    """Settings pointing at a temp data dir, with a slow health timer."""
    return BridgeSettings(
        data_dir=str(tmp_path),
        config_path=str(tmp_path / "servers.yaml"),
        health_check_interval=3600,
        close_timeout=0.2,
    )


@pytest.fixture
def store(tmp_path: Path) -> CredentialStore:
    """CredentialStore backed by a fresh SQLite file."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'db' / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield CredentialStore(sessionmaker(bind=engine, autoflush=False, future=True))
    engine.dispose()


# ==================== Events ====================


class EventRecorder:
    def __init__(self) -> None:
        self.bus = EventBus()
        self.events: List[Any] = []
        self.bus.subscribe(self.events.append)

    def of_type(self, event_type: type) -> List[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


# ==================== Fake MCP transport ====================


@pytest.fixture
def transports() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture
def resolver() -> MagicMock:
    """Resolver that maps a bare name to /usr/bin/<name>."""
    mock = MagicMock()
    mock.resolve.side_effect = lambda command: command if "/" in command else f"/usr/bin/{command}"
    return mock
