"""Engine and session factory for the credential database (SQLite default)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from sqlalchemy import Engine, create_engine, make_url
from sqlalchemy.orm import sessionmaker

from toolbridge.db.models import Base
from toolbridge.settings import get_settings

_ENGINE: Optional[Engine] = None
_SESSION_FACTORY: Optional[sessionmaker] = None


def get_database_url() -> str:
    """TOOLBRIDGE_DATABASE_URL, else a SQLite file under the data dir."""
    settings = get_settings()
    if settings.database_url:
        return settings.database_url
    return f"sqlite:///{os.path.join(settings.data_dir, 'db', 'toolbridge.db')}"


def create_db_engine(db_url: str) -> Engine:
    url = make_url(db_url)
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        # Sessions are opened from worker threads as well as the loop thread
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args, future=True)


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = create_db_engine(get_database_url())
    return _ENGINE


def get_session_factory() -> sessionmaker:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = sessionmaker(bind=get_engine(), autoflush=False, future=True)
    return _SESSION_FACTORY


def reset_engine() -> None:
    """Dispose the engine so the next call picks up changed settings."""
    global _ENGINE, _SESSION_FACTORY
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    _SESSION_FACTORY = None


def init_db() -> None:
    """Create the credential and flow tables if they don't exist."""
    Base.metadata.create_all(bind=get_engine())
