"""Database package for toolbridge."""

from toolbridge.db.database import (  # noqa: F401
    create_db_engine,
    get_database_url,
    get_engine,
    get_session_factory,
    init_db,
    reset_engine,
)
from toolbridge.db.models import Base, OAuthCredential, OAuthFlow  # noqa: F401
