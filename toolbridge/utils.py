"""
Shared utilities for toolbridge.

This module provides common functionality used across multiple components:
- Server context for log records (which server a line belongs to)
- Environment variable substitution for server definitions
"""

from __future__ import annotations

import logging
import os
import re
from contextvars import ContextVar
from typing import Any, Optional

logger = logging.getLogger(__name__)

# =============================================================================
# Server Context
# =============================================================================

# Tasks spawned while a server id is set inherit it
_server_id: ContextVar[Optional[str]] = ContextVar("server_id", default=None)

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def set_server_context(server_id: Optional[str]) -> None:
    """Set the server id attached to log records of the current task."""
    _server_id.set(server_id)


def get_server_context() -> Optional[str]:
    """Get the current server id."""
    return _server_id.get()


class ContextFilter(logging.Filter):
    """
    Logging filter that adds the server context to log records.

    Adds:
        - context: "[server_id] " when a server id is set, else ""
    """

    def filter(self, record: logging.LogRecord) -> bool:
        server_id = get_server_context()
        record.context = f"[{server_id}] " if server_id else ""
        return True


def setup_context_logging(level: str = "info") -> None:
    """
    Setup logging with the server context filter.

    Call this once at startup so log lines carry the server they belong to.
    """
    if not logging.root.handlers:
        logging.basicConfig(level=level.upper())
    else:
        logging.root.setLevel(level.upper())

    context_filter = ContextFilter()
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(context)s%(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.root.handlers:
        handler.addFilter(context_filter)
        handler.setFormatter(formatter)


# =============================================================================
# Environment Substitution
# =============================================================================


def substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute ${VAR} patterns with environment values."""
    if isinstance(obj, str):

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            value = os.environ.get(var_name, "")
            if not value:
                logger.warning(f"Environment variable not set: {var_name}")
            return value

        return _ENV_PATTERN.sub(replace, obj)

    elif isinstance(obj, dict):
        return {k: substitute_env_vars(v) for k, v in obj.items()}

    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]

    return obj
