"""
External Tool Server Connections.

Provides functionality to:
- Load server definitions from the settings file
- Open MCP sessions over stdio, SSE and streamable HTTP
- Keep live connections healthy and route tool calls to them
"""

from toolbridge.external.config import ServerConnectionConfig, ServerSettings, ServerSettingsStore, TransportKind
from toolbridge.external.connection import Connection
from toolbridge.external.health import HealthMonitor
from toolbridge.external.orchestrator import ConnectionOrchestrator
from toolbridge.external.transport import TransportSession

__all__ = [
    "Connection",
    "ConnectionOrchestrator",
    "HealthMonitor",
    "ServerConnectionConfig",
    "ServerSettings",
    "ServerSettingsStore",
    "TransportKind",
    "TransportSession",
]
