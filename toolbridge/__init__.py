"""
toolbridge: connection lifecycle manager for MCP tool servers.

Keeps many concurrent connections (stdio subprocesses, SSE and streamable
HTTP endpoints) alive, exposes their tools, and bridges the OAuth browser
round trip back into a paused connection attempt.
"""

__version__ = "0.1.0"
