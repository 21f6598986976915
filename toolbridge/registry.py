from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping

from toolbridge.errors import ToolNotFoundError

if TYPE_CHECKING:
    from toolbridge.external.connection import Connection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    server_id: str
    input_schema: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mcp(cls, server_id: str, tool: Any) -> "ToolDescriptor":
        return cls(
            name=getattr(tool, "name", None) or "unnamed_tool",
            description=getattr(tool, "description", None) or "No description",
            server_id=server_id,
            input_schema=dict(getattr(tool, "inputSchema", None) or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
            "server_id": self.server_id,
        }


class ToolRegistry:
    """Read-only view of the tools offered by live connections.

    Holds no state of its own: descriptors live on their Connection, so a
    server that goes away takes its tools with it.
    """

    def __init__(self, connections: Mapping[str, "Connection"]):
        self._connections = connections

    def list_tools(self) -> List[ToolDescriptor]:
        tools: List[ToolDescriptor] = []
        for connection in list(self._connections.values()):
            tools.extend(connection.tools)
        return tools

    def for_server(self, server_id: str) -> List[ToolDescriptor]:
        connection = self._connections.get(server_id)
        return list(connection.tools) if connection else []

    def resolve(self, name: str) -> ToolDescriptor:
        matches = [tool for tool in self.list_tools() if tool.name == name]
        if not matches:
            raise ToolNotFoundError(name)
        if len(matches) > 1:
            owners = ", ".join(tool.server_id for tool in matches)
            logger.warning(f"Tool {name} offered by several servers ({owners}); using {matches[0].server_id}")
        return matches[0]
