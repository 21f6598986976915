from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class BridgeError(Exception):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details or {}}


class InvalidConfigError(BridgeError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="invalid_config", message=message, details=details)


class TransportError(BridgeError):
    def __init__(self, server_id: str, message: str):
        super().__init__(code="transport_error", message=message, details={"server_id": server_id})


class ConnectTimeoutError(BridgeError):
    def __init__(self, server_id: str, stage: str, timeout: float):
        super().__init__(
            code="timeout",
            message=f"{stage} for {server_id} timed out after {timeout:g}s",
            details={"server_id": server_id, "stage": stage, "timeout": timeout},
        )


class AuthorizationRequiredError(BridgeError):
    def __init__(self, server_id: str, stale_credential: bool = False):
        if stale_credential:
            message = f"Authorization failed with the issued credential for {server_id}"
        else:
            message = f"Authorization required for {server_id}"
        super().__init__(
            code="authorization_required",
            message=message,
            details={"server_id": server_id, "stale_credential": stale_credential},
        )

    @property
    def stale_credential(self) -> bool:
        return bool((self.details or {}).get("stale_credential"))


class AuthorizationFailedError(BridgeError):
    def __init__(self, server_id: str, message: str):
        super().__init__(code="authorization_failed", message=message, details={"server_id": server_id})


class TransportAuthorizationError(BridgeError):
    """Raised at the transport boundary when the remote answered 401."""

    def __init__(self, server_id: str, message: str = "Unauthorized"):
        super().__init__(code="unauthorized", message=message, details={"server_id": server_id})


class HealthCheckFailure(BridgeError):
    def __init__(self, server_id: str, reason: str):
        super().__init__(
            code="health_check_failed",
            message=f"Health check failed for {server_id}: {reason}",
            details={"server_id": server_id},
        )


class ToolNotFoundError(BridgeError):
    def __init__(self, tool_name: str):
        super().__init__(code="tool_not_found", message=f"Unknown tool: {tool_name}", details={"tool": tool_name})


class ServerNotConnectedError(BridgeError):
    def __init__(self, server_id: str, tool_name: Optional[str] = None):
        if tool_name:
            message = f"The server providing the tool {tool_name} ({server_id}) is not connected"
        else:
            message = f"Server {server_id} is not connected"
        super().__init__(
            code="server_not_connected",
            message=message,
            details={"server_id": server_id, "tool": tool_name},
        )
