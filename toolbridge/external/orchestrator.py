"""
Connection Orchestrator.

Owns every live tool-server connection:
- connects (subprocess or network), discovers tools, starts health checks
- tears connections down through a single routine on every path
- classifies failures, parking configs that need browser authorization
- retries a parked connect once the authorization subsystem has a token

Concurrent operations on the same server id are not serialized: the last
writer wins and a superseded attempt unwinds itself.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from toolbridge.auth.models import CredentialProvider, StaticCredential, StoredToken
from toolbridge.errors import (
    AuthorizationRequiredError,
    BridgeError,
    ConnectTimeoutError,
    HealthCheckFailure,
    InvalidConfigError,
    ServerNotConnectedError,
    TransportError,
)
from toolbridge.events import AuthReconnectComplete, EventBus, LogChunk, StatusChanged
from toolbridge.external.config import ServerConnectionConfig, ServerSettings, parse_server_config
from toolbridge.external.connection import Connection
from toolbridge.external.health import HealthMonitor
from toolbridge.external.transport import TransportSession, connect_timeout, find_unauthorized
from toolbridge.registry import ToolDescriptor, ToolRegistry
from toolbridge.resolver import CommandResolver
from toolbridge.settings import BridgeSettings, get_settings
from toolbridge.utils import set_server_context

logger = logging.getLogger(__name__)

CredentialLookup = Callable[[str], Awaitable[Optional[StoredToken]]]
TransportFactory = Callable[..., Any]


class ConnectionOrchestrator:
    def __init__(
        self,
        settings: Optional[BridgeSettings] = None,
        resolver: Optional[CommandResolver] = None,
        events: Optional[EventBus] = None,
        transport_factory: Optional[TransportFactory] = None,
        credential_lookup: Optional[CredentialLookup] = None,
    ):
        self.settings = settings or get_settings()
        self.resolver = resolver or CommandResolver(scripts_dir=self.settings.scripts_dir)
        self.events = events or EventBus()
        self.connections: Dict[str, Connection] = {}
        self.registry = ToolRegistry(self.connections)
        self.pending_auth: Dict[str, ServerConnectionConfig] = {}
        self._transport_factory = transport_factory or TransportSession
        self._credential_lookup = credential_lookup

    # =========================
    # Queries
    # =========================

    def connected_ids(self) -> List[str]:
        return list(self.connections)

    def get_tools(self) -> List[ToolDescriptor]:
        return self.registry.list_tools()

    def get_logs(self, server_id: str) -> List[str]:
        connection = self.connections.get(server_id)
        return connection.logs.lines() if connection else []

    def pending_authorization(self, server_id: str) -> Optional[ServerConnectionConfig]:
        return self.pending_auth.get(server_id)

    # =========================
    # Notifications
    # =========================

    def _notify_status(self) -> None:
        self.events.emit(
            StatusChanged(tools=tuple(self.get_tools()), connected_ids=tuple(self.connected_ids()))
        )

    def _forward_log(self, server_id: str, chunk: str) -> None:
        self.events.emit(LogChunk(server_id=server_id, chunk=chunk))

    # =========================
    # Teardown
    # =========================

    async def _teardown(self, connection: Connection, notify: bool = True) -> bool:
        """
        Unmap and close a connection. Never raises.

        A status notification is only sent when the connection was the mapped
        one for its id.

        Returns:
            True if the connection was unmapped
        """
        unmapped = self.connections.get(connection.server_id) is connection
        if unmapped:
            del self.connections[connection.server_id]
        try:
            await connection.close(self.settings.close_timeout)
        except Exception as e:
            logger.warning(f"Error while closing {connection.server_id}: {e}")
        if notify and unmapped:
            self._notify_status()
        return unmapped

    async def _on_health_failure(self, connection: Connection, failure: HealthCheckFailure) -> None:
        connection.last_error = failure.message
        if self.connections.get(connection.server_id) is connection:
            logger.warning(f"Removing {connection.server_id} after failed health check")
            await self._teardown(connection)
        else:
            # Already replaced or removed; release quietly
            await connection.close(self.settings.close_timeout)

    def _start_health(self, connection: Connection) -> None:
        async def probe() -> None:
            await connection.list_tools()

        async def on_failure(failure: HealthCheckFailure) -> None:
            await self._on_health_failure(connection, failure)

        connection.health = HealthMonitor(
            connection.server_id,
            probe=probe,
            on_failure=on_failure,
            interval=self.settings.health_check_interval,
            timeout=self.settings.health_check_timeout,
        )
        connection.health.start()

    def _on_stderr_closed(self, connection: Connection) -> None:
        if connection.health is not None:
            connection.health.check_now("stderr closed")

    # =========================
    # Connect
    # =========================

    async def _stored_credential(self, server_id: str) -> Optional[StaticCredential]:
        if self._credential_lookup is None or not self.settings.use_stored_credentials:
            return None
        try:
            tokens = await self._credential_lookup(server_id)
        except Exception as e:
            logger.warning(f"Could not load stored credential for {server_id}: {e}")
            return None
        if tokens is None:
            return None
        logger.info(f"Using stored credential for {server_id}")
        return StaticCredential(tokens)

    async def connect(
        self,
        server_id: str,
        config: Union[ServerConnectionConfig, Mapping[str, Any]],
        credential: Optional[CredentialProvider] = None,
    ) -> List[ToolDescriptor]:
        """
        Connect to a server and discover its tools.

        Any existing connection for the id is torn down first.

        Returns:
            The server's tool descriptors

        Raises:
            InvalidConfigError: Config does not match its transport kind
            ConnectTimeoutError: Handshake or tool discovery timed out
            AuthorizationRequiredError: The server answered 401
            TransportError: Anything else went wrong
        """
        set_server_context(server_id)

        existing = self.connections.get(server_id)
        if existing is not None:
            logger.info(f"Replacing existing connection for {server_id}")
            await self._teardown(existing)

        config = parse_server_config(server_id, config)

        explicit_credential = isinstance(credential, StaticCredential)
        if config.is_network and credential is None:
            credential = await self._stored_credential(server_id)

        command = None
        if not config.is_network:
            command = await asyncio.to_thread(self.resolver.resolve, config.command)

        timeout = connect_timeout(config, self.settings)
        connection = Connection(server_id, config, on_log=self._forward_log)
        errlog = None if config.is_network else connection.open_stderr_pipe()
        transport = self._transport_factory(
            server_id,
            config,
            command=command,
            credential=credential,
            errlog=errlog,
        )

        logger.info(f"Connecting to {server_id} ({config.transport.value}, timeout {timeout:g}s)")

        try:
            try:
                await connection.open(transport, timeout)
            except asyncio.TimeoutError as e:
                raise ConnectTimeoutError(server_id, "Handshake", timeout) from e

            previous = self.connections.get(server_id)
            self.connections[server_id] = connection
            if previous is not None and previous is not connection:
                logger.info(f"Connection attempt for {server_id} superseded an earlier one")
                await self._teardown(previous, notify=False)

            if errlog is not None:
                connection.release_stderr_writer()
                connection.attach_stderr(on_eof=lambda: self._on_stderr_closed(connection))

            try:
                tools = await connection.list_tools(self.settings.list_tools_timeout)
            except asyncio.TimeoutError as e:
                raise ConnectTimeoutError(server_id, "Tool discovery", self.settings.list_tools_timeout) from e

            if self.connections.get(server_id) is not connection:
                raise TransportError(server_id, f"Connection to {server_id} was replaced while listing tools")

            connection.tools = list(tools)
            self._start_health(connection)

        except asyncio.CancelledError:
            logger.info(f"Connection attempt for {server_id} was cancelled; rolling back")
            connection.last_error = "cancelled"
            await asyncio.shield(self._teardown(connection))
            raise
        except Exception as e:
            connection.last_error = str(e) or type(e).__name__
            await self._teardown(connection)
            error = self._classify(server_id, config, e, transport, explicit_credential)
            if error is e:
                raise
            raise error from e

        self.pending_auth.pop(server_id, None)
        logger.info(f"Connected to {server_id}: {len(connection.tools)} tools")
        self._notify_status()
        return list(connection.tools)

    def _classify(
        self,
        server_id: str,
        config: ServerConnectionConfig,
        error: Exception,
        transport: Any,
        explicit_credential: bool,
    ) -> BridgeError:
        if getattr(transport, "saw_unauthorized", False) or find_unauthorized(error):
            if explicit_credential:
                logger.error(f"{server_id} rejected the issued credential")
                return AuthorizationRequiredError(server_id, stale_credential=True)
            logger.info(f"{server_id} requires authorization")
            self.pending_auth[server_id] = config
            return AuthorizationRequiredError(server_id)

        self.pending_auth.pop(server_id, None)
        logger.error(f"Failed to connect to {server_id}: {error}")
        if isinstance(error, (ConnectTimeoutError, TransportError, InvalidConfigError)):
            return error
        return TransportError(server_id, f"Failed to connect to {server_id}: {error}")

    # =========================
    # Disconnect / shutdown
    # =========================

    async def disconnect(self, server_id: str) -> bool:
        """
        Tear down a server's connection.

        Returns:
            True if a connection was closed, False if none was live
        """
        set_server_context(server_id)
        connection = self.connections.get(server_id)
        if connection is None:
            logger.info(f"No active connection for {server_id}")
            return False
        await self._teardown(connection)
        logger.info(f"Disconnected {server_id}")
        return True

    async def shutdown(self) -> None:
        """Tear down every connection."""
        connections = list(self.connections.values())
        if not connections:
            return
        logger.info(f"Closing {len(connections)} connections")
        await asyncio.gather(*(self._teardown(c, notify=False) for c in connections))
        self.pending_auth.clear()
        self._notify_status()

    # =========================
    # Tools
    # =========================

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Route a tool call to the server that offers it.

        Raises:
            ToolNotFoundError: No live server offers the tool
            ServerNotConnectedError: The owning server went away
        """
        tool = self.registry.resolve(name)
        connection = self.connections.get(tool.server_id)
        if connection is None or not connection.is_connected:
            raise ServerNotConnectedError(tool.server_id, name)
        set_server_context(tool.server_id)
        return await connection.call_tool(name, arguments or {})

    # =========================
    # Authorization
    # =========================

    async def retry_after_auth(self, server_id: str) -> None:
        """Reconnect a parked server with freshly issued tokens. Never raises."""
        set_server_context(server_id)
        success = False
        error: Optional[str] = None

        config = self.pending_auth.get(server_id)
        if config is None:
            error = "Original connection details not found."
            logger.error(f"Cannot retry {server_id} after authorization: {error}")
        else:
            try:
                tokens = await self._credential_lookup(server_id) if self._credential_lookup else None
                if tokens is None:
                    raise TransportError(server_id, "Missing stored credentials for retry")
                await self.connect(server_id, config, StaticCredential(tokens))
                success = True
                logger.info(f"Reconnected {server_id} after authorization")
            except AuthorizationRequiredError as e:
                error = str(e)
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.error(f"Retry after authorization failed for {server_id}: {error}")

        self.events.emit(AuthReconnectComplete(server_id=server_id, success=success, error=error))

    # =========================
    # Bulk
    # =========================

    async def connect_configured(self, settings: ServerSettings) -> Dict[str, List[Any]]:
        """
        Connect every enabled server concurrently.

        Returns:
            Summary with connected, authorization_required and failed entries
        """
        results: Dict[str, List[Any]] = {"connected": [], "authorization_required": [], "failed": []}
        for server_id, reason in settings.invalid.items():
            if server_id in settings.disabled_ids:
                continue
            error = InvalidConfigError(f"Server {server_id}: {reason}", details={"server_id": server_id})
            results["failed"].append({"server_id": server_id, "error": error.to_dict()})

        enabled = settings.enabled()
        if not enabled:
            logger.info("No enabled servers configured")
            return results

        async def attempt(server_id: str, definition: Dict[str, Any]) -> None:
            try:
                await self.connect(server_id, definition)
                results["connected"].append(server_id)
            except AuthorizationRequiredError:
                results["authorization_required"].append(server_id)
            except BridgeError as e:
                results["failed"].append({"server_id": server_id, "error": e.to_dict()})
            except Exception as e:
                logger.error(f"Unexpected error connecting {server_id}: {e}")
                results["failed"].append({"server_id": server_id, "error": {"code": "internal", "message": str(e)}})

        await asyncio.gather(*(attempt(sid, definition) for sid, definition in enabled.items()))
        logger.info(
            f"Startup connections: {len(results['connected'])} connected, "
            f"{len(results['authorization_required'])} awaiting authorization, "
            f"{len(results['failed'])} failed"
        )
        return results
