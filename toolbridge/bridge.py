"""
ToolBridge facade.

Wires the pieces together for a host application:

    bridge = ToolBridge()
    await bridge.startup()
    bridge.subscribe(print)
    tools = bridge.get_tools()
    result = await bridge.call_tool("read_file", {"path": "/tmp/x"})
    await bridge.shutdown()
"""

from __future__ import annotations

import logging
import webbrowser
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from toolbridge.auth.manager import AuthorizationManager
from toolbridge.auth.store import CredentialStore
from toolbridge.db.database import init_db
from toolbridge.errors import AuthorizationRequiredError, InvalidConfigError
from toolbridge.events import Event, EventBus
from toolbridge.external.config import ServerConnectionConfig, ServerSettingsStore, parse_server_config
from toolbridge.external.orchestrator import ConnectionOrchestrator, TransportFactory
from toolbridge.registry import ToolDescriptor
from toolbridge.settings import BridgeSettings, get_settings

logger = logging.getLogger(__name__)


class ToolBridge:
    def __init__(
        self,
        settings: Optional[BridgeSettings] = None,
        store: Optional[CredentialStore] = None,
        settings_store: Optional[ServerSettingsStore] = None,
        transport_factory: Optional[TransportFactory] = None,
        open_browser: Callable[[str], object] = webbrowser.open,
        auto_authorize: bool = True,
    ):
        self.settings = settings or get_settings()
        if store is None:
            init_db()
            store = CredentialStore()
        self.store = store
        self.settings_store = settings_store or ServerSettingsStore(self.settings.servers_config_path)
        self.events = EventBus()
        self.auth = AuthorizationManager(store, settings=self.settings, open_browser=open_browser)
        self.orchestrator = ConnectionOrchestrator(
            settings=self.settings,
            events=self.events,
            transport_factory=transport_factory,
            credential_lookup=self.auth.stored_credential,
        )
        self.auth.set_reconnect_hook(self.orchestrator.retry_after_auth)
        self.auto_authorize = auto_authorize

    # =========================
    # Lifecycle
    # =========================

    async def startup(self, connect: bool = True) -> Dict[str, List[Any]]:
        """Clear stale authorization flows and connect every enabled server."""
        await self.auth.startup()
        if not connect:
            return {"connected": [], "authorization_required": [], "failed": []}

        results = await self.orchestrator.connect_configured(self.settings_store.load())
        if self.auto_authorize:
            for server_id in results["authorization_required"]:
                await self._authorize_pending(server_id)
        return results

    async def shutdown(self) -> None:
        await self.orchestrator.shutdown()
        await self.auth.shutdown()
        logger.info("ToolBridge shut down")

    def subscribe(self, listener: Callable[[Event], None]) -> Callable[[], None]:
        return self.events.subscribe(listener)

    # =========================
    # Connections
    # =========================

    def _configured(self, server_id: str) -> Dict[str, Any]:
        definition = self.settings_store.load().servers.get(server_id)
        if definition is None:
            raise InvalidConfigError(f"Server {server_id} is not configured", details={"server_id": server_id})
        return definition

    async def connect(
        self,
        server_id: str,
        config: Union[ServerConnectionConfig, Mapping[str, Any], None] = None,
    ) -> List[ToolDescriptor]:
        """
        Connect a server, from the given config or its configured definition.

        The server is removed from the disabled list. When the server needs
        authorization the browser flow is started before the error is raised.

        Raises:
            AuthorizationRequiredError: The browser flow was started (or the
                issued credential was rejected)
        """
        config = parse_server_config(server_id, config if config is not None else self._configured(server_id))
        self.settings_store.set_enabled(server_id, True)
        try:
            return await self.orchestrator.connect(server_id, config)
        except AuthorizationRequiredError as e:
            if self.auto_authorize and not e.stale_credential:
                await self._authorize_pending(server_id)
            raise

    async def disconnect(self, server_id: str) -> bool:
        """Disconnect a server and add it to the disabled list."""
        self.settings_store.set_enabled(server_id, False)
        return await self.orchestrator.disconnect(server_id)

    def get_tools(self) -> List[ToolDescriptor]:
        return self.orchestrator.get_tools()

    def get_logs(self, server_id: str) -> List[str]:
        return self.orchestrator.get_logs(server_id)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.orchestrator.call_tool(name, arguments)

    # =========================
    # Authorization
    # =========================

    async def _authorize_pending(self, server_id: str) -> None:
        try:
            await self.start_authorization(server_id)
        except Exception as e:
            logger.error(f"Could not start authorization for {server_id}: {e}")

    async def start_authorization(self, server_id: str, url: Optional[str] = None) -> str:
        """
        Open the browser authorization flow for a remote server.

        The URL defaults to the parked connection attempt, then to the
        configured definition. The connect is retried once tokens arrive.
        """
        config = self.orchestrator.pending_authorization(server_id)
        if config is None:
            if url is None:
                config = parse_server_config(server_id, self._configured(server_id))
            else:
                config = parse_server_config(server_id, {"transport": "streamableHttp", "url": url})
            if not config.is_network:
                raise InvalidConfigError(
                    f"Server {server_id} uses {config.transport.value}; only remote servers can be authorized",
                    details={"server_id": server_id},
                )
            # Park it so the reconnect after the browser round trip knows where to go
            self.orchestrator.pending_auth[server_id] = config
        return await self.auth.start_authorization(server_id, url or config.url)
