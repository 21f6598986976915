"""
Authorization Manager.

Runs the browser-based OAuth authorization-code + PKCE round trip for
remote servers and hands the resulting credential back to the connection
orchestrator.

Per-server state machine:

    NoAuth -> Initiating -> AwaitingCallback -> Exchanging -> Authorized
       ^__________|_______________|_________________|   (on failure)

Completed sub-steps (dynamic client registration in particular) are kept
across failures so a retry does not register again.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import webbrowser
from typing import Awaitable, Callable, Dict, Optional, Set

import httpx
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthMetadata

from toolbridge.auth import oauth
from toolbridge.auth.callback import CALLBACK_PATH, CallbackListener
from toolbridge.auth.models import AuthState, PendingFlow, StoredToken
from toolbridge.auth.store import CredentialStore
from toolbridge.errors import AuthorizationFailedError
from toolbridge.settings import BridgeSettings, get_settings
from toolbridge.utils import set_server_context

logger = logging.getLogger(__name__)

ReconnectHook = Callable[[str], Awaitable[None]]
HttpClientFactory = Callable[[], httpx.AsyncClient]


class AuthorizationManager:
    def __init__(
        self,
        store: CredentialStore,
        settings: Optional[BridgeSettings] = None,
        http_client_factory: Optional[HttpClientFactory] = None,
        open_browser: Callable[[str], object] = webbrowser.open,
        listener_factory: Callable[..., CallbackListener] = CallbackListener,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._http_client_factory = http_client_factory or self._default_http_client
        self._open_browser = open_browser
        self._listener_factory = listener_factory
        self._reconnect: Optional[ReconnectHook] = None
        self._states: Dict[str, AuthState] = {}
        self._listeners: Dict[str, CallbackListener] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _default_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.oauth_http_timeout, follow_redirects=True)

    def set_reconnect_hook(self, hook: Optional[ReconnectHook]) -> None:
        """Inject the orchestrator's retry function."""
        self._reconnect = hook

    def state(self, server_id: str) -> AuthState:
        return self._states.get(server_id, AuthState.NO_AUTH)

    def _set_state(self, server_id: str, state: AuthState) -> None:
        self._states[server_id] = state
        logger.debug(f"Authorization state for {server_id}: {state.value}")

    async def startup(self) -> None:
        """Forget flows left over from a previous run."""
        self.store.clear_flows()

    async def shutdown(self) -> None:
        for server_id in list(self._listeners):
            await self._close_listener(server_id)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _client_metadata(self, redirect_uri: str) -> OAuthClientMetadata:
        return OAuthClientMetadata(
            redirect_uris=[redirect_uri],
            client_name=self.settings.oauth_client_name,
            scope=self.settings.oauth_scope,
            token_endpoint_auth_method="none",
        )

    async def _close_listener(self, server_id: str) -> None:
        listener = self._listeners.pop(server_id, None)
        if listener is not None:
            await listener.stop()

    # =========================
    # Initiating -> AwaitingCallback
    # =========================

    async def start_authorization(self, server_id: str, server_url: str) -> str:
        """
        Begin the browser round trip for a server.

        Returns:
            The authorization URL handed to the browser

        Raises:
            AuthorizationFailedError: If any initiation step fails
        """
        set_server_context(server_id)
        logger.info(f"Initiating authorization for {server_id} at {server_url}")

        # A new flow supersedes whatever this server had in flight
        if server_id in self._listeners:
            logger.warning(f"Replacing open callback listener for {server_id}")
        await self._close_listener(server_id)
        self.store.discard_flows(server_id)
        self._set_state(server_id, AuthState.INITIATING)

        listener = self._listener_factory(
            on_code=self._on_code,
            on_error=lambda error: self._on_callback_error(server_id, listener, error),
            host=self.settings.callback_host,
            port_base=self.settings.callback_port_base,
            port_max=self.settings.callback_port_max,
        )

        try:
            port = await listener.start()
            self._listeners[server_id] = listener
            redirect_uri = listener.redirect_uri

            self.store.save_server_url(server_id, oauth.server_origin(server_url))

            async with self._http_client_factory() as client:
                metadata = await oauth.resolve_metadata(client, server_url, self.settings.mcp_protocol_version)
                client_info = await self._ensure_registration(client, server_id, metadata, redirect_uri)

            state = secrets.token_hex(16)
            authorization_url, code_verifier = oauth.build_authorization_url(
                metadata,
                client_info,
                redirect_uri,
                state,
                scope=self.settings.oauth_scope,
            )
            self.store.add_flow(
                PendingFlow(state=state, server_id=server_id, code_verifier=code_verifier, redirect_port=port)
            )

            self._set_state(server_id, AuthState.AWAITING_CALLBACK)
            logger.info(f"Opening browser for {server_id} authorization")
            self._open_browser(authorization_url)
            return authorization_url

        except Exception as e:
            logger.error(f"Authorization initiation failed for {server_id}: {e}")
            await self._close_listener(server_id)
            await listener.stop()
            self.store.discard_flows(server_id)
            self._set_state(server_id, AuthState.NO_AUTH)
            raise AuthorizationFailedError(server_id, f"Authorization initiation failed for {server_id}: {e}") from e

    async def _ensure_registration(
        self,
        client: httpx.AsyncClient,
        server_id: str,
        metadata: OAuthMetadata,
        redirect_uri: str,
    ) -> OAuthClientInformationFull:
        storage = self.store.for_server(server_id)
        existing = await storage.get_client_info()
        if existing is not None and redirect_uri in oauth.redirect_uris(existing):
            logger.info(f"Found existing client registration for {server_id}")
            return existing

        logger.info(f"No client registration for {server_id} at {redirect_uri}; registering dynamically")
        info = await oauth.register_client(client, metadata, self._client_metadata(redirect_uri))
        await storage.set_client_info(info)
        return info

    # =========================
    # Callback -> Exchanging -> Authorized
    # =========================

    def _spawn(self, coro: Awaitable[object]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_code(self, code: str, state: str) -> None:
        self._spawn(self.complete_authorization(code, state))

    def _on_callback_error(self, server_id: str, listener: CallbackListener, error: str) -> None:
        logger.error(f"Authorization for {server_id} was not granted: {error}")
        self.store.discard_flows(server_id)
        self._set_state(server_id, AuthState.NO_AUTH)
        self._spawn(self._retire_listener(server_id, listener.port))

    async def _retire_listener(self, server_id: str, port: Optional[int]) -> None:
        """Close the listener that served a callback, unless a newer flow replaced it."""
        listener = self._listeners.get(server_id)
        if listener is not None and listener.port == port:
            await self._close_listener(server_id)

    async def complete_authorization(self, code: str, state: str) -> bool:
        """
        Exchange an authorization code for tokens.

        Unknown or already-used state tokens are rejected with no side effect.

        Returns:
            True when tokens were stored (and the reconnect hook ran)
        """
        flow = self.store.consume_flow(state)
        if flow is None:
            logger.error("Received state does not match any active authorization flow")
            return False

        server_id = flow.server_id
        set_server_context(server_id)
        await self._retire_listener(server_id, flow.redirect_port)
        self._set_state(server_id, AuthState.EXCHANGING)
        logger.info(f"State verified for {server_id}; exchanging code for tokens")

        storage = self.store.for_server(server_id)
        try:
            server_url = self.store.server_url(server_id)
            if not server_url:
                raise RuntimeError(f"Server URL not found for {server_id}")
            client_info = await storage.get_client_info()
            if client_info is None:
                raise RuntimeError("Client information missing during token exchange")

            redirect_uri = f"http://{self.settings.callback_host}:{flow.redirect_port}{CALLBACK_PATH}"
            async with self._http_client_factory() as client:
                metadata = await oauth.resolve_metadata(client, server_url, self.settings.mcp_protocol_version)
                tokens = await oauth.exchange_authorization(
                    client,
                    metadata,
                    client_info,
                    authorization_code=code,
                    code_verifier=flow.code_verifier,
                    redirect_uri=redirect_uri,
                )
            await storage.set_tokens(tokens)
        except Exception as e:
            logger.error(f"Error exchanging authorization code for {server_id}: {e}")
            self._set_state(server_id, AuthState.NO_AUTH)
            return False

        self._set_state(server_id, AuthState.AUTHORIZED)
        logger.info(f"Authorization complete for {server_id}")

        if self._reconnect is not None:
            await self._reconnect(server_id)
        else:
            logger.warning(f"No reconnect hook set; {server_id} will not be reconnected")
        return True

    # =========================
    # Stored credentials
    # =========================

    async def refresh(self, server_id: str) -> Optional[StoredToken]:
        """Use the refresh token to obtain a new token set. None on failure."""
        storage = self.store.for_server(server_id)
        tokens = await storage.get_tokens()
        client_info = await storage.get_client_info()
        server_url = self.store.server_url(server_id)
        if not tokens or not tokens.refresh_token or not client_info or not server_url:
            return None

        try:
            async with self._http_client_factory() as client:
                metadata = await oauth.resolve_metadata(client, server_url, self.settings.mcp_protocol_version)
                refreshed = await oauth.refresh_authorization(client, metadata, client_info, tokens)
        except Exception as e:
            logger.warning(f"Token refresh failed for {server_id}: {e}")
            return None

        await storage.set_tokens(refreshed)
        logger.info(f"Refreshed tokens for {server_id}")
        return refreshed

    async def stored_credential(self, server_id: str) -> Optional[StoredToken]:
        """Persisted tokens for a server, refreshed first when expired."""
        tokens = await self.store.for_server(server_id).get_tokens()
        if tokens is None:
            return None
        if tokens.is_expired():
            return await self.refresh(server_id)
        return tokens
