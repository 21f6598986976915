"""
MCP transports.

Opens an initialized MCP ClientSession over one of:
- stdio: a local subprocess speaking JSON-RPC over stdin/stdout
- sse: a remote server-sent-events endpoint
- streamableHttp: a remote streaming HTTP endpoint

Remote 401 answers are surfaced as TransportAuthorizationError so callers
never have to sniff error messages.
"""

from __future__ import annotations

import logging
import ntpath
import os
import sys
from contextlib import AsyncExitStack, asynccontextmanager
from typing import IO, Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from toolbridge.auth.models import CredentialProvider, StaticCredential
from toolbridge.errors import TransportAuthorizationError
from toolbridge.external.config import ServerConnectionConfig, TransportKind
from toolbridge.settings import BridgeSettings
from toolbridge.utils import substitute_env_vars

logger = logging.getLogger(__name__)

# Launchers that may download or build the server before it answers
LAUNCHERS = ("uvx", "npx", "pipx", "bunx")
INTERPRETERS = ("python", "node", "deno")

_SCRIPT_SUFFIXES = (".exe", ".cmd", ".bat", ".sh")


def _command_name(command: str) -> str:
    name = ntpath.basename(command.replace("/", "\\")).lower()
    for suffix in _SCRIPT_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    if name.startswith("run-"):
        name = name[len("run-"):]
    return name


def connect_timeout(config: ServerConnectionConfig, settings: BridgeSettings) -> float:
    """Handshake timeout for a server, picked from an ordered table."""
    if config.is_network:
        return settings.network_connect_timeout

    name = _command_name(config.command or "")
    table: Tuple[Tuple[Tuple[str, ...], float], ...] = (
        (LAUNCHERS, settings.launcher_connect_timeout),
        (INTERPRETERS, settings.interpreter_connect_timeout),
    )
    for names, timeout in table:
        if any(name == candidate or name.startswith(candidate) for candidate in names):
            return timeout
    return settings.native_connect_timeout


def platform_paths(platform: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> List[str]:
    """Standard binary directories plus per-user tool directories."""
    platform = platform or sys.platform
    env = os.environ if env is None else env

    if platform == "win32":
        system_root = env.get("SystemRoot")
        profile = env.get("USERPROFILE")
        paths = [
            f"{system_root}\\System32" if system_root else None,
            system_root,
            f"{profile}\\.deno\\bin" if profile else None,
        ]
    else:
        home = env.get("HOME")
        paths = ["/usr/local/bin", "/usr/bin", "/bin", "/usr/sbin", "/sbin"]
        if platform == "darwin":
            paths += [f"{home}/.deno/bin" if home else None, "/opt/homebrew/bin"]
        else:
            paths += [f"{home}/.deno/bin" if home else None, f"{home}/.local/bin" if home else None]

    return [p for p in paths if p]


def build_env(
    config: ServerConnectionConfig,
    base_env: Optional[Dict[str, str]] = None,
    platform: Optional[str] = None,
) -> Dict[str, str]:
    """Environment for a subprocess server: inherited env, config env, augmented PATH."""
    platform = platform or sys.platform
    base = dict(os.environ if base_env is None else base_env)
    separator = ";" if platform == "win32" else ":"
    custom = substitute_env_vars(dict(config.env))

    combined: List[str] = []
    for entry in [
        *platform_paths(platform, base),
        *base.get("PATH", "").split(separator),
        *custom.get("PATH", "").split(separator),
    ]:
        if entry and entry not in combined:
            combined.append(entry)

    env = {**base, **custom}
    env["PATH"] = separator.join(combined)
    return env


def working_directory(command: Optional[str]) -> Optional[str]:
    if command and os.path.isabs(command):
        return os.path.dirname(command)
    return None


def find_unauthorized(exc: BaseException) -> bool:
    """Look through causes, contexts and exception groups for a 401."""
    seen = set()
    stack: List[BaseException] = [exc]
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))

        if isinstance(current, TransportAuthorizationError):
            return True
        if isinstance(current, httpx.HTTPStatusError) and current.response.status_code == 401:
            return True
        if isinstance(current, BaseExceptionGroup):
            stack.extend(current.exceptions)
        if current.__cause__ is not None:
            stack.append(current.__cause__)
        if current.__context__ is not None:
            stack.append(current.__context__)
    return False


class TransportSession:
    """
    One attempt at opening an MCP session for a server.

    Usage:
        transport = TransportSession("github", config, command="/usr/bin/npx")
        async with transport.open() as session:
            await session.list_tools()
    """

    def __init__(
        self,
        server_id: str,
        config: ServerConnectionConfig,
        command: Optional[str] = None,
        credential: Optional[CredentialProvider] = None,
        errlog: Optional[IO[Any]] = None,
    ):
        self.server_id = server_id
        self.config = config
        self.command = command or config.command
        self.credential = credential
        self.errlog = errlog
        self.saw_unauthorized = False

    def _headers(self) -> Dict[str, str]:
        headers = dict(self.config.headers)
        if isinstance(self.credential, StaticCredential):
            headers["Authorization"] = f"Bearer {self.credential.tokens.access_token}"
        return headers

    async def _on_response(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            self.saw_unauthorized = True

    def _http_client_factory(
        self,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[httpx.Timeout] = None,
        auth: Optional[httpx.Auth] = None,
    ) -> httpx.AsyncClient:
        # Records 401s even when the SDK swallows the error in a background task
        return httpx.AsyncClient(
            headers=headers,
            timeout=timeout or httpx.Timeout(30.0, read=300.0),
            auth=auth,
            follow_redirects=True,
            event_hooks={"response": [self._on_response]},
        )

    @asynccontextmanager
    async def _streams(self) -> AsyncIterator[Tuple[Any, Any]]:
        kind = self.config.transport

        if kind == TransportKind.SSE:
            logger.info(f"Opening SSE transport for {self.server_id}: {self.config.url}")
            async with sse_client(
                self.config.url,
                headers=self._headers(),
                httpx_client_factory=self._http_client_factory,
            ) as (read_stream, write_stream):
                yield read_stream, write_stream

        elif kind == TransportKind.STREAMABLE_HTTP:
            logger.info(f"Opening streamable HTTP transport for {self.server_id}: {self.config.url}")
            async with streamablehttp_client(
                self.config.url,
                headers=self._headers(),
                httpx_client_factory=self._http_client_factory,
            ) as (read_stream, write_stream, _get_session_id):
                yield read_stream, write_stream

        else:
            params = StdioServerParameters(
                command=self.command,
                args=list(self.config.args),
                env=build_env(self.config),
                cwd=working_directory(self.command),
            )
            logger.info(f"Starting {self.server_id}: {self.command} {' '.join(self.config.args)}")
            async with stdio_client(params, errlog=self.errlog or sys.stderr) as (read_stream, write_stream):
                yield read_stream, write_stream

    @asynccontextmanager
    async def open(self) -> AsyncIterator[ClientSession]:
        """Open the transport and perform the MCP handshake."""
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await stack.enter_async_context(self._streams())
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
                await session.initialize()
                yield session
        except TransportAuthorizationError:
            raise
        except Exception as e:
            if self.saw_unauthorized or find_unauthorized(e):
                raise TransportAuthorizationError(self.server_id, f"{self.server_id} answered 401 Unauthorized") from e
            raise
