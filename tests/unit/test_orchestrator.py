"""
Unit tests for toolbridge/external/orchestrator.py - ConnectionOrchestrator.
"""

import asyncio
import os
from unittest.mock import AsyncMock

import httpx
import pytest

from tests.utils.fakes import FakeSession, make_tool
from toolbridge.auth.models import StaticCredential, StoredToken
from toolbridge.errors import (
    AuthorizationRequiredError,
    ConnectTimeoutError,
    HealthCheckFailure,
    InvalidConfigError,
    ServerNotConnectedError,
    ToolNotFoundError,
    TransportAuthorizationError,
    TransportError,
)
from toolbridge.events import AuthReconnectComplete, LogChunk, StatusChanged
from toolbridge.external.config import ServerSettings, ServerSettingsStore, parse_server_config
from toolbridge.external.orchestrator import ConnectionOrchestrator

STDIO = {"transport": "stdio", "command": "node", "args": ["server.js"]}
REMOTE = {"transport": "streamableHttp", "url": "https://mcp.example.com/mcp"}


@pytest.fixture
def orchestrator(settings, resolver, recorder, transports):
    return ConnectionOrchestrator(
        settings=settings,
        resolver=resolver,
        events=recorder.bus,
        transport_factory=transports,
    )


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def http_401() -> httpx.HTTPStatusError:
    request = httpx.Request("POST", REMOTE["url"])
    return httpx.HTTPStatusError("401", request=request, response=httpx.Response(401, request=request))


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_registers_tools(self, orchestrator, recorder, transports):
        """Test a successful connect returns and registers the server's tools."""
        tools = await orchestrator.connect("fs", STDIO)

        assert [t.name for t in tools] == ["echo"]
        assert orchestrator.connected_ids() == ["fs"]
        assert [t.server_id for t in orchestrator.get_tools()] == ["fs"]

        status = recorder.of_type(StatusChanged)[-1]
        assert status.connected_ids == ("fs",)
        assert [t.name for t in status.tools] == ["echo"]
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_subprocess_command_resolved(self, orchestrator, resolver, transports):
        """Test stdio commands go through the resolver and get a stderr pipe."""
        await orchestrator.connect("fs", STDIO)

        resolver.resolve.assert_called_once_with("node")
        assert transports.last.command == "/usr/bin/node"
        assert transports.last.errlog is not None
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_network_has_no_stderr_pipe(self, orchestrator, resolver, transports):
        """Test remote transports skip command resolution."""
        await orchestrator.connect("remote", REMOTE)

        resolver.resolve.assert_not_called()
        assert transports.last.errlog is None
        assert transports.last.command is None
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_connect_twice_leaves_one_connection(self, orchestrator, transports):
        """Test reconnecting an id replaces the old connection without duplicate tools."""
        await orchestrator.connect("fs", STDIO)
        first = orchestrator.connections["fs"]

        await orchestrator.connect("fs", STDIO)

        assert orchestrator.connected_ids() == ["fs"]
        assert [t.name for t in orchestrator.get_tools()] == ["echo"]
        assert first.is_closed is True
        assert transports.created[0].exited is True
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_stops_prior_health_timer(self, orchestrator):
        """Test the old connection's health monitor is stopped before the new one starts."""
        await orchestrator.connect("fs", STDIO)
        old_health = orchestrator.connections["fs"].health
        assert old_health.running is True

        await orchestrator.connect("fs", STDIO)
        await asyncio.sleep(0)

        assert old_health.running is False
        assert orchestrator.connections["fs"].health is not old_health
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_invalid_config_fails_fast(self, orchestrator, transports):
        """Test malformed definitions raise before any transport is built."""
        with pytest.raises(InvalidConfigError):
            await orchestrator.connect("fs", {"transport": "stdio"})
        assert transports.created == []

    @pytest.mark.asyncio
    async def test_handshake_failure_rolls_back(self, orchestrator, recorder, transports):
        """Test a failed handshake rolls back without a status notification."""
        transports.error = ConnectionRefusedError("refused")

        with pytest.raises(TransportError, match="refused"):
            await orchestrator.connect("fs", STDIO)

        assert orchestrator.connections == {}
        assert orchestrator.get_tools() == []
        assert recorder.of_type(StatusChanged) == []

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, orchestrator, settings, transports):
        """Test a hanging handshake raises ConnectTimeoutError and rolls back."""
        settings.native_connect_timeout = 0.05
        settings.interpreter_connect_timeout = 0.05
        transports.hang = True

        with pytest.raises(ConnectTimeoutError) as exc_info:
            await orchestrator.connect("fs", STDIO)

        assert exc_info.value.details["stage"] == "Handshake"
        assert orchestrator.connections == {}

    @pytest.mark.asyncio
    async def test_discovery_timeout(self, orchestrator, settings, transports):
        """Test slow capability discovery times out and rolls back."""
        session = FakeSession()

        async def slow():
            await asyncio.sleep(10)

        session.list_tools = AsyncMock(side_effect=slow)
        transports.session = session
        settings.list_tools_timeout = 0.05

        with pytest.raises(ConnectTimeoutError) as exc_info:
            await orchestrator.connect("fs", STDIO)

        assert exc_info.value.details["stage"] == "Tool discovery"
        assert orchestrator.connections == {}
        assert orchestrator.get_tools() == []
        assert transports.last.exited is True

    @pytest.mark.asyncio
    async def test_failure_after_mapping_notifies_once(self, orchestrator, recorder, transports):
        """Test a connection that fails after the handshake is reported gone exactly once."""
        session = FakeSession()
        session.list_tools = AsyncMock(side_effect=RuntimeError("broken"))
        transports.session = session

        with pytest.raises(TransportError, match="broken"):
            await orchestrator.connect("fs", STDIO)

        statuses = recorder.of_type(StatusChanged)
        assert len(statuses) == 1
        assert statuses[0].connected_ids == ()

    @pytest.mark.asyncio
    async def test_cancelled_discovery_rolls_back(self, orchestrator, transports):
        """Test cancelling connect during tool discovery unmaps and closes the connection."""
        session = FakeSession()
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(10)

        session.list_tools = AsyncMock(side_effect=hang)
        transports.session = session

        task = asyncio.create_task(orchestrator.connect("fs", STDIO))
        await asyncio.wait_for(started.wait(), 2.0)
        connection = orchestrator.connections["fs"]

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.connections == {}
        assert orchestrator.get_tools() == []
        assert connection.is_closed is True
        assert connection.health is None or connection.health.running is False
        assert transports.last.exited is True

    @pytest.mark.asyncio
    async def test_failure_clears_pending_auth(self, orchestrator, transports):
        """Test a non-auth failure discards a parked authorization."""
        orchestrator.pending_auth["remote"] = object()
        transports.error = ConnectionRefusedError("refused")

        with pytest.raises(TransportError):
            await orchestrator.connect("remote", REMOTE)

        assert orchestrator.pending_authorization("remote") is None


class TestAuthorizationClassification:
    @pytest.mark.asyncio
    async def test_unauthorized_parks_config(self, orchestrator, transports):
        """Test a 401 without credential records pending auth."""
        transports.error = TransportAuthorizationError("remote")

        with pytest.raises(AuthorizationRequiredError) as exc_info:
            await orchestrator.connect("remote", REMOTE)

        assert exc_info.value.stale_credential is False
        assert orchestrator.pending_authorization("remote").url == REMOTE["url"]
        assert orchestrator.connections == {}

    @pytest.mark.asyncio
    async def test_unauthorized_from_exception_group(self, orchestrator, transports):
        """Test a 401 buried in an exception group is classified as auth."""
        transports.error = ExceptionGroup("task group", [http_401()])

        with pytest.raises(AuthorizationRequiredError):
            await orchestrator.connect("remote", REMOTE)

    @pytest.mark.asyncio
    async def test_unauthorized_seen_by_http_client(self, orchestrator, transports):
        """Test a 401 observed by the transport's client counts even if the error hides it."""
        transports.error = RuntimeError("stream closed")
        transports.saw_unauthorized = True

        with pytest.raises(AuthorizationRequiredError):
            await orchestrator.connect("remote", REMOTE)

    @pytest.mark.asyncio
    async def test_unauthorized_with_explicit_credential(self, orchestrator, transports):
        """Test a 401 with an issued token does not loop back into authorization."""
        transports.error = TransportAuthorizationError("remote")
        credential = StaticCredential(StoredToken(access_token="expired"))

        with pytest.raises(AuthorizationRequiredError) as exc_info:
            await orchestrator.connect("remote", REMOTE, credential)

        assert exc_info.value.stale_credential is True
        assert orchestrator.pending_authorization("remote") is None
        assert transports.last.credential is credential

    @pytest.mark.asyncio
    async def test_stored_credential_used(self, settings, resolver, recorder, transports):
        """Test persisted tokens are offered to network transports."""
        tokens = StoredToken(access_token="stored")
        lookup = AsyncMock(return_value=tokens)
        orchestrator = ConnectionOrchestrator(
            settings=settings, resolver=resolver, events=recorder.bus,
            transport_factory=transports, credential_lookup=lookup,
        )

        await orchestrator.connect("remote", REMOTE)

        lookup.assert_awaited_once_with("remote")
        assert transports.last.credential == StaticCredential(tokens)
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_stored_credential_rejected_asks_for_auth(self, settings, resolver, recorder, transports):
        """Test a rejected stored token behaves like no credential."""
        orchestrator = ConnectionOrchestrator(
            settings=settings, resolver=resolver, events=recorder.bus, transport_factory=transports,
            credential_lookup=AsyncMock(return_value=StoredToken(access_token="old")),
        )
        transports.error = TransportAuthorizationError("remote")

        with pytest.raises(AuthorizationRequiredError) as exc_info:
            await orchestrator.connect("remote", REMOTE)

        assert exc_info.value.stale_credential is False
        assert orchestrator.pending_authorization("remote") is not None

    @pytest.mark.asyncio
    async def test_success_clears_pending(self, orchestrator):
        """Test a successful connect drops the parked config."""
        orchestrator.pending_auth["remote"] = object()
        await orchestrator.connect("remote", REMOTE)
        assert orchestrator.pending_authorization("remote") is None
        await orchestrator.shutdown()


class TestRetryAfterAuth:
    @pytest.mark.asyncio
    async def test_retry_connects_with_tokens(self, settings, resolver, recorder, transports):
        """Test the reconnect hook uses fresh tokens and reports success once."""
        tokens = StoredToken(access_token="fresh")
        orchestrator = ConnectionOrchestrator(
            settings=settings, resolver=resolver, events=recorder.bus, transport_factory=transports,
            credential_lookup=AsyncMock(return_value=tokens),
        )
        transports.error = TransportAuthorizationError("remote")
        with pytest.raises(AuthorizationRequiredError):
            await orchestrator.connect("remote", REMOTE)

        transports.error = None
        await orchestrator.retry_after_auth("remote")

        completions = recorder.of_type(AuthReconnectComplete)
        assert completions == [AuthReconnectComplete(server_id="remote", success=True, error=None)]
        assert transports.last.credential == StaticCredential(tokens)
        assert orchestrator.connected_ids() == ["remote"]
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_retry_without_pending(self, orchestrator, recorder):
        """Test retry for an unknown id reports failure without raising."""
        await orchestrator.retry_after_auth("ghost")

        completion = recorder.of_type(AuthReconnectComplete)[0]
        assert completion.success is False
        assert "not found" in completion.error

    @pytest.mark.asyncio
    async def test_retry_rejected_token(self, settings, resolver, recorder, transports):
        """Test a token rejected on retry reports exactly one failure."""
        orchestrator = ConnectionOrchestrator(
            settings=settings, resolver=resolver, events=recorder.bus, transport_factory=transports,
            credential_lookup=AsyncMock(return_value=StoredToken(access_token="bad")),
        )
        orchestrator.pending_auth["remote"] = parse_server_config("remote", REMOTE)
        transports.error = TransportAuthorizationError("remote")

        await orchestrator.retry_after_auth("remote")

        completions = recorder.of_type(AuthReconnectComplete)
        assert len(completions) == 1
        assert completions[0].success is False
        assert "issued credential" in completions[0].error

    @pytest.mark.asyncio
    async def test_retry_missing_tokens(self, orchestrator, recorder):
        """Test retry without stored tokens reports failure."""
        orchestrator.pending_auth["remote"] = parse_server_config("remote", REMOTE)
        await orchestrator.retry_after_auth("remote")

        completion = recorder.of_type(AuthReconnectComplete)[0]
        assert completion.success is False
        assert "Missing stored credentials" in completion.error


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_unknown_is_noop(self, orchestrator, recorder):
        """Test disconnecting an id with no connection succeeds quietly."""
        assert await orchestrator.disconnect("ghost") is False
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_disconnect_tears_down(self, orchestrator, recorder, transports):
        """Test disconnect removes the connection and its tools."""
        await orchestrator.connect("fs", STDIO)
        connection = orchestrator.connections["fs"]

        assert await orchestrator.disconnect("fs") is True

        assert orchestrator.connections == {}
        assert orchestrator.get_tools() == []
        assert connection.health.running is False
        assert transports.last.exited is True
        assert recorder.of_type(StatusChanged)[-1].connected_ids == ()

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, orchestrator):
        """Test shutdown tears down every connection."""
        await orchestrator.connect("a", STDIO)
        await orchestrator.connect("b", REMOTE)

        await orchestrator.shutdown()

        assert orchestrator.connections == {}


class TestHealthFailure:
    @pytest.mark.asyncio
    async def test_failed_probe_removes_connection(self, orchestrator, recorder, settings):
        """Test a failed probe tears down and notifies exactly once."""
        await orchestrator.connect("fs", STDIO)
        connection = orchestrator.connections["fs"]
        connection.session.list_tools.side_effect = RuntimeError("dead")
        before = len(recorder.of_type(StatusChanged))

        await connection.health.probe_once()

        assert orchestrator.connections == {}
        assert orchestrator.get_tools() == []
        statuses = recorder.of_type(StatusChanged)
        assert len(statuses) == before + 1
        assert statuses[-1].connected_ids == ()
        assert "dead" in connection.last_error

    @pytest.mark.asyncio
    async def test_session_exit_removes_connection(self, orchestrator, recorder, transports):
        """Test a session ending on its own goes through the health failure path."""
        await orchestrator.connect("fs", STDIO)
        before = len(recorder.of_type(StatusChanged))

        transports.last.end_session()
        await wait_for(lambda: "fs" not in orchestrator.connections)
        await asyncio.sleep(0.02)

        assert len(recorder.of_type(StatusChanged)) == before + 1

    @pytest.mark.asyncio
    async def test_stderr_eof_triggers_probe(self, orchestrator, transports):
        """Test closing stderr leads to an immediate probe."""
        await orchestrator.connect("fs", STDIO)
        session = transports.last.session
        probes_before = session.list_tools.await_count

        transports.last.close_stderr()
        await wait_for(lambda: session.list_tools.await_count > probes_before)

        assert orchestrator.get_logs("fs")[-1] == "[stderr stream closed]"
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_stale_connection_failure_is_silent(self, orchestrator, recorder):
        """Test a failure report from a replaced connection leaves the new one alone."""
        await orchestrator.connect("fs", STDIO)
        old = orchestrator.connections["fs"]
        await orchestrator.connect("fs", STDIO)
        before = len(recorder.of_type(StatusChanged))

        await orchestrator._on_health_failure(old, HealthCheckFailure("fs", "late"))

        assert orchestrator.connected_ids() == ["fs"]
        assert len(recorder.of_type(StatusChanged)) == before
        await orchestrator.shutdown()


class TestLogs:
    @pytest.mark.asyncio
    async def test_stderr_forwarded_as_log_chunks(self, orchestrator, recorder, transports):
        """Test stderr output is buffered and emitted."""
        await orchestrator.connect("fs", STDIO)
        os.write(transports.last.stderr_fd, b"listening on stdio\n")

        await wait_for(lambda: orchestrator.get_logs("fs"))

        assert orchestrator.get_logs("fs") == ["listening on stdio"]
        assert recorder.of_type(LogChunk)[0] == LogChunk(server_id="fs", chunk="listening on stdio")
        await orchestrator.shutdown()

    def test_logs_for_unknown_id(self, orchestrator):
        """Test unknown ids have no logs."""
        assert orchestrator.get_logs("ghost") == []


class TestCallTool:
    @pytest.mark.asyncio
    async def test_routes_to_owner(self, orchestrator, transports):
        """Test a call is routed to the server that offers the tool."""
        await orchestrator.connect("fs", STDIO)

        result = await orchestrator.call_tool("echo", {"text": "hi"})

        assert result == {"content": [{"type": "text", "text": "ok"}], "isError": False}
        transports.last.session.call_tool.assert_awaited_once_with("echo", {"text": "hi"})
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_tool(self, orchestrator):
        """Test calling an unknown tool raises ToolNotFoundError."""
        with pytest.raises(ToolNotFoundError):
            await orchestrator.call_tool("nope")

    @pytest.mark.asyncio
    async def test_owner_gone(self, orchestrator):
        """Test a descriptor whose session is gone raises ServerNotConnectedError."""
        await orchestrator.connect("fs", STDIO)
        orchestrator.connections["fs"].session = None

        with pytest.raises(ServerNotConnectedError):
            await orchestrator.call_tool("echo")
        await orchestrator.shutdown()


class TestConnectConfigured:
    @pytest.mark.asyncio
    async def test_summary(self, orchestrator, transports):
        """Test enabled servers connect concurrently and failures are summarized."""
        settings = ServerSettings(
            servers={
                "fs": dict(STDIO),
                "broken": {"transport": "stdio"},
                "off": dict(STDIO),
            },
            disabled_ids=["off"],
        )

        results = await orchestrator.connect_configured(settings)

        assert results["connected"] == ["fs"]
        assert results["failed"][0]["server_id"] == "broken"
        assert results["failed"][0]["error"]["code"] == "invalid_config"
        assert "off" not in orchestrator.connections
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_scalar_entry_reported_per_server(self, orchestrator, tmp_path):
        """Test a non-mapping entry in the servers file fails alone while the rest connect."""
        path = tmp_path / "servers.yaml"
        path.write_text("servers:\n  broken: npx\n  ok:\n    command: node\n")

        results = await orchestrator.connect_configured(ServerSettingsStore(path).load())

        assert results["connected"] == ["ok"]
        assert results["failed"][0]["server_id"] == "broken"
        assert results["failed"][0]["error"]["code"] == "invalid_config"
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_auth_required_listed(self, orchestrator, transports):
        """Test servers needing authorization are reported separately."""
        transports.error = TransportAuthorizationError("remote")

        results = await orchestrator.connect_configured(ServerSettings(servers={"remote": dict(REMOTE)}))

        assert results["authorization_required"] == ["remote"]
        assert results["failed"] == []


class TestMultipleServers:
    @pytest.mark.asyncio
    async def test_tools_merged(self, orchestrator, transports):
        """Test tools from several servers are merged."""
        transports.session = FakeSession([make_tool("read"), make_tool("write")])
        await orchestrator.connect("fs", STDIO)
        transports.session = FakeSession([make_tool("search")])
        await orchestrator.connect("web", REMOTE)

        assert sorted(t.name for t in orchestrator.get_tools()) == ["read", "search", "write"]
        await orchestrator.disconnect("fs")
        assert [t.name for t in orchestrator.get_tools()] == ["search"]
        await orchestrator.shutdown()
