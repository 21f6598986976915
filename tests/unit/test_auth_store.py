"""
Unit tests for toolbridge/auth/store.py - CredentialStore.
"""

import pytest
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken

from toolbridge.auth.models import PendingFlow, StoredToken


def flow(state="s1", server_id="remote", port=10000):
    return PendingFlow(state=state, server_id=server_id, code_verifier="verifier", redirect_port=port)


class TestDurableCredentials:
    def test_empty_store(self, store):
        """Test an unknown server has nothing stored."""
        assert store.server_url("remote") is None
        assert store.client_information("remote") is None
        assert store.tokens("remote") is None

    def test_round_trip(self, store):
        """Test URL, registration and tokens persist per server."""
        store.save_server_url("remote", "https://mcp.example.com")
        store.save_client_information(
            "remote", OAuthClientInformationFull(client_id="abc", redirect_uris=["http://127.0.0.1:10000/auth-callback"])
        )
        store.save_tokens("remote", StoredToken(access_token="tok", refresh_token="ref", expires_at=123.0))

        assert store.server_url("remote") == "https://mcp.example.com"
        assert store.client_information("remote").client_id == "abc"
        tokens = store.tokens("remote")
        assert tokens.access_token == "tok"
        assert tokens.refresh_token == "ref"
        assert tokens.expires_at == 123.0

    def test_tokens_overwritten(self, store):
        """Test saving tokens replaces the previous set."""
        store.save_tokens("remote", OAuthToken(access_token="one"))
        store.save_tokens("remote", OAuthToken(access_token="two"))
        assert store.tokens("remote").access_token == "two"

    def test_forget(self, store):
        """Test forget drops everything for a server."""
        store.save_tokens("remote", OAuthToken(access_token="tok"))
        assert store.forget("remote") is True
        assert store.tokens("remote") is None
        assert store.forget("remote") is False


class TestFlows:
    def test_consume_once(self, store):
        """Test a state token can be consumed exactly once."""
        store.add_flow(flow())

        first = store.consume_flow("s1")
        second = store.consume_flow("s1")

        assert first == flow()
        assert second is None

    def test_unknown_state(self, store):
        """Test an unknown state yields None."""
        assert store.consume_flow("nope") is None

    def test_discard_flows_for_server(self, store):
        """Test discarding only affects one server."""
        store.add_flow(flow("a", "remote"))
        store.add_flow(flow("b", "remote"))
        store.add_flow(flow("c", "other"))

        assert store.discard_flows("remote") == 2
        assert store.flows_for("remote") == []
        assert [f.state for f in store.flows_for("other")] == ["c"]

    def test_clear_flows(self, store):
        """Test clear_flows empties the table but keeps credentials."""
        store.save_tokens("remote", OAuthToken(access_token="tok"))
        store.add_flow(flow("a"))
        store.add_flow(flow("b", "other"))

        assert store.clear_flows() == 2
        assert store.consume_flow("a") is None
        assert store.tokens("remote") is not None


class TestServerTokenStorage:
    @pytest.mark.asyncio
    async def test_scoped_to_one_server(self, store):
        """Test the token storage reads and writes a single server's rows."""
        storage = store.for_server("remote")
        info = OAuthClientInformationFull(client_id="abc", redirect_uris=["http://127.0.0.1:10000/auth-callback"])

        await storage.set_client_info(info)
        await storage.set_tokens(OAuthToken(access_token="tok", expires_in=3600))

        assert (await storage.get_client_info()).client_id == "abc"
        assert store.tokens("remote").access_token == "tok"
        assert await store.for_server("other").get_tokens() is None

    @pytest.mark.asyncio
    async def test_plain_token_stamped_with_expiry(self, store):
        """Test a plain SDK token gains an absolute expiry when stored."""
        await store.for_server("remote").set_tokens(OAuthToken(access_token="tok", expires_in=3600))

        tokens = await store.for_server("remote").get_tokens()
        assert isinstance(tokens, StoredToken)
        assert tokens.expires_at is not None
        assert tokens.is_expired() is False
