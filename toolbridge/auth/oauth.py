"""
OAuth 2.0 authorization-code + PKCE requests for remote MCP servers.

Models, PKCE parameters and error types come from the MCP SDK
(`mcp.shared.auth`, `mcp.client.auth`). The SDK runs these requests inside
its httpx auth flow, which blocks the request until the browser comes back;
here each step is a separate call so a connect attempt can be parked and
resumed after the callback arrives.

- Authorization server metadata discovery (RFC 8414), with the MCP
  convention-based fallback endpoints when no metadata is published
- Dynamic client registration (RFC 7591)
- Code exchange and refresh at the token endpoint
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlsplit, urlunsplit

import httpx
from mcp.client.auth import OAuthFlowError, OAuthRegistrationError, OAuthTokenError, PKCEParameters
from mcp.client.streamable_http import MCP_PROTOCOL_VERSION
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthMetadata, OAuthToken
from pydantic import ValidationError

from toolbridge.auth.models import StoredToken

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/oauth-authorization-server"


def server_origin(server_url: str) -> str:
    parsed = urlparse(server_url)
    return f"{parsed.scheme}://{parsed.netloc}"


def fallback_metadata(server_url: str) -> OAuthMetadata:
    """Convention-based endpoints used when discovery finds nothing."""
    origin = server_origin(server_url)
    return OAuthMetadata(
        issuer=origin,
        authorization_endpoint=f"{origin}/authorize",
        token_endpoint=f"{origin}/token",
        registration_endpoint=f"{origin}/register",
        code_challenge_methods_supported=["S256"],
    )


async def discover_metadata(
    client: httpx.AsyncClient,
    server_url: str,
    protocol_version: str,
) -> Optional[OAuthMetadata]:
    """Fetch authorization server metadata; None when the server has none."""
    url = server_origin(server_url) + WELL_KNOWN_PATH
    try:
        response = await client.get(url, headers={MCP_PROTOCOL_VERSION: protocol_version})
    except httpx.HTTPError as e:
        logger.warning(f"Metadata discovery failed for {url}: {e}")
        return None

    if response.status_code == 404:
        return None
    if response.status_code != 200:
        raise OAuthFlowError(f"HTTP {response.status_code} trying to load OAuth metadata from {url}")

    try:
        return OAuthMetadata.model_validate_json(response.content)
    except ValidationError as e:
        raise OAuthFlowError(f"Invalid OAuth metadata from {url}: {e}") from e


async def resolve_metadata(
    client: httpx.AsyncClient,
    server_url: str,
    protocol_version: str,
) -> OAuthMetadata:
    metadata = await discover_metadata(client, server_url, protocol_version)
    if metadata is None:
        logger.info(f"No OAuth metadata published by {server_origin(server_url)}; using fallback endpoints")
        return fallback_metadata(server_url)
    return metadata


async def register_client(
    client: httpx.AsyncClient,
    metadata: OAuthMetadata,
    client_metadata: OAuthClientMetadata,
) -> OAuthClientInformationFull:
    if not metadata.registration_endpoint:
        raise OAuthRegistrationError("Authorization server does not support dynamic client registration")

    response = await client.post(
        str(metadata.registration_endpoint),
        json=client_metadata.model_dump(by_alias=True, mode="json", exclude_none=True),
    )
    if response.status_code not in (200, 201):
        raise OAuthRegistrationError(f"Registration failed: HTTP {response.status_code} {response.text[:200]}")

    # Servers may echo only the issued credentials
    data = {**client_metadata.model_dump(mode="json", exclude_none=True), **response.json()}
    try:
        return OAuthClientInformationFull.model_validate(data)
    except ValidationError as e:
        raise OAuthRegistrationError(f"Invalid registration response: {e}") from e


def redirect_uris(client_info: OAuthClientInformationFull) -> list[str]:
    return [str(uri) for uri in client_info.redirect_uris]


def build_authorization_url(
    metadata: OAuthMetadata,
    client_info: OAuthClientInformationFull,
    redirect_uri: str,
    state: str,
    scope: Optional[str] = None,
) -> Tuple[str, str]:
    """Return (authorization_url, code_verifier)."""
    if "code" not in metadata.response_types_supported:
        raise OAuthFlowError("Authorization server does not support response type 'code'")
    methods = metadata.code_challenge_methods_supported
    if methods is not None and "S256" not in methods:
        raise OAuthFlowError("Authorization server does not support code challenge method 'S256'")

    pkce = PKCEParameters.generate()
    params = {
        "response_type": "code",
        "client_id": client_info.client_id,
        "code_challenge": pkce.code_challenge,
        "code_challenge_method": "S256",
        "redirect_uri": redirect_uri,
        "state": state,
    }
    if scope:
        params["scope"] = scope

    parts = urlsplit(str(metadata.authorization_endpoint))
    query = dict(parse_qsl(parts.query))
    query.update(params)
    url = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))
    return url, pkce.code_verifier


async def _token_request(
    client: httpx.AsyncClient,
    metadata: OAuthMetadata,
    client_info: OAuthClientInformationFull,
    form: dict,
) -> OAuthToken:
    form = dict(form, client_id=client_info.client_id)
    if client_info.client_secret:
        form["client_secret"] = client_info.client_secret

    response = await client.post(
        str(metadata.token_endpoint),
        data=form,
        headers={"Accept": "application/json"},
    )
    if response.status_code != 200:
        raise OAuthTokenError(
            f"Token request ({form['grant_type']}) failed: HTTP {response.status_code} {response.text[:200]}"
        )

    try:
        return OAuthToken.model_validate_json(response.content)
    except ValidationError as e:
        raise OAuthTokenError(f"Invalid token response: {e}") from e


async def exchange_authorization(
    client: httpx.AsyncClient,
    metadata: OAuthMetadata,
    client_info: OAuthClientInformationFull,
    authorization_code: str,
    code_verifier: str,
    redirect_uri: str,
) -> StoredToken:
    token = await _token_request(
        client,
        metadata,
        client_info,
        {
            "grant_type": "authorization_code",
            "code": authorization_code,
            "code_verifier": code_verifier,
            "redirect_uri": redirect_uri,
        },
    )
    return StoredToken.issued(token)


async def refresh_authorization(
    client: httpx.AsyncClient,
    metadata: OAuthMetadata,
    client_info: OAuthClientInformationFull,
    tokens: OAuthToken,
) -> StoredToken:
    if not tokens.refresh_token:
        raise OAuthTokenError("No refresh token available")

    token = await _token_request(
        client,
        metadata,
        client_info,
        {"grant_type": "refresh_token", "refresh_token": tokens.refresh_token},
    )
    return StoredToken.issued(token, previous=tokens)
