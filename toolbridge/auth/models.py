"""OAuth state and the credential variant handed to transports.

Wire models (metadata, client registration, tokens) are the MCP SDK's own
`mcp.shared.auth` types; this module only adds what the SDK does not track.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from mcp.shared.auth import OAuthToken


class AuthState(str, Enum):
    NO_AUTH = "no_auth"
    INITIATING = "initiating"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    AUTHORIZED = "authorized"


class StoredToken(OAuthToken):
    """An OAuthToken stamped with the absolute time it expires."""

    expires_at: Optional[float] = None

    @classmethod
    def issued(cls, token: OAuthToken, previous: Optional[OAuthToken] = None) -> "StoredToken":
        """Stamp a token endpoint response.

        Refresh responses may omit the refresh token; the previous one is kept.
        """
        data = token.model_dump()
        if token.expires_in is not None:
            data["expires_at"] = time.time() + token.expires_in
        if not token.refresh_token and previous is not None and previous.refresh_token:
            data["refresh_token"] = previous.refresh_token
        return cls.model_validate(data)

    def is_expired(self, leeway: float = 30.0) -> bool:
        if self.expires_at is None:
            return False
        return time.time() + leeway >= self.expires_at


@dataclass(frozen=True)
class PendingFlow:
    state: str
    server_id: str
    code_verifier: str
    redirect_port: int


@dataclass(frozen=True)
class InteractiveCredential:
    """No credential yet: a 401 starts the browser authorization flow."""

    kind: str = "interactive"


@dataclass(frozen=True)
class StaticCredential:
    """An already-issued token, sent as an Authorization header."""

    tokens: OAuthToken
    kind: str = "static"


CredentialProvider = Union[InteractiveCredential, StaticCredential]
