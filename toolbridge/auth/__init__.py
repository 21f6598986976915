"""
OAuth Authorization Subsystem.

Provides functionality to:
- Discover authorization server metadata and register clients dynamically
- Run the browser round trip through a single-use loopback listener
- Persist client registrations and token sets per server
"""

from toolbridge.auth.callback import CallbackListener
from toolbridge.auth.manager import AuthorizationManager
from toolbridge.auth.models import (
    AuthState,
    CredentialProvider,
    InteractiveCredential,
    StaticCredential,
    StoredToken,
)
from toolbridge.auth.store import CredentialStore, ServerTokenStorage

__all__ = [
    "AuthorizationManager",
    "AuthState",
    "CallbackListener",
    "CredentialProvider",
    "CredentialStore",
    "InteractiveCredential",
    "ServerTokenStorage",
    "StaticCredential",
    "StoredToken",
]
