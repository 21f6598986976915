"""
Credential persistence.

Per-server client registration and token set survive restarts. The
in-flight flow table (state token -> verifier, port) is transient and is
cleared wholesale on every process start.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from mcp.client.auth import TokenStorage
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from toolbridge.auth.models import PendingFlow, StoredToken
from toolbridge.db.database import get_session_factory
from toolbridge.db.models import OAuthCredential, OAuthFlow

logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def _session(self) -> Session:
        factory = self._session_factory or get_session_factory()
        return factory()

    def _get_or_create(self, db: Session, server_id: str) -> OAuthCredential:
        record = db.get(OAuthCredential, server_id)
        if record is None:
            record = OAuthCredential(server_id=server_id)
            db.add(record)
        return record

    # =========================
    # Durable credentials
    # =========================

    def server_url(self, server_id: str) -> Optional[str]:
        with self._session() as db:
            record = db.get(OAuthCredential, server_id)
            return record.server_url if record else None

    def save_server_url(self, server_id: str, server_url: str) -> None:
        with self._session() as db:
            record = self._get_or_create(db, server_id)
            record.server_url = server_url
            db.commit()

    def client_information(self, server_id: str) -> Optional[OAuthClientInformationFull]:
        with self._session() as db:
            record = db.get(OAuthCredential, server_id)
            if record is None or not record.client_info:
                return None
            return OAuthClientInformationFull.model_validate(record.client_info)

    def save_client_information(self, server_id: str, info: OAuthClientInformationFull) -> None:
        with self._session() as db:
            record = self._get_or_create(db, server_id)
            record.client_info = info.model_dump(mode="json", exclude_none=True)
            db.commit()
        logger.info(f"Saved client information for {server_id}")

    def tokens(self, server_id: str) -> Optional[StoredToken]:
        with self._session() as db:
            record = db.get(OAuthCredential, server_id)
            if record is None or not record.tokens:
                return None
            return StoredToken.model_validate(record.tokens)

    def save_tokens(self, server_id: str, tokens: OAuthToken) -> None:
        with self._session() as db:
            record = self._get_or_create(db, server_id)
            record.tokens = tokens.model_dump(mode="json", exclude_none=True)
            db.commit()
        logger.info(f"Saved tokens for {server_id}")

    def forget(self, server_id: str) -> bool:
        """Drop everything stored for a server."""
        with self._session() as db:
            result = db.execute(delete(OAuthCredential).where(OAuthCredential.server_id == server_id))
            db.commit()
            return result.rowcount > 0

    # =========================
    # In-flight flows
    # =========================

    def add_flow(self, flow: PendingFlow) -> None:
        with self._session() as db:
            db.add(
                OAuthFlow(
                    state=flow.state,
                    server_id=flow.server_id,
                    code_verifier=flow.code_verifier,
                    redirect_port=flow.redirect_port,
                )
            )
            db.commit()

    def consume_flow(self, state: str) -> Optional[PendingFlow]:
        """Remove and return the flow for a state token.

        Only the caller whose delete removed the row gets the flow back, so a
        replayed state yields None.
        """
        with self._session() as db:
            record = db.get(OAuthFlow, state)
            if record is None:
                return None
            flow = PendingFlow(
                state=record.state,
                server_id=record.server_id,
                code_verifier=record.code_verifier,
                redirect_port=record.redirect_port,
            )
            result = db.execute(delete(OAuthFlow).where(OAuthFlow.state == state))
            db.commit()
            if result.rowcount != 1:
                return None
            return flow

    def flows_for(self, server_id: str) -> List[PendingFlow]:
        with self._session() as db:
            rows = db.execute(select(OAuthFlow).where(OAuthFlow.server_id == server_id)).scalars().all()
            return [
                PendingFlow(
                    state=row.state,
                    server_id=row.server_id,
                    code_verifier=row.code_verifier,
                    redirect_port=row.redirect_port,
                )
                for row in rows
            ]

    def discard_flows(self, server_id: str) -> int:
        with self._session() as db:
            result = db.execute(delete(OAuthFlow).where(OAuthFlow.server_id == server_id))
            db.commit()
            return result.rowcount

    def clear_flows(self) -> int:
        with self._session() as db:
            result = db.execute(delete(OAuthFlow))
            db.commit()
        if result.rowcount:
            logger.info(f"Cleared {result.rowcount} stale authorization flows")
        return result.rowcount

    def for_server(self, server_id: str) -> "ServerTokenStorage":
        return ServerTokenStorage(self, server_id)


class ServerTokenStorage(TokenStorage):
    """The SDK's TokenStorage protocol over one server's stored credentials."""

    def __init__(self, store: CredentialStore, server_id: str):
        self.store = store
        self.server_id = server_id

    async def get_tokens(self) -> Optional[StoredToken]:
        return self.store.tokens(self.server_id)

    async def set_tokens(self, tokens: OAuthToken) -> None:
        if not isinstance(tokens, StoredToken):
            tokens = StoredToken.issued(tokens)
        self.store.save_tokens(self.server_id, tokens)

    async def get_client_info(self) -> Optional[OAuthClientInformationFull]:
        return self.store.client_information(self.server_id)

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None:
        self.store.save_client_information(self.server_id, client_info)
