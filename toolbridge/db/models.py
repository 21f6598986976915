"""SQLAlchemy models for toolbridge."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class OAuthCredential(Base):
    """Durable per-server OAuth identity and tokens."""

    __tablename__ = "oauth_credentials"

    server_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    server_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    client_info: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    tokens: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class OAuthFlow(Base):
    """In-flight authorization, keyed by its one-time state token."""

    __tablename__ = "oauth_flows"

    state: Mapped[str] = mapped_column(String(128), primary_key=True)
    server_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    code_verifier: Mapped[str] = mapped_column(String(255), nullable=False)
    redirect_port: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
