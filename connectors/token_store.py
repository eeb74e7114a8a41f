"""
Token store — per-(user, provider) keyed storage of OAuth tokens and
connection records.

The store is a plain keyed map: it never talks to a provider and never
refreshes anything.  Refresh orchestration belongs to
``connectors.dispatcher``.  Two backends share one async contract so the
dispatcher never cares which one it was given:

  • ``InMemoryTokenStore`` — dicts, for tests and single-process dev.
  • ``DatabaseTokenStore`` — SQLAlchemy rows, tokens Fernet-encrypted.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from connectors.encryption import TokenCipher
from connectors.models import Connection, ProviderId, Token
from database.models import UserConnection

logger = logging.getLogger(__name__)

Key = Tuple[str, ProviderId]


class TokenStore(ABC):
    """Async keyed store of ``Token`` and ``Connection`` records."""

    # ── Tokens ──────────────────────────────────────────────────────────

    @abstractmethod
    async def get(self, user_id: str, provider: ProviderId) -> Optional[Token]:
        ...

    @abstractmethod
    async def put(self, user_id: str, provider: ProviderId, token: Token) -> None:
        ...

    @abstractmethod
    async def remove(self, user_id: str, provider: ProviderId) -> None:
        """Drop the token.  Removing a missing entry is not an error."""
        ...

    @staticmethod
    def is_expired(token: Token, now: Optional[datetime] = None) -> bool:
        """True when ``expires_at`` is unknown or ``now >= expires_at``."""
        if token.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        expires_at = token.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at

    # ── Connections ─────────────────────────────────────────────────────

    @abstractmethod
    async def get_connection(self, user_id: str, provider: ProviderId) -> Optional[Connection]:
        ...

    @abstractmethod
    async def save_connection(self, connection: Connection) -> None:
        ...

    @abstractmethod
    async def delete_connection(self, user_id: str, provider: ProviderId) -> None:
        ...

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def close(self) -> None:
        """Flush and release resources."""
        return None


class InMemoryTokenStore(TokenStore):
    """Dict-backed store.  State lives exactly as long as the instance."""

    def __init__(self) -> None:
        self._tokens: Dict[Key, Token] = {}
        self._connections: Dict[Key, Connection] = {}

    async def get(self, user_id: str, provider: ProviderId) -> Optional[Token]:
        return self._tokens.get((user_id, provider))

    async def put(self, user_id: str, provider: ProviderId, token: Token) -> None:
        self._tokens[(user_id, provider)] = token

    async def remove(self, user_id: str, provider: ProviderId) -> None:
        self._tokens.pop((user_id, provider), None)

    async def get_connection(self, user_id: str, provider: ProviderId) -> Optional[Connection]:
        return self._connections.get((user_id, provider))

    async def save_connection(self, connection: Connection) -> None:
        self._connections[(connection.user_id, connection.provider)] = connection

    async def delete_connection(self, user_id: str, provider: ProviderId) -> None:
        self._connections.pop((user_id, provider), None)

    async def close(self) -> None:
        self._tokens.clear()
        self._connections.clear()


class DatabaseTokenStore(TokenStore):
    """
    SQLAlchemy-backed store.

    One ``user_connections`` row per (user, provider) holds both the
    connection flags and the encrypted token columns; a row with a NULL
    ``access_token`` is a connection without a token.
    """

    def __init__(self, session_factory: async_sessionmaker, cipher: Optional[TokenCipher] = None):
        self._session_factory = session_factory
        self._cipher = cipher or TokenCipher(None)

    async def _row(self, session, user_id: str, provider: ProviderId) -> Optional[UserConnection]:
        result = await session.execute(
            select(UserConnection).where(
                UserConnection.user_id == user_id,
                UserConnection.provider == provider.value,
            )
        )
        return result.scalar_one_or_none()

    async def _row_or_new(self, session, user_id: str, provider: ProviderId) -> UserConnection:
        row = await self._row(session, user_id, provider)
        if row is None:
            row = UserConnection(user_id=user_id, provider=provider.value, connected=False)
            session.add(row)
        return row

    # ── Tokens ──────────────────────────────────────────────────────────

    async def get(self, user_id: str, provider: ProviderId) -> Optional[Token]:
        async with self._session_factory() as session:
            row = await self._row(session, user_id, provider)
            if row is None or not row.access_token:
                return None
            return Token(
                access_token=self._cipher.decrypt(row.access_token),
                refresh_token=self._cipher.decrypt(row.refresh_token) or None,
                expires_at=_aware(row.expires_at),
                scopes=list(row.scopes) if row.scopes is not None else None,
                provider_meta=dict(row.provider_meta or {}),
            )

    async def put(self, user_id: str, provider: ProviderId, token: Token) -> None:
        async with self._session_factory() as session:
            try:
                row = await self._row_or_new(session, user_id, provider)
                if row.access_token:
                    row.last_refreshed = datetime.now(timezone.utc)
                row.access_token = self._cipher.encrypt(token.access_token)
                row.refresh_token = self._cipher.encrypt(token.refresh_token)
                row.expires_at = token.expires_at
                row.scopes = list(token.scopes) if token.scopes is not None else None
                row.provider_meta = dict(token.provider_meta)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        logger.debug("Stored %s token for user %s", provider.value, user_id)

    async def remove(self, user_id: str, provider: ProviderId) -> None:
        async with self._session_factory() as session:
            try:
                row = await self._row(session, user_id, provider)
                if row is None:
                    return
                row.access_token = None
                row.refresh_token = None
                row.expires_at = None
                row.scopes = None
                row.provider_meta = {}
                row.connected = False
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ── Connections ─────────────────────────────────────────────────────

    async def get_connection(self, user_id: str, provider: ProviderId) -> Optional[Connection]:
        async with self._session_factory() as session:
            row = await self._row(session, user_id, provider)
            if row is None:
                return None
            return Connection(
                user_id=row.user_id,
                provider=provider,
                connected=bool(row.connected),
                last_sync_at=_aware(row.last_sync_at),
            )

    async def save_connection(self, connection: Connection) -> None:
        async with self._session_factory() as session:
            try:
                row = await self._row_or_new(session, connection.user_id, connection.provider)
                row.connected = connection.connected
                row.last_sync_at = connection.last_sync_at
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def delete_connection(self, user_id: str, provider: ProviderId) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(UserConnection).where(
                    UserConnection.user_id == user_id,
                    UserConnection.provider == provider.value,
                )
            )
            await session.commit()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
