"""
ConnectorDispatcher — the single entry point callers use to reach a
provider on behalf of a user.

Per (user, provider) key the dispatcher drives a small state machine::

    UNCONFIGURED  no credential; every call fails fast, no network
    DISCONNECTED  no token in the store
    CONNECTED     live token
    EXPIRED       token present but expired

Expiry is detected lazily at the start of each fetch.  An expired token is
refreshed at most once per call, and concurrent callers on the same key
await one in-flight refresh task and all see its result or its error.  The
task is dropped from the in-flight map as soon as it finishes.  The store is
only written after a refresh completes, so a cancelled or failed call never
leaves it half-updated.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union

from connectors.base import BaseConnector
from connectors.errors import (
    AuthorizationDenied,
    ConnectorError,
    ExchangeFailed,
    NotConnected,
    ReauthorizationRequired,
    RefreshFailed,
    UnsupportedOperation,
)
from connectors.models import (
    Capability,
    Connection,
    ConnectorStatus,
    FetchResult,
    NormalizedAccount,
    NormalizedActivity,
    NormalizedCalendarEvent,
    NormalizedContact,
    NormalizedEmail,
    ProviderId,
    Token,
)
from connectors.oauth_state import StateSigner
from connectors.registry import CONNECTOR_CLASSES, ConnectorRegistry, parse_provider
from connectors.token_store import TokenStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
Key = Tuple[str, ProviderId]


class ConnectionState(str, Enum):
    UNCONFIGURED = "unconfigured"
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    EXPIRED = "expired"


class ConnectorDispatcher:
    """Routes OAuth and fetch calls to connectors with token lifecycle handling."""

    def __init__(self, registry: ConnectorRegistry, store: TokenStore, signer: StateSigner):
        self._registry = registry
        self._store = store
        self._signer = signer
        self._refreshing: Dict[Key, asyncio.Task[Token]] = {}

    @property
    def registry(self) -> ConnectorRegistry:
        return self._registry

    @property
    def store(self) -> TokenStore:
        return self._store

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def get_auth_url(self, user_id: str, provider: Union[str, ProviderId]) -> str:
        """Authorization URL for ``user_id``; the state carries the user back on callback."""
        provider = parse_provider(provider)
        connector = self._registry.create(provider)

        existing = await self._store.get_connection(user_id, provider)
        if existing is None:
            await self._store.save_connection(Connection(user_id=user_id, provider=provider))

        return connector.get_auth_url(self._signer.create(user_id, provider))

    async def handle_callback(
        self,
        provider: Union[str, ProviderId],
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> str:
        """
        Complete the authorization-code grant.

        Returns
        -------
        The user id carried in ``state``.

        Raises
        ------
        ProviderNotConfigured, AuthorizationDenied, InvalidState,
        ExchangeFailed, UpstreamUnavailable
        """
        provider = parse_provider(provider)
        connector = self._registry.create(provider)

        if error:
            raise AuthorizationDenied(f"Authorization was not granted: {error}", provider=provider)
        user_id = self._signer.verify(state or "", provider)
        if not code:
            raise AuthorizationDenied("No authorization code returned", provider=provider)

        try:
            token = await connector.exchange_code(code)
        except ExchangeFailed:
            await self._deauthorize(user_id, provider)
            raise

        existing = await self._store.get_connection(user_id, provider)
        await self._store.put(user_id, provider, token)
        await self._store.save_connection(
            Connection(
                user_id=user_id,
                provider=provider,
                connected=True,
                last_sync_at=existing.last_sync_at if existing else None,
            )
        )
        logger.info("User %s connected %s", user_id, provider.value)
        return user_id

    # ── State & status ──────────────────────────────────────────────────

    async def state_of(self, user_id: str, provider: Union[str, ProviderId]) -> ConnectionState:
        provider = parse_provider(provider)
        if not self._registry.is_configured(provider):
            return ConnectionState.UNCONFIGURED
        token = await self._store.get(user_id, provider)
        if token is None:
            return ConnectionState.DISCONNECTED
        if TokenStore.is_expired(token):
            return ConnectionState.EXPIRED
        return ConnectionState.CONNECTED

    async def status(self, user_id: str) -> Dict[ProviderId, ConnectorStatus]:
        """Per-provider ``configured`` / ``connected`` flags for one user."""
        statuses: Dict[ProviderId, ConnectorStatus] = {}
        for provider, cls in CONNECTOR_CLASSES.items():
            configured = self._registry.is_configured(provider)
            connected = False
            last_sync_at = None
            if configured:
                token = await self._store.get(user_id, provider)
                # an expired token still counts while it can be refreshed
                connected = token is not None and (
                    not TokenStore.is_expired(token) or bool(token.refresh_token)
                )
                connection = await self._store.get_connection(user_id, provider)
                if connection is not None:
                    last_sync_at = connection.last_sync_at
            statuses[provider] = ConnectorStatus(
                provider=provider,
                display_name=cls.display_name,
                description=cls.description,
                configured=configured,
                connected=connected,
                capabilities=sorted(cls.capabilities, key=lambda c: c.value),
                last_sync_at=last_sync_at,
            )
        return statuses

    # ── Fetch operations ────────────────────────────────────────────────

    async def fetch_accounts(
        self, user_id: str, provider: Union[str, ProviderId], query: Optional[str] = None, limit: int = 100
    ) -> FetchResult[NormalizedAccount]:
        return await self._fetch(
            user_id, provider, Capability.ACCOUNTS, lambda c: c.fetch_accounts(query=query, limit=limit)
        )

    async def fetch_contacts(
        self,
        user_id: str,
        provider: Union[str, ProviderId],
        account_id: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> FetchResult[NormalizedContact]:
        return await self._fetch(
            user_id,
            provider,
            Capability.CONTACTS,
            lambda c: c.fetch_contacts(account_id=account_id, query=query, limit=limit),
        )

    async def fetch_activities(
        self,
        user_id: str,
        provider: Union[str, ProviderId],
        account_id: Optional[str] = None,
        limit: int = 50,
    ) -> FetchResult[NormalizedActivity]:
        return await self._fetch(
            user_id,
            provider,
            Capability.ACTIVITIES,
            lambda c: c.fetch_activities(account_id=account_id, limit=limit),
        )

    async def fetch_emails(
        self, user_id: str, provider: Union[str, ProviderId], query: Optional[str] = None, limit: int = 50
    ) -> FetchResult[NormalizedEmail]:
        return await self._fetch(
            user_id, provider, Capability.EMAILS, lambda c: c.fetch_emails(query=query, limit=limit)
        )

    async def fetch_calendar_events(
        self,
        user_id: str,
        provider: Union[str, ProviderId],
        start: datetime,
        end: datetime,
        limit: int = 250,
    ) -> FetchResult[NormalizedCalendarEvent]:
        return await self._fetch(
            user_id,
            provider,
            Capability.CALENDAR_EVENTS,
            lambda c: c.fetch_calendar_events(start=start, end=end, limit=limit),
        )

    async def _fetch(
        self,
        user_id: str,
        provider: Union[str, ProviderId],
        capability: Capability,
        call: Callable[[BaseConnector], Awaitable[T]],
    ) -> T:
        provider = parse_provider(provider)
        connector = self._registry.create(provider)
        if not connector.supports(capability):
            raise UnsupportedOperation(capability, provider)

        token = await self._live_token(user_id, provider, connector)
        connector.set_token(token)
        return await call(connector)

    # ── Token lifecycle ─────────────────────────────────────────────────

    async def _live_token(self, user_id: str, provider: ProviderId, connector: BaseConnector) -> Token:
        """Return a non-expired token, refreshing it (once, per key) when needed."""
        token = await self._store.get(user_id, provider)
        if token is None:
            raise NotConnected(f"{connector.display_name} is not connected", provider=provider)
        if not TokenStore.is_expired(token):
            return token

        key = (user_id, provider)
        refresh = self._refreshing.get(key)
        if refresh is None:
            # another refresh on this key may have finished since the first read
            token = await self._store.get(user_id, provider)
            if token is None:
                raise ReauthorizationRequired(
                    f"{connector.display_name} needs to be reconnected", provider=provider
                )
            if not TokenStore.is_expired(token):
                return token
            refresh = self._refreshing.get(key)
            if refresh is None:
                refresh = self._start_refresh(key, connector, token)

        # a cancelled waiter leaves the shared refresh running for the others
        return await asyncio.shield(refresh)

    def _start_refresh(self, key: Key, connector: BaseConnector, token: Token) -> asyncio.Task[Token]:
        user_id, provider = key
        refresh = asyncio.create_task(self._refresh(user_id, provider, connector, token))
        self._refreshing[key] = refresh

        def _done(task: asyncio.Task[Token]) -> None:
            if self._refreshing.get(key) is task:
                del self._refreshing[key]
            if not task.cancelled():
                # mark the outcome retrieved even when every waiter was cancelled
                task.exception()

        refresh.add_done_callback(_done)
        return refresh

    async def _refresh(
        self, user_id: str, provider: ProviderId, connector: BaseConnector, token: Token
    ) -> Token:
        if not token.refresh_token:
            await self._deauthorize(user_id, provider)
            raise ReauthorizationRequired(
                f"{connector.display_name} token expired and cannot be refreshed", provider=provider
            )

        connector.set_token(token)
        try:
            refreshed = await connector.refresh_access_token(token.refresh_token)
        except RefreshFailed as exc:
            logger.warning("Token refresh failed for %s/%s: %s", provider.value, user_id, exc.message)
            await self._deauthorize(user_id, provider)
            raise ReauthorizationRequired(
                f"{connector.display_name} needs to be reconnected", provider=provider
            ) from exc

        await self._store.put(user_id, provider, refreshed)
        logger.info("Refreshed %s token for user %s", provider.value, user_id)
        return refreshed

    async def _deauthorize(self, user_id: str, provider: ProviderId) -> None:
        await self._store.remove(user_id, provider)
        await self._store.delete_connection(user_id, provider)

    # ── Connection management ───────────────────────────────────────────

    async def test_connection(self, user_id: str, provider: Union[str, ProviderId]) -> bool:
        provider = parse_provider(provider)
        connector = self._registry.create(provider)
        try:
            connector.set_token(await self._live_token(user_id, provider, connector))
        except ConnectorError as exc:
            logger.info("Connection test for %s/%s skipped: %s", provider.value, user_id, exc.code)
            return False
        return await connector.test_connection()

    async def sync(self, user_id: str, provider: Union[str, ProviderId]) -> Connection:
        """Confirm the connection is usable and stamp ``last_sync_at``."""
        provider = parse_provider(provider)
        connector = self._registry.create(provider)
        await self._live_token(user_id, provider, connector)

        connection = Connection(
            user_id=user_id,
            provider=provider,
            connected=True,
            last_sync_at=datetime.now(timezone.utc),
        )
        await self._store.save_connection(connection)
        return connection

    async def disconnect(self, user_id: str, provider: Union[str, ProviderId]) -> None:
        """
        Revoke (best effort) and forget the user's token.  Idempotent; the
        store entries are removed whatever the provider answers.
        """
        provider = parse_provider(provider)
        token = await self._store.get(user_id, provider)
        try:
            if token is not None and self._registry.is_configured(provider):
                connector = self._registry.create(provider)
                connector.set_token(token)
                await connector.disconnect()
        finally:
            await self._deauthorize(user_id, provider)
        logger.info("User %s disconnected %s", user_id, provider.value)

    async def close(self) -> None:
        for refresh in list(self._refreshing.values()):
            refresh.cancel()
        self._refreshing.clear()
        await self._store.close()
