"""
BaseConnector — capability interface for all OAuth2 CRM connectors.

Every provider (Salesforce, Microsoft 365, Google Workspace, HubSpot)
subclasses this, fills in its endpoint table and implements the fetch
operations listed in its ``capabilities``.

Connector instances are cheap request executors: the registry creates one
per call, the dispatcher hands it a token with ``set_token()``, and the
token store — not the connector — remains the source of truth.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, ClassVar, Dict, FrozenSet, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from connectors.errors import (
    ConnectorError,
    ExchangeFailed,
    NotConnected,
    RefreshFailed,
    UnsupportedOperation,
    UpstreamRejected,
    UpstreamUnavailable,
)
from connectors.models import (
    Capability,
    FetchFailure,
    FetchResult,
    NormalizedAccount,
    NormalizedActivity,
    NormalizedCalendarEvent,
    NormalizedContact,
    NormalizedEmail,
    ProviderCredential,
    ProviderId,
    Token,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0


class BaseConnector(ABC):
    """Abstract base for all OAuth2 connectors."""

    # ── Identity ────────────────────────────────────────────────────────
    provider: ClassVar[ProviderId]
    display_name: ClassVar[str]
    description: ClassVar[str] = ""
    default_scopes: ClassVar[Tuple[str, ...]] = ()
    default_expires_in: ClassVar[int] = 3600
    capabilities: ClassVar[FrozenSet[Capability]] = frozenset()

    # ── Endpoints ───────────────────────────────────────────────────────
    auth_url: ClassVar[str]
    token_url: ClassVar[str]
    revoke_url: ClassVar[Optional[str]] = None

    def __init__(
        self,
        credential: ProviderCredential,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.credential = credential
        self._http_client = http_client
        self._timeout = timeout
        self._token: Optional[Token] = None

    # ── Token cache ─────────────────────────────────────────────────────

    @property
    def token(self) -> Optional[Token]:
        return self._token

    def set_token(self, token: Optional[Token]) -> None:
        """Set the token used for authenticated requests."""
        self._token = token

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    # ── OAuth flow ──────────────────────────────────────────────────────

    def extra_auth_params(self) -> Dict[str, str]:
        """Provider-specific additions to the authorization URL."""
        return {}

    def authorize_endpoint(self) -> str:
        return self.auth_url

    def token_endpoint(self) -> str:
        return self.token_url

    def get_auth_url(self, state: Optional[str] = None) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str, optional
            Opaque value echoed back on the callback.  Forwarded verbatim.

        Returns
        -------
        The full URL to redirect the user to.
        """
        params: Dict[str, str] = {
            "response_type": "code",
            "client_id": self.credential.client_id,
            "redirect_uri": self.credential.redirect_uri,
            "scope": " ".join(self.credential.scopes),
        }
        params.update(self.extra_auth_params())
        if state:
            params["state"] = state
        return f"{self.authorize_endpoint()}?{urlencode(params)}"

    def extra_grant_params(self) -> Dict[str, str]:
        """Extra form fields sent with both grant types."""
        return {}

    async def exchange_code(self, code: str) -> Token:
        """Exchange the authorization code for tokens."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.credential.client_id,
            "client_secret": self.credential.client_secret,
            "redirect_uri": self.credential.redirect_uri,
            **self.extra_grant_params(),
        }
        payload = await self._token_request(data, ExchangeFailed, "code exchange")
        token = self._token_from_payload(payload, refresh_token=payload.get("refresh_token"))
        self._token = token
        logger.info("%s code exchange succeeded", self.provider.value)
        return token

    async def refresh_access_token(self, refresh_token: str) -> Token:
        """
        Use a refresh token to get a new access token.

        The returned token keeps ``refresh_token`` when the provider does not
        rotate it.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.credential.client_id,
            "client_secret": self.credential.client_secret,
            **self.extra_grant_params(),
        }
        payload = await self._token_request(data, RefreshFailed, "token refresh")
        token = self._token_from_payload(
            payload,
            refresh_token=payload.get("refresh_token") or refresh_token,
        )
        self._token = token
        return token

    async def revoke_token(self, token: Token) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if the provider doesn't support
        revocation or the call failed.
        """
        if not self.revoke_url:
            return False
        async with self._client() as client:
            resp = await client.post(
                self.revoke_url, data={"token": token.access_token}, timeout=self._timeout
            )
        return resp.status_code == 200

    async def disconnect(self) -> None:
        """Best-effort revocation; the cached token is cleared regardless."""
        token, self._token = self._token, None
        if token is None:
            return
        try:
            revoked = await self.revoke_token(token)
            logger.info("%s revoke %s", self.provider.value, "succeeded" if revoked else "skipped/failed")
        except Exception:
            logger.warning("%s token revocation failed", self.provider.value, exc_info=True)

    @abstractmethod
    def connection_test_url(self) -> Optional[str]:
        """URL for the lightweight authenticated check, or None when not possible."""
        ...

    async def test_connection(self) -> bool:
        """Lightweight authenticated call.  Never raises."""
        if self._token is None:
            return False
        try:
            url = self.connection_test_url()
            if not url:
                return False
            async with self._client() as client:
                resp = await client.get(url, headers=self._auth_headers(), timeout=self._timeout)
            return resp.is_success
        except Exception:
            logger.warning("%s connection test failed", self.provider.value, exc_info=True)
            return False

    # ── Optional fetch capabilities ─────────────────────────────────────

    async def fetch_accounts(
        self, query: Optional[str] = None, limit: int = 100
    ) -> FetchResult[NormalizedAccount]:
        raise UnsupportedOperation(Capability.ACCOUNTS, self.provider)

    async def fetch_contacts(
        self,
        account_id: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> FetchResult[NormalizedContact]:
        raise UnsupportedOperation(Capability.CONTACTS, self.provider)

    async def fetch_activities(
        self, account_id: Optional[str] = None, limit: int = 50
    ) -> FetchResult[NormalizedActivity]:
        raise UnsupportedOperation(Capability.ACTIVITIES, self.provider)

    async def fetch_emails(
        self, query: Optional[str] = None, limit: int = 50
    ) -> FetchResult[NormalizedEmail]:
        raise UnsupportedOperation(Capability.EMAILS, self.provider)

    async def fetch_calendar_events(
        self, start: datetime, end: datetime, limit: int = 250
    ) -> FetchResult[NormalizedCalendarEvent]:
        raise UnsupportedOperation(Capability.CALENDAR_EVENTS, self.provider)

    # ── HTTP helpers ────────────────────────────────────────────────────

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Yield the injected client, or a short-lived one for this call."""
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    def _auth_headers(self) -> Dict[str, str]:
        if self._token is None:
            raise NotConnected(f"{self.display_name} is not connected", provider=self.provider)
        return {"Authorization": f"Bearer {self._token.access_token}"}

    async def _token_request(
        self,
        data: Mapping[str, str],
        failure: type,
        action: str,
    ) -> Dict[str, Any]:
        """POST a grant to the token endpoint and return the decoded body."""
        try:
            async with self._client() as client:
                resp = await client.post(
                    self.token_endpoint(),
                    data=dict(data),
                    headers={"Accept": "application/json"},
                    timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(
                f"{self.display_name} {action} request failed: {exc.__class__.__name__}",
                provider=self.provider,
            ) from exc

        if resp.status_code >= 500:
            raise UpstreamUnavailable(
                f"{self.display_name} {action} failed ({resp.status_code})",
                provider=self.provider,
            )
        payload = _json_or_empty(resp)
        if not resp.is_success or "error" in payload or not payload.get("access_token"):
            reason = payload.get("error_description") or payload.get("error") or resp.status_code
            raise failure(f"{self.display_name} {action} rejected: {reason}", provider=self.provider)
        return payload

    def _token_from_payload(self, payload: Dict[str, Any], refresh_token: Optional[str]) -> Token:
        return Token(
            access_token=payload["access_token"],
            refresh_token=refresh_token,
            expires_at=expires_at_from(payload.get("expires_in"), self.default_expires_in),
            scopes=_granted_scopes(payload.get("scope"), self.credential.scopes),
            provider_meta=self.token_meta(payload),
        )

    def token_meta(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Extras from a token response that later calls need."""
        return dict(self._token.provider_meta) if self._token else {}

    async def _get_json(
        self,
        url: str,
        params: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """Authenticated GET returning the JSON body; maps failures to ConnectorErrors."""
        return await self._request("GET", url, params=params, headers=headers)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        json: Any = None,
    ) -> Dict[str, Any]:
        all_headers = {**self._auth_headers(), "Accept": "application/json", **(headers or {})}
        try:
            async with self._client() as client:
                resp = await client.request(
                    method,
                    url,
                    params=params,
                    headers=all_headers,
                    json=json,
                    timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(
                f"{self.display_name} request failed: {exc.__class__.__name__}",
                provider=self.provider,
            ) from exc

        if resp.status_code == 401:
            raise NotConnected(f"{self.display_name} rejected the access token", provider=self.provider)
        if resp.status_code >= 500 or resp.status_code == 429:
            raise UpstreamUnavailable(
                f"{self.display_name} returned {resp.status_code}", provider=self.provider
            )
        if not resp.is_success:
            raise UpstreamRejected(
                f"{self.display_name} returned {resp.status_code}",
                provider=self.provider,
                status_code=resp.status_code,
            )
        return _json_or_empty(resp)


# ── Module helpers ──────────────────────────────────────────────────────


def expires_at_from(expires_in: Any, default: int) -> datetime:
    """``now + expires_in`` seconds, falling back to the provider default."""
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        seconds = default
    if seconds <= 0:
        seconds = default
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def _granted_scopes(raw: Any, requested: Tuple[str, ...]) -> List[str]:
    if isinstance(raw, str) and raw.strip():
        return raw.replace(",", " ").split()
    if isinstance(raw, list):
        return [str(s) for s in raw]
    return list(requested)


def _json_or_empty(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (including a trailing ``Z``) into aware UTC datetimes."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Graph returns seven fractional digits
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def first(items: Any, key: str) -> Optional[Any]:
    """``items[0][key]`` for list-of-dict provider fields, or None."""
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0].get(key)
    return None


def dig(value: Any, *keys: str) -> Optional[Any]:
    """``value[k1][k2]...`` through nested objects; None once a level is not a dict."""
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def clamp_limit(limit: Any, upper: int) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return upper
    return max(1, min(value, upper))


def normalize_each(
    result: FetchResult,
    items: Any,
    normalize: Callable[[Dict[str, Any]], Any],
    id_key: str = "id",
) -> FetchResult:
    """
    Append ``normalize(item)`` for every provider item to ``result.records``.

    Items that are not objects, lack an id, or fail normalization are
    recorded in ``result.failures``; the rest of the batch carries on.
    """
    for item in items or []:
        if not isinstance(item, dict):
            result.failures.append(FetchFailure(item_id="<unknown>", reason="not an object"))
            continue
        item_id = item.get(id_key)
        if not item_id:
            result.failures.append(FetchFailure(item_id="<unknown>", reason=f"missing {id_key}"))
            continue
        try:
            result.records.append(normalize(item))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping record %s: %s", item_id, exc)
            result.failures.append(FetchFailure(item_id=str(item_id), reason=connector_error_reason(exc)))
    return result


def connector_error_reason(exc: Exception) -> str:
    if isinstance(exc, ConnectorError):
        return exc.message
    return exc.__class__.__name__
