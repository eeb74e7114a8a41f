"""
Shared helpers: credentials for every provider and a fake provider backend
built on ``httpx.MockTransport``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import parse_qs

import httpx
import pytest

from connectors.models import ProviderCredential, ProviderId, Token
from connectors.oauth_state import StateSigner
from connectors.registry import CONNECTOR_CLASSES, ConnectorRegistry


def make_credential(provider: ProviderId, **overrides) -> ProviderCredential:
    fields = {
        "client_id": f"{provider.value}-client",
        "client_secret": f"{provider.value}-secret",
        "redirect_uri": f"https://crm.example.com/api/v1/connectors/{provider.value}/callback",
        "scopes": list(CONNECTOR_CLASSES[provider].default_scopes),
    }
    if provider is ProviderId.MICROSOFT:
        fields["extra"] = {"tenant_id": "contoso"}
    fields.update(overrides)
    return ProviderCredential(**fields)


def make_token(
    access_token: str = "AT1",
    refresh_token: Optional[str] = "RT1",
    expires_in: Optional[int] = 3600,
    **meta,
) -> Token:
    expires_at = None
    if expires_in is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return Token(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        provider_meta=meta,
    )


def form(request: httpx.Request) -> Dict[str, str]:
    """Decode an ``application/x-www-form-urlencoded`` request body."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class FakeProvider:
    """
    Records every outbound request and answers from a route table.

    Routes map ``(method, path)`` to a callable taking the request and
    returning an ``httpx.Response`` (or a coroutine producing one).
    """

    def __init__(self, routes: Optional[Dict[tuple, Callable]] = None):
        self.routes: Dict[tuple, Callable] = dict(routes or {})
        self.requests: List[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not_found"})
        response = route(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def make_registry(
    fake: FakeProvider,
    providers: Iterable[ProviderId] = tuple(ProviderId),
    **credential_overrides,
) -> ConnectorRegistry:
    credentials = {p: make_credential(p, **credential_overrides) for p in providers}
    return ConnectorRegistry(credentials, http_client=fake.client(), timeout=5.0)


@pytest.fixture
def fake() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def signer() -> StateSigner:
    return StateSigner("test-state-secret", ttl_seconds=600)
