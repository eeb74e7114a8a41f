"""
ConnectorRegistry — resolves a provider id to a fresh connector instance.

The provider set is closed: ``CONNECTOR_CLASSES`` is the whole lookup
table.  A provider is *configured* when the registry was given a
``ProviderCredential`` for it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Mapping, Optional, Type, Union

import httpx

from connectors.base import DEFAULT_TIMEOUT, BaseConnector
from connectors.errors import ProviderNotConfigured
from connectors.google import GoogleConnector
from connectors.hubspot import HubSpotConnector
from connectors.microsoft import MicrosoftConnector
from connectors.models import Capability, ProviderCredential, ProviderId
from connectors.salesforce import SalesforceConnector

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

# ── All known connectors ─────────────────────────────────────────────────

CONNECTOR_CLASSES: Dict[ProviderId, Type[BaseConnector]] = {
    ProviderId.SALESFORCE: SalesforceConnector,
    ProviderId.MICROSOFT: MicrosoftConnector,
    ProviderId.GOOGLE: GoogleConnector,
    ProviderId.HUBSPOT: HubSpotConnector,
}


def parse_provider(value: Union[str, ProviderId]) -> ProviderId:
    """Map a path/query string to a ``ProviderId``; unknown ids are unconfigured."""
    if isinstance(value, ProviderId):
        return value
    try:
        return ProviderId(str(value).lower())
    except ValueError:
        raise ProviderNotConfigured(f"Unknown provider '{value}'") from None


class ConnectorRegistry:
    """Builds connectors for the configured providers."""

    def __init__(
        self,
        credentials: Mapping[ProviderId, ProviderCredential],
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        gmail_fetch_concurrency: int = 5,
    ):
        self._credentials: Dict[ProviderId, ProviderCredential] = dict(credentials)
        self._http_client = http_client
        self._timeout = timeout
        self._gmail_fetch_concurrency = gmail_fetch_concurrency

        for provider in ProviderId:
            if provider in self._credentials:
                logger.info(
                    "Connector registered: %s (%s)",
                    CONNECTOR_CLASSES[provider].display_name,
                    provider.value,
                )
            else:
                logger.warning(
                    "Connector %s skipped — not configured (missing client_id/secret)",
                    provider.value,
                )

    @classmethod
    def from_settings(
        cls, settings: "Settings", http_client: Optional[httpx.AsyncClient] = None
    ) -> "ConnectorRegistry":
        return cls(
            settings.provider_credentials(),
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
            gmail_fetch_concurrency=settings.gmail_fetch_concurrency,
        )

    def is_configured(self, provider: ProviderId) -> bool:
        return provider in self._credentials

    def capabilities(self, provider: ProviderId) -> FrozenSet[Capability]:
        return CONNECTOR_CLASSES[provider].capabilities

    def create(self, provider: Union[str, ProviderId]) -> BaseConnector:
        """
        Build a connector for ``provider``.

        Raises
        ------
        ProviderNotConfigured
            Unknown provider, or no credential for it.  No network I/O.
        """
        provider = parse_provider(provider)
        credential = self._credentials.get(provider)
        if credential is None:
            raise ProviderNotConfigured(
                f"{CONNECTOR_CLASSES[provider].display_name} is not configured",
                provider=provider,
            )
        connector = CONNECTOR_CLASSES[provider](
            credential, http_client=self._http_client, timeout=self._timeout
        )
        if isinstance(connector, GoogleConnector):
            connector.fetch_concurrency = self._gmail_fetch_concurrency
        return connector

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all known connectors."""
        return [
            {
                "provider": provider.value,
                "display_name": cls.display_name,
                "description": cls.description,
                "configured": self.is_configured(provider),
                "capabilities": sorted(c.value for c in cls.capabilities),
            }
            for provider, cls in CONNECTOR_CLASSES.items()
        ]

    def list_configured(self) -> List[ProviderId]:
        """Return ids of configured connectors."""
        return [p for p in ProviderId if p in self._credentials]
