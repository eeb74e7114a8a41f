"""
Tests for credential configuration, the connector registry and caller
tokens.
"""

import pytest
from fastapi import HTTPException

from auth.jwt import create_token, verify_token
from config.settings import Settings
from connectors.errors import ProviderNotConfigured
from connectors.google import GoogleConnector
from connectors.models import Capability, ProviderId
from connectors.registry import ConnectorRegistry, parse_provider


def _settings(**values) -> Settings:
    return Settings(_env_file=None, oauth_redirect_base="https://crm.example.com/", **values)


class TestProviderCredentials:
    def test_only_fully_configured_providers(self):
        credentials = _settings(
            google_client_id="g", google_client_secret="gs", hubspot_client_id="h"
        ).provider_credentials()
        assert set(credentials) == {ProviderId.GOOGLE}

    def test_defaults_and_redirect(self):
        credential = _settings(google_client_id="g", google_client_secret="gs").provider_credentials()[
            ProviderId.GOOGLE
        ]
        assert credential.redirect_uri == "https://crm.example.com/api/v1/connectors/google/callback"
        assert credential.scopes == GoogleConnector.default_scopes

    def test_configured_scopes_override_defaults(self):
        credential = _settings(
            hubspot_client_id="h", hubspot_client_secret="hs", hubspot_scopes="crm.objects.contacts.read oauth"
        ).provider_credentials()[ProviderId.HUBSPOT]
        assert credential.scopes == ("crm.objects.contacts.read", "oauth")

    def test_microsoft_tenant(self):
        credential = _settings(
            microsoft_client_id="m", microsoft_client_secret="ms", microsoft_tenant_id="contoso"
        ).provider_credentials()[ProviderId.MICROSOFT]
        assert credential.extra == {"tenant_id": "contoso"}


class TestRegistry:
    def test_create_returns_fresh_instances(self):
        registry = ConnectorRegistry.from_settings(
            _settings(google_client_id="g", google_client_secret="gs", gmail_fetch_concurrency=2)
        )
        first = registry.create("google")
        second = registry.create(ProviderId.GOOGLE)
        assert isinstance(first, GoogleConnector)
        assert first is not second
        assert first.fetch_concurrency == 2

    def test_unconfigured_provider(self):
        registry = ConnectorRegistry({})
        assert registry.is_configured(ProviderId.SALESFORCE) is False
        with pytest.raises(ProviderNotConfigured):
            registry.create(ProviderId.SALESFORCE)

    def test_capabilities_are_declared(self):
        registry = ConnectorRegistry({})
        assert Capability.EMAILS in registry.capabilities(ProviderId.GOOGLE)
        assert Capability.EMAILS not in registry.capabilities(ProviderId.SALESFORCE)
        assert Capability.ACTIVITIES in registry.capabilities(ProviderId.HUBSPOT)

    def test_parse_provider(self):
        assert parse_provider("HubSpot") is ProviderId.HUBSPOT
        with pytest.raises(ProviderNotConfigured):
            parse_provider("myspace")


class TestCallerToken:
    def test_round_trip(self):
        assert verify_token(create_token("user-42")) == "user-42"

    def test_wrong_secret(self):
        token = create_token("user-42", secret="one")
        with pytest.raises(HTTPException) as exc_info:
            verify_token(token, secret="two")
        assert exc_info.value.status_code == 401

    def test_expired(self):
        with pytest.raises(HTTPException):
            verify_token(create_token("user-42", expires_in=-5))
