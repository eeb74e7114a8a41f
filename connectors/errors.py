"""
Connector error taxonomy.

Every failure a caller can observe is a ``ConnectorError`` subclass with a
stable ``code`` so the HTTP layer (and the UI behind it) can branch on the
kind of failure instead of parsing messages.
"""

from __future__ import annotations

from typing import Optional

from connectors.models import Capability, ProviderId


class ConnectorError(Exception):
    """Base exception for connector errors."""

    code = "connector_error"
    reconnect = False

    def __init__(
        self,
        message: str,
        provider: Optional[ProviderId] = None,
        retriable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.retriable = retriable

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "provider": self.provider.value if self.provider else None,
            "retriable": self.retriable,
            "reconnect": self.reconnect,
        }


class ProviderNotConfigured(ConnectorError):
    """No client credential exists for the provider (or it is unknown)."""

    code = "provider_not_configured"


class AuthorizationDenied(ConnectorError):
    """The user declined consent, or the provider reported an error on callback."""

    code = "authorization_denied"


class InvalidState(ConnectorError):
    """The OAuth ``state`` parameter is malformed, forged or expired."""

    code = "invalid_state"


class ExchangeFailed(ConnectorError):
    """The provider rejected the authorization code."""

    code = "exchange_failed"


class RefreshFailed(ConnectorError):
    """The provider rejected the refresh token.  Terminal for that token."""

    code = "refresh_failed"


class ReauthorizationRequired(ConnectorError):
    """The stored grant is gone; the user has to run the connect flow again."""

    code = "reauthorization_required"
    reconnect = True


class NotConnected(ConnectorError):
    """No usable token for this user and provider."""

    code = "not_connected"
    reconnect = True


class UnsupportedOperation(ConnectorError):
    """The provider does not implement the requested fetch capability."""

    code = "unsupported_operation"

    def __init__(self, capability: Capability, provider: Optional[ProviderId] = None):
        name = provider.value if provider else "this connector"
        super().__init__(f"{capability.value} is not supported by {name}", provider=provider)
        self.capability = capability


class UpstreamUnavailable(ConnectorError):
    """Network failure, timeout or 5xx from the provider.  Safe to retry."""

    code = "upstream_unavailable"

    def __init__(self, message: str, provider: Optional[ProviderId] = None):
        super().__init__(message, provider=provider, retriable=True)


class UpstreamRejected(ConnectorError):
    """The provider answered a data call with a non-auth 4xx."""

    code = "upstream_rejected"

    def __init__(self, message: str, provider: Optional[ProviderId] = None, status_code: int = 400):
        super().__init__(message, provider=provider)
        self.status_code = status_code


class InvalidIdentifier(ConnectorError):
    """A record id failed validation before being embedded in a query."""

    code = "invalid_identifier"
