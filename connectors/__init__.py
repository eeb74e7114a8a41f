"""
connectors — OAuth integration module for the broker CRM's external systems.

Provides a generic connector framework that handles:
  • OAuth2 auth-URL generation and signed callback state
  • Callback handling (code → token exchange)
  • Per-user token storage with lazy, single-flight refresh
  • Fernet encryption of tokens at rest
  • Normalized accounts / contacts / activities / emails / calendar events
  • Revocation / disconnect

Each provider (Salesforce, Microsoft 365, Google Workspace, HubSpot) is a
BaseConnector subclass registered in ``connectors.registry``.
"""
