"""
Pydantic models shared by every connector — provider identity, credentials,
token material, connection records and the normalized CRM record shapes.

Callers outside the connectors package only ever see the ``Normalized*``
records; provider-native payloads never leave a connector.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ═══════════════════════════════════════════════════════════════════════════════
# Identity & capabilities
# ═══════════════════════════════════════════════════════════════════════════════


class ProviderId(str, Enum):
    """The closed set of external systems we integrate with."""

    SALESFORCE = "salesforce"
    MICROSOFT = "microsoft"
    GOOGLE = "google"
    HUBSPOT = "hubspot"


class Capability(str, Enum):
    """Optional fetch operations a connector may declare support for."""

    ACCOUNTS = "accounts"
    CONTACTS = "contacts"
    ACTIVITIES = "activities"
    EMAILS = "emails"
    CALENDAR_EVENTS = "calendar_events"


class ActivityKind(str, Enum):
    EMAIL = "email"
    CALL = "call"
    MEETING = "meeting"
    TASK = "task"
    NOTE = "note"


# ═══════════════════════════════════════════════════════════════════════════════
# Credentials, tokens, connections
# ═══════════════════════════════════════════════════════════════════════════════


class ProviderCredential(BaseModel):
    """Static OAuth client configuration for one provider.  Never mutated."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: Tuple[str, ...] = ()
    extra: Dict[str, str] = Field(default_factory=dict)

    @field_validator("scopes", mode="before")
    @classmethod
    def _dedupe_scopes(cls, value: Any) -> Tuple[str, ...]:
        # keep the configured order, it ends up in the consent URL
        seen: List[str] = []
        for scope in value or ():
            if scope and scope not in seen:
                seen.append(scope)
        return tuple(seen)


class Token(BaseModel):
    """
    Normalized OAuth token material.

    ``provider_meta`` carries per-provider extras that later calls depend
    on (e.g. the Salesforce ``instance_url``).
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: Optional[List[str]] = None
    provider_meta: Dict[str, Any] = Field(default_factory=dict)

    def __repr__(self) -> str:
        return f"Token(expires_at={self.expires_at!r}, has_refresh={self.refresh_token is not None})"

    __str__ = __repr__


class Connection(BaseModel):
    """Whether a user has (or intends to have) completed the OAuth flow."""

    user_id: str
    provider: ProviderId
    connected: bool = False
    last_sync_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Normalized records
# ═══════════════════════════════════════════════════════════════════════════════


class NormalizedAccount(BaseModel):
    id: str
    name: str = ""
    company: str = ""
    email: Optional[str] = None


class NormalizedContact(BaseModel):
    id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    account_id: Optional[str] = None


class NormalizedActivity(BaseModel):
    id: str
    kind: ActivityKind = ActivityKind.TASK
    subject: str = ""
    description: Optional[str] = None
    date: Optional[datetime] = None
    account_id: Optional[str] = None
    contact_id: Optional[str] = None


class NormalizedEmail(BaseModel):
    id: str
    subject: str = ""
    sender: str = Field("", alias="from")
    to: List[str] = Field(default_factory=list)
    body: str = ""
    date: Optional[datetime] = None
    is_read: bool = False

    model_config = ConfigDict(populate_by_name=True)


class NormalizedCalendarEvent(BaseModel):
    id: str
    title: str = ""
    description: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    attendees: Optional[List[str]] = None
    location: Optional[str] = None


RecordT = TypeVar("RecordT", bound=BaseModel)


class FetchFailure(BaseModel):
    """One record that could not be fetched or normalized."""

    item_id: str
    reason: str


class FetchResult(BaseModel, Generic[RecordT]):
    """
    Outcome of a fetch operation.

    A non-empty ``failures`` list is a partial fetch: the successful subset
    is still returned in ``records``.
    """

    records: List[RecordT] = Field(default_factory=list)
    failures: List[FetchFailure] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)


# ═══════════════════════════════════════════════════════════════════════════════
# Status
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectorStatus(BaseModel):
    provider: ProviderId
    display_name: str
    description: str = ""
    configured: bool = False
    connected: bool = False
    capabilities: List[Capability] = Field(default_factory=list)
    last_sync_at: Optional[datetime] = None
