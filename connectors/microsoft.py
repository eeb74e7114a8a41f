"""
MicrosoftConnector — OAuth2 for Microsoft 365 via Microsoft Graph.

Endpoints live under a tenant segment (``common`` unless configured), and
both grant types must repeat the requested scopes.  Graph has no token
revocation endpoint, so ``disconnect()`` only drops local state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from connectors.base import BaseConnector, clamp_limit, dig, first, normalize_each, parse_datetime
from connectors.models import (
    Capability,
    FetchResult,
    NormalizedCalendarEvent,
    NormalizedContact,
    NormalizedEmail,
    ProviderId,
)

logger = logging.getLogger(__name__)

_MS_LOGIN = "https://login.microsoftonline.com"
_GRAPH_API = "https://graph.microsoft.com/v1.0"


class MicrosoftConnector(BaseConnector):
    """OAuth2 connector for Microsoft 365."""

    provider = ProviderId.MICROSOFT
    display_name = "Microsoft 365"
    description = "Outlook email, calendar, contacts"
    default_scopes = (
        "openid",
        "profile",
        "email",
        "offline_access",
        "Mail.Read",
        "Calendars.Read",
        "Contacts.Read",
    )
    default_expires_in = 3600
    capabilities = frozenset(
        {Capability.EMAILS, Capability.CALENDAR_EVENTS, Capability.CONTACTS}
    )

    auth_url = f"{_MS_LOGIN}/{{tenant}}/oauth2/v2.0/authorize"
    token_url = f"{_MS_LOGIN}/{{tenant}}/oauth2/v2.0/token"

    @property
    def tenant_id(self) -> str:
        return self.credential.extra.get("tenant_id") or "common"

    def authorize_endpoint(self) -> str:
        return self.auth_url.format(tenant=self.tenant_id)

    def token_endpoint(self) -> str:
        return self.token_url.format(tenant=self.tenant_id)

    def extra_auth_params(self) -> Dict[str, str]:
        return {"response_mode": "query"}

    def extra_grant_params(self) -> Dict[str, str]:
        return {"scope": " ".join(self.credential.scopes)}

    def connection_test_url(self) -> Optional[str]:
        return f"{_GRAPH_API}/me"

    # ── Mail ────────────────────────────────────────────────────────────

    async def fetch_emails(
        self, query: Optional[str] = None, limit: int = 50
    ) -> FetchResult[NormalizedEmail]:
        params: Dict[str, Any] = {
            "$top": clamp_limit(limit, 1000),
            "$select": "id,subject,from,toRecipients,bodyPreview,receivedDateTime,isRead",
        }
        headers: Dict[str, str] = {}
        if query:
            # Graph does not allow $orderby together with $search
            params["$search"] = '"{}"'.format(query.replace('"', ""))
            headers["ConsistencyLevel"] = "eventual"
        else:
            params["$orderby"] = "receivedDateTime desc"

        data = await self._get_json(f"{_GRAPH_API}/me/messages", params=params, headers=headers)
        return normalize_each(FetchResult[NormalizedEmail](), data.get("value"), _parse_message)

    # ── Calendar ────────────────────────────────────────────────────────

    async def fetch_calendar_events(
        self, start: datetime, end: datetime, limit: int = 250
    ) -> FetchResult[NormalizedCalendarEvent]:
        data = await self._get_json(
            f"{_GRAPH_API}/me/calendarview",
            params={
                "startDateTime": _iso(start),
                "endDateTime": _iso(end),
                "$orderby": "start/dateTime",
                "$top": clamp_limit(limit, 1000),
            },
            headers={"Prefer": 'outlook.timezone="UTC"'},
        )
        return normalize_each(FetchResult[NormalizedCalendarEvent](), data.get("value"), _parse_event)

    # ── Contacts ────────────────────────────────────────────────────────

    async def fetch_contacts(
        self,
        account_id: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> FetchResult[NormalizedContact]:
        params: Dict[str, Any] = {"$top": clamp_limit(limit, 1000)}
        if account_id:
            params["$filter"] = "companyName eq '{}'".format(account_id.replace("'", "''"))

        data = await self._get_json(f"{_GRAPH_API}/me/contacts", params=params)
        result = normalize_each(FetchResult[NormalizedContact](), data.get("value"), _parse_contact)
        if query:
            needle = query.lower()
            result.records = [
                c for c in result.records if needle in f"{c.name} {c.email or ''}".lower()
            ]
        return result


# ── Helpers ──────────────────────────────────────────────────────────────


def _parse_message(msg: Dict[str, Any]) -> NormalizedEmail:
    return NormalizedEmail(
        id=msg["id"],
        subject=msg.get("subject") or "No Subject",
        sender=_address(msg.get("from")) or "",
        to=[a for a in (_address(r) for r in msg.get("toRecipients") or []) if a],
        body=msg.get("bodyPreview") or "",
        date=parse_datetime(msg.get("receivedDateTime")),
        is_read=graph_is_read(msg.get("isRead")),
    )


def _parse_event(event: Dict[str, Any]) -> NormalizedCalendarEvent:
    return NormalizedCalendarEvent(
        id=event["id"],
        title=event.get("subject") or "No Title",
        description=event.get("bodyPreview"),
        start=parse_datetime(dig(event, "start", "dateTime")),
        end=parse_datetime(dig(event, "end", "dateTime")),
        attendees=[a for a in (_address(x) for x in event.get("attendees") or []) if a],
        location=dig(event, "location", "displayName"),
    )


def _parse_contact(contact: Dict[str, Any]) -> NormalizedContact:
    return NormalizedContact(
        id=contact["id"],
        name=contact.get("displayName") or "",
        email=first(contact.get("emailAddresses"), "address"),
        phone=contact.get("mobilePhone") or _first_str(contact.get("businessPhones")),
        title=contact.get("jobTitle"),
        account_id=contact.get("companyName"),
    )


def graph_is_read(value: Any) -> bool:
    """Graph's ``isRead`` flag; anything other than a literal true is unread."""
    return value is True


def _address(recipient: Any) -> Optional[str]:
    return dig(recipient, "emailAddress", "address")


def _first_str(values: Any) -> Optional[str]:
    if isinstance(values, list) and values and isinstance(values[0], str):
        return values[0]
    return None


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
