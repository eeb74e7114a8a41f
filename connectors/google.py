"""
GoogleConnector — OAuth2 web flow for Google Workspace.

Covers Gmail (read-only), Google Calendar and the People API contacts.

Gmail's list endpoint only returns message ids, so emails are fetched in
two phases: list ids, then fetch each message's metadata.  The per-message
calls run with bounded concurrency and fail independently — one bad id
lands in ``FetchResult.failures`` instead of aborting the batch.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from connectors.base import (
    BaseConnector,
    clamp_limit,
    connector_error_reason,
    dig,
    first,
    normalize_each,
    parse_datetime,
)
from connectors.errors import ConnectorError
from connectors.models import (
    Capability,
    FetchFailure,
    FetchResult,
    NormalizedCalendarEvent,
    NormalizedContact,
    NormalizedEmail,
    ProviderId,
)

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

_GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
_CALENDAR_API = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
_PEOPLE_API = "https://people.googleapis.com/v1/people/me/connections"

_METADATA_HEADERS = ["Subject", "From", "To", "Date"]


class GoogleConnector(BaseConnector):
    """OAuth2 connector for Google Workspace."""

    provider = ProviderId.GOOGLE
    display_name = "Google Workspace"
    description = "Gmail, Google Calendar, Contacts"
    default_scopes = (
        "openid",
        "email",
        "profile",
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/contacts.readonly",
    )
    default_expires_in = 3600
    capabilities = frozenset(
        {Capability.EMAILS, Capability.CALENDAR_EVENTS, Capability.CONTACTS}
    )

    auth_url = _GOOGLE_AUTH_URL
    token_url = _GOOGLE_TOKEN_URL
    revoke_url = _GOOGLE_REVOKE_URL

    fetch_concurrency = 5

    def extra_auth_params(self) -> Dict[str, str]:
        return {
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
        }

    def connection_test_url(self) -> Optional[str]:
        return _GOOGLE_USERINFO_URL

    # ── Gmail ───────────────────────────────────────────────────────────

    async def fetch_emails(
        self, query: Optional[str] = None, limit: int = 50
    ) -> FetchResult[NormalizedEmail]:
        limit = clamp_limit(limit, 500)
        params: Dict[str, Any] = {"maxResults": limit}
        if query:
            params["q"] = query

        # 1. List message ids
        listing = await self._get_json(f"{_GMAIL_API}/messages", params=params)
        ids = [m["id"] for m in (listing.get("messages") or []) if isinstance(m, dict) and m.get("id")]
        ids = ids[:limit]

        # 2. Fetch each message, isolating failures per id
        semaphore = asyncio.Semaphore(max(1, self.fetch_concurrency))

        async def fetch_one(message_id: str):
            async with semaphore:
                try:
                    msg = await self._get_json(
                        f"{_GMAIL_API}/messages/{message_id}",
                        params=[("format", "metadata")] + [("metadataHeaders", h) for h in _METADATA_HEADERS],
                    )
                    return _parse_message(msg, message_id)
                except ConnectorError as exc:
                    logger.warning("Gmail message %s skipped: %s", message_id, exc.message)
                    return FetchFailure(item_id=message_id, reason=connector_error_reason(exc))
                except (AttributeError, KeyError, TypeError, ValueError) as exc:
                    logger.warning("Gmail message %s unparseable: %s", message_id, exc)
                    return FetchFailure(item_id=message_id, reason=connector_error_reason(exc))

        outcomes = await asyncio.gather(*(fetch_one(mid) for mid in ids))

        result = FetchResult[NormalizedEmail]()
        for outcome in outcomes:
            if isinstance(outcome, FetchFailure):
                result.failures.append(outcome)
            else:
                result.records.append(outcome)
        return result

    # ── Calendar ────────────────────────────────────────────────────────

    async def fetch_calendar_events(
        self, start: datetime, end: datetime, limit: int = 250
    ) -> FetchResult[NormalizedCalendarEvent]:
        data = await self._get_json(
            _CALENDAR_API,
            params={
                "timeMin": _rfc3339(start),
                "timeMax": _rfc3339(end),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": clamp_limit(limit, 2500),
            },
        )
        return normalize_each(FetchResult[NormalizedCalendarEvent](), data.get("items"), _parse_event)

    # ── Contacts ────────────────────────────────────────────────────────

    async def fetch_contacts(
        self,
        account_id: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> FetchResult[NormalizedContact]:
        data = await self._get_json(
            _PEOPLE_API,
            params={
                "personFields": "names,emailAddresses,phoneNumbers,organizations",
                "pageSize": clamp_limit(limit, 1000),
            },
        )
        result = normalize_each(
            FetchResult[NormalizedContact](),
            data.get("connections"),
            _parse_person,
            id_key="resourceName",
        )
        # the People API has no server-side filter on organization or text
        result.records = [
            c
            for c in result.records
            if (not account_id or c.account_id == account_id)
            and (not query or _matches(query, c.name, c.email))
        ]
        return result


# ── Helpers ──────────────────────────────────────────────────────────────


def _parse_message(msg: Dict[str, Any], fallback_id: str) -> NormalizedEmail:
    """Normalize a Gmail ``format=metadata`` message resource."""
    headers = {
        h.get("name"): str(h.get("value") or "")
        for h in dig(msg, "payload", "headers") or []
        if isinstance(h, dict)
    }
    labels = msg.get("labelIds")
    to_header = headers.get("To", "")
    return NormalizedEmail(
        id=msg.get("id") or fallback_id,
        subject=headers.get("Subject") or "No Subject",
        sender=headers.get("From", ""),
        to=[addr.strip() for addr in to_header.split(",") if addr.strip()],
        body=msg.get("snippet") or "",
        date=_internal_date(msg.get("internalDate")),
        is_read=gmail_is_read(labels if isinstance(labels, list) else []),
    )


def _parse_event(event: Dict[str, Any]) -> NormalizedCalendarEvent:
    return NormalizedCalendarEvent(
        id=event["id"],
        title=event.get("summary") or "No Title",
        description=event.get("description"),
        start=_event_time(event.get("start")),
        end=_event_time(event.get("end")),
        attendees=[
            a["email"] for a in event.get("attendees") or [] if isinstance(a, dict) and a.get("email")
        ],
        location=event.get("location"),
    )


def _parse_person(person: Dict[str, Any]) -> NormalizedContact:
    organizations = person.get("organizations")
    return NormalizedContact(
        id=person["resourceName"],
        name=first(person.get("names"), "displayName") or "",
        email=first(person.get("emailAddresses"), "value"),
        phone=first(person.get("phoneNumbers"), "value"),
        title=first(organizations, "title"),
        account_id=first(organizations, "name"),
    )


def gmail_is_read(labels: List[str]) -> bool:
    """A message is unread exactly when it carries the ``UNREAD`` label."""
    return "UNREAD" not in labels


def _internal_date(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _event_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, dict):
        return None
    return parse_datetime(value.get("dateTime") or value.get("date"))


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _matches(query: str, *fields: Optional[str]) -> bool:
    needle = query.lower()
    return any(needle in (f or "").lower() for f in fields)
