"""
HubSpotConnector — OAuth2 for the HubSpot CRM v3 API.

Companies map to accounts, contacts to contacts and tasks to activities.
Scoping contacts or tasks to one company goes through the associations
endpoint followed by a batch read, because the list endpoints cannot
filter on associations.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from connectors.base import BaseConnector, clamp_limit, normalize_each, parse_datetime
from connectors.errors import InvalidIdentifier
from connectors.models import (
    ActivityKind,
    Capability,
    FetchResult,
    NormalizedAccount,
    NormalizedActivity,
    NormalizedContact,
    ProviderId,
)

logger = logging.getLogger(__name__)

_HS_AUTH_URL = "https://app.hubspot.com/oauth/authorize"
_HS_API = "https://api.hubapi.com"

_COMPANY_PROPS = ["name", "domain", "industry"]
_CONTACT_PROPS = ["firstname", "lastname", "email", "phone", "jobtitle"]
_TASK_PROPS = ["hs_task_subject", "hs_task_body", "hs_timestamp", "hs_task_type"]

# hs_task_type → normalized kind; unknown types are tasks
_TASK_TYPE_KINDS: Dict[str, ActivityKind] = {
    "CALL": ActivityKind.CALL,
    "EMAIL": ActivityKind.EMAIL,
    "MEETING": ActivityKind.MEETING,
    "TODO": ActivityKind.TASK,
    "NOTE": ActivityKind.NOTE,
}


class HubSpotConnector(BaseConnector):
    """OAuth2 connector for HubSpot CRM."""

    provider = ProviderId.HUBSPOT
    display_name = "HubSpot"
    description = "CRM, marketing, sales data"
    default_scopes = (
        "crm.objects.contacts.read",
        "crm.objects.companies.read",
        "crm.objects.deals.read",
    )
    default_expires_in = 21600
    capabilities = frozenset(
        {Capability.ACCOUNTS, Capability.CONTACTS, Capability.ACTIVITIES}
    )

    auth_url = _HS_AUTH_URL
    token_url = f"{_HS_API}/oauth/v1/token"

    def connection_test_url(self) -> Optional[str]:
        if self._token is None:
            return None
        return f"{_HS_API}/oauth/v1/access-tokens/{self._token.access_token}"

    async def _list_objects(
        self,
        object_type: str,
        properties: List[str],
        limit: int,
        query: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> List[Any]:
        """Return raw CRM objects, optionally scoped to one company or a search."""
        limit = clamp_limit(limit, 100)

        if account_id:
            company = hubspot_id(account_id)
            assoc = await self._get_json(
                f"{_HS_API}/crm/v3/objects/companies/{company}/associations/{object_type}",
                params={"limit": limit},
            )
            ids = [str(r["id"]) for r in assoc.get("results") or [] if isinstance(r, dict) and r.get("id")]
            if not ids:
                return []
            batch = await self._request(
                "POST",
                f"{_HS_API}/crm/v3/objects/{object_type}/batch/read",
                json={"properties": properties, "inputs": [{"id": i} for i in ids[:limit]]},
            )
            return batch.get("results") or []

        if query:
            found = await self._request(
                "POST",
                f"{_HS_API}/crm/v3/objects/{object_type}/search",
                json={"query": query, "limit": limit, "properties": properties},
            )
            return found.get("results") or []

        data = await self._get_json(
            f"{_HS_API}/crm/v3/objects/{object_type}",
            params={"limit": limit, "properties": ",".join(properties)},
        )
        return data.get("results") or []

    # ── Accounts ────────────────────────────────────────────────────────

    async def fetch_accounts(
        self, query: Optional[str] = None, limit: int = 100
    ) -> FetchResult[NormalizedAccount]:
        items = await self._list_objects("companies", _COMPANY_PROPS, limit, query=query)
        return normalize_each(FetchResult[NormalizedAccount](), items, _parse_company)

    # ── Contacts ────────────────────────────────────────────────────────

    async def fetch_contacts(
        self,
        account_id: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> FetchResult[NormalizedContact]:
        items = await self._list_objects(
            "contacts", _CONTACT_PROPS, limit, query=None if account_id else query, account_id=account_id
        )
        result = normalize_each(
            FetchResult[NormalizedContact](),
            items,
            lambda obj: _parse_contact(obj, account_id),
        )
        if account_id and query:
            needle = query.lower()
            result.records = [c for c in result.records if needle in f"{c.name} {c.email or ''}".lower()]
        return result

    # ── Activities ──────────────────────────────────────────────────────

    async def fetch_activities(
        self, account_id: Optional[str] = None, limit: int = 50
    ) -> FetchResult[NormalizedActivity]:
        items = await self._list_objects("tasks", _TASK_PROPS, limit, account_id=account_id)
        return normalize_each(
            FetchResult[NormalizedActivity](),
            items,
            lambda obj: _parse_task(obj, account_id),
        )


# ── Helpers ──────────────────────────────────────────────────────────────


def hubspot_id(value: str) -> str:
    """HubSpot object ids are numeric; reject anything else before it reaches a URL."""
    if not isinstance(value, str) or not value.isdigit():
        raise InvalidIdentifier(f"Not a valid HubSpot object id: {value!r}", provider=ProviderId.HUBSPOT)
    return value


def task_kind(task_type: Any) -> ActivityKind:
    if not isinstance(task_type, str):
        return ActivityKind.TASK
    return _TASK_TYPE_KINDS.get(task_type.strip().upper(), ActivityKind.TASK)


def _props(obj: Dict[str, Any]) -> Dict[str, Any]:
    props = obj.get("properties")
    return props if isinstance(props, dict) else {}


def _parse_company(obj: Dict[str, Any]) -> NormalizedAccount:
    name = _props(obj).get("name") or ""
    return NormalizedAccount(id=str(obj["id"]), name=name or "Unknown", company=name)


def _parse_contact(obj: Dict[str, Any], account_id: Optional[str]) -> NormalizedContact:
    props = _props(obj)
    name = f"{props.get('firstname') or ''} {props.get('lastname') or ''}".strip()
    return NormalizedContact(
        id=str(obj["id"]),
        name=name or "Unknown",
        email=props.get("email"),
        phone=props.get("phone"),
        title=props.get("jobtitle"),
        account_id=account_id,
    )


def _parse_task(obj: Dict[str, Any], account_id: Optional[str]) -> NormalizedActivity:
    props = _props(obj)
    return NormalizedActivity(
        id=str(obj["id"]),
        kind=task_kind(props.get("hs_task_type")),
        subject=props.get("hs_task_subject") or "No Subject",
        description=props.get("hs_task_body"),
        date=parse_datetime(props.get("hs_timestamp")),
        account_id=account_id,
    )
