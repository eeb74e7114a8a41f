"""
SalesforceConnector — OAuth2 web-server flow + SOQL queries.

Salesforce data is read through the generic ``/query`` endpoint with SOQL
strings.  Anything user-supplied that ends up inside a query goes through
``soql_id()`` (strict record-id validation) or ``soql_like()`` (string
literal escaping); nothing is interpolated raw.  The full query is passed
as the ``q`` parameter and URL-escaped by httpx.

Each org lives on its own host, returned as ``instance_url`` by the token
endpoint and kept in ``Token.provider_meta``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from connectors.base import BaseConnector, clamp_limit, normalize_each, parse_datetime
from connectors.errors import InvalidIdentifier, NotConnected
from connectors.models import (
    ActivityKind,
    Capability,
    FetchResult,
    NormalizedAccount,
    NormalizedActivity,
    NormalizedContact,
    ProviderId,
    Token,
)

logger = logging.getLogger(__name__)

_SF_LOGIN = "https://login.salesforce.com"
_API_VERSION = "v58.0"

_SF_ID_RE = re.compile(r"^[a-zA-Z0-9]{15}(?:[a-zA-Z0-9]{3})?$")

# TaskSubtype → normalized kind; unknown subtypes are tasks
_TASK_SUBTYPE_KINDS: Dict[str, ActivityKind] = {
    "call": ActivityKind.CALL,
    "email": ActivityKind.EMAIL,
    "listemail": ActivityKind.EMAIL,
    "task": ActivityKind.TASK,
    "cadence": ActivityKind.TASK,
    "linkedin": ActivityKind.TASK,
}


class SalesforceConnector(BaseConnector):
    """OAuth2 connector for Salesforce CRM."""

    provider = ProviderId.SALESFORCE
    display_name = "Salesforce"
    description = "CRM data, accounts, opportunities"
    default_scopes = ("api", "refresh_token", "openid")
    default_expires_in = 7200
    capabilities = frozenset(
        {Capability.ACCOUNTS, Capability.CONTACTS, Capability.ACTIVITIES}
    )

    auth_url = f"{_SF_LOGIN}/services/oauth2/authorize"
    token_url = f"{_SF_LOGIN}/services/oauth2/token"
    revoke_url = f"{_SF_LOGIN}/services/oauth2/revoke"

    @property
    def instance_url(self) -> str:
        if self._token is None:
            return ""
        return (self._token.provider_meta.get("instance_url") or "").rstrip("/")

    def token_meta(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        meta = super().token_meta(payload)
        # refresh responses usually repeat instance_url, but may not
        if payload.get("instance_url"):
            meta["instance_url"] = payload["instance_url"]
        return meta

    def connection_test_url(self) -> Optional[str]:
        if not self.instance_url:
            return None
        return f"{self.instance_url}/services/data/{_API_VERSION}/"

    async def revoke_token(self, token: Token) -> bool:
        instance = (token.provider_meta.get("instance_url") or "").rstrip("/")
        url = f"{instance}/services/oauth2/revoke" if instance else self.revoke_url
        async with self._client() as client:
            resp = await client.post(url, data={"token": token.access_token}, timeout=self._timeout)
        return resp.status_code == 200

    async def _query(self, soql: str) -> Dict[str, Any]:
        if not self.instance_url:
            raise NotConnected("Salesforce instance URL is unknown; reconnect", provider=self.provider)
        logger.debug("SOQL: %s", soql)
        return await self._get_json(
            f"{self.instance_url}/services/data/{_API_VERSION}/query",
            params={"q": soql},
        )

    # ── Accounts ────────────────────────────────────────────────────────

    async def fetch_accounts(
        self, query: Optional[str] = None, limit: int = 100
    ) -> FetchResult[NormalizedAccount]:
        soql = "SELECT Id, Name, Industry, Website, Phone FROM Account"
        if query:
            soql += f" WHERE Name LIKE '%{soql_like(query)}%'"
        soql += f" ORDER BY LastModifiedDate DESC LIMIT {clamp_limit(limit, 2000)}"

        data = await self._query(soql)
        return normalize_each(FetchResult[NormalizedAccount](), data.get("records"), _parse_account, id_key="Id")

    # ── Contacts ────────────────────────────────────────────────────────

    async def fetch_contacts(
        self,
        account_id: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> FetchResult[NormalizedContact]:
        clauses = []
        if account_id:
            clauses.append(f"AccountId = '{soql_id(account_id)}'")
        if query:
            pattern = soql_like(query)
            clauses.append(f"(Name LIKE '%{pattern}%' OR Email LIKE '%{pattern}%')")

        soql = "SELECT Id, Name, Email, Phone, Title, AccountId FROM Contact"
        if clauses:
            soql += " WHERE " + " AND ".join(clauses)
        soql += f" ORDER BY LastModifiedDate DESC LIMIT {clamp_limit(limit, 2000)}"

        data = await self._query(soql)
        return normalize_each(FetchResult[NormalizedContact](), data.get("records"), _parse_contact, id_key="Id")

    # ── Activities ──────────────────────────────────────────────────────

    async def fetch_activities(
        self, account_id: Optional[str] = None, limit: int = 50
    ) -> FetchResult[NormalizedActivity]:
        soql = "SELECT Id, Subject, Description, ActivityDate, TaskSubtype, WhatId, WhoId FROM Task"
        if account_id:
            soql += f" WHERE WhatId = '{soql_id(account_id)}'"
        soql += f" ORDER BY ActivityDate DESC LIMIT {clamp_limit(limit, 2000)}"

        data = await self._query(soql)
        return normalize_each(FetchResult[NormalizedActivity](), data.get("records"), _parse_task, id_key="Id")


# ── SOQL hardening ───────────────────────────────────────────────────────


def soql_id(value: str) -> str:
    """Return ``value`` if it is a 15/18-char Salesforce id, else raise."""
    if not isinstance(value, str) or not _SF_ID_RE.match(value):
        raise InvalidIdentifier(
            f"Not a valid Salesforce record id: {value!r}", provider=ProviderId.SALESFORCE
        )
    return value


def soql_like(value: str) -> str:
    """Escape free text for use inside a quoted SOQL ``LIKE`` pattern."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return escaped.replace("%", "\\%").replace("_", "\\_")


# ── Record mapping ───────────────────────────────────────────────────────


def task_kind(subtype: Any) -> ActivityKind:
    if not isinstance(subtype, str):
        return ActivityKind.TASK
    return _TASK_SUBTYPE_KINDS.get(subtype.strip().lower(), ActivityKind.TASK)


def _parse_account(record: Dict[str, Any]) -> NormalizedAccount:
    name = record.get("Name") or ""
    return NormalizedAccount(id=record["Id"], name=name, company=name)


def _parse_contact(record: Dict[str, Any]) -> NormalizedContact:
    return NormalizedContact(
        id=record["Id"],
        name=record.get("Name") or "",
        email=record.get("Email"),
        phone=record.get("Phone"),
        title=record.get("Title"),
        account_id=record.get("AccountId"),
    )


def _parse_task(record: Dict[str, Any]) -> NormalizedActivity:
    return NormalizedActivity(
        id=record["Id"],
        kind=task_kind(record.get("TaskSubtype")),
        subject=record.get("Subject") or "No Subject",
        description=record.get("Description"),
        date=parse_datetime(record.get("ActivityDate")),
        account_id=record.get("WhatId"),
        contact_id=record.get("WhoId"),
    )
