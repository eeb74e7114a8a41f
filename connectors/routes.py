"""
Connector API routes — OAuth connect/callback, status, disconnect and the
normalized fetch endpoints.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from auth.dependencies import get_current_user_id
from connectors.dispatcher import ConnectorDispatcher
from connectors.errors import (
    AuthorizationDenied,
    ConnectorError,
    ExchangeFailed,
    InvalidIdentifier,
    InvalidState,
    NotConnected,
    ProviderNotConfigured,
    ReauthorizationRequired,
    RefreshFailed,
    UnsupportedOperation,
    UpstreamRejected,
    UpstreamUnavailable,
)
from connectors.models import FetchResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])

# Most specific class wins; looked up along the exception's MRO.
_ERROR_STATUS: Dict[type, int] = {
    ProviderNotConfigured: status.HTTP_404_NOT_FOUND,
    AuthorizationDenied: status.HTTP_400_BAD_REQUEST,
    InvalidState: status.HTTP_400_BAD_REQUEST,
    InvalidIdentifier: status.HTTP_400_BAD_REQUEST,
    ReauthorizationRequired: status.HTTP_401_UNAUTHORIZED,
    NotConnected: status.HTTP_409_CONFLICT,
    UnsupportedOperation: status.HTTP_501_NOT_IMPLEMENTED,
    ExchangeFailed: status.HTTP_502_BAD_GATEWAY,
    RefreshFailed: status.HTTP_502_BAD_GATEWAY,
    UpstreamRejected: status.HTTP_502_BAD_GATEWAY,
    UpstreamUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_status(exc: ConnectorError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return status.HTTP_502_BAD_GATEWAY


async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    code = error_status(exc)
    if code >= 500:
        logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ConnectorError, connector_error_handler)


def get_dispatcher(request: Request) -> ConnectorDispatcher:
    return request.app.state.dispatcher


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _result(result: FetchResult) -> Dict[str, Any]:
    return {
        "records": [r.model_dump(by_alias=True, mode="json") for r in result.records],
        "failures": [f.model_dump(mode="json") for f in result.failures],
        "partial": result.partial,
    }


# ── Discovery & status ─────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(dispatcher: ConnectorDispatcher = Depends(get_dispatcher)) -> List[Dict[str, Any]]:
    """
    List all connector providers and their configuration status.
    No auth required — used by frontend to show available connectors.
    """
    return dispatcher.registry.list_providers()


@router.get("/")
async def connector_status(
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Per-provider ``configured`` / ``connected`` flags for the caller."""
    statuses = await dispatcher.status(user_id)
    return {
        "connectors": {
            provider.value: s.model_dump(mode="json", exclude={"provider"})
            for provider, s in statuses.items()
        }
    }


# ── OAuth flow ─────────────────────────────────────────────────────────


@router.get("/{provider}/auth-url")
async def get_auth_url(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a provider.

    Frontend should navigate (or open a popup) to this URL.
    """
    auth_url = await dispatcher.get_auth_url(user_id, provider)
    return {"authUrl": auth_url, "provider": provider}


@router.get("/{provider}/callback")
async def oauth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> RedirectResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Exchanges the code, stores the token, then sends the browser back to
    the frontend with ``status=success`` or ``status=error&reason=<code>``.
    """
    params = {"connector": provider}
    try:
        user_id = await dispatcher.handle_callback(provider, code, state, error=error)
    except ConnectorError as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc.message)
        params.update(status="error", reason=exc.code)
    else:
        logger.info("OAuth connected: user=%s provider=%s", user_id, provider)
        params["status"] = "success"

    base = request.app.state.settings.frontend_redirect_url
    sep = "&" if "?" in base else "?"
    return RedirectResponse(f"{base}{sep}{urlencode(params)}", status_code=status.HTTP_302_FOUND)


@router.delete("/{provider}")
async def disconnect(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Revoke and forget the caller's connection.  Safe to repeat."""
    await dispatcher.disconnect(user_id, provider)
    return {"message": f"{provider} disconnected successfully", "connected": False}


@router.post("/{provider}/sync")
async def sync(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    connection = await dispatcher.sync(user_id, provider)
    return {
        "message": f"{provider} sync completed",
        "lastSync": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
    }


@router.get("/{provider}/test")
async def test_connection(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    return {"provider": provider, "ok": await dispatcher.test_connection(user_id, provider)}


# ── Normalized fetches ─────────────────────────────────────────────────


@router.get("/{provider}/accounts")
async def fetch_accounts(
    provider: str,
    q: Optional[str] = Query(None, max_length=200),
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    return _result(await dispatcher.fetch_accounts(user_id, provider, query=q, limit=limit))


@router.get("/{provider}/contacts")
async def fetch_contacts(
    provider: str,
    account_id: Optional[str] = Query(None, alias="accountId"),
    q: Optional[str] = Query(None, max_length=200),
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    return _result(
        await dispatcher.fetch_contacts(user_id, provider, account_id=account_id, query=q, limit=limit)
    )


@router.get("/{provider}/activities")
async def fetch_activities(
    provider: str,
    account_id: Optional[str] = Query(None, alias="accountId"),
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    return _result(
        await dispatcher.fetch_activities(user_id, provider, account_id=account_id, limit=limit)
    )


@router.get("/{provider}/emails")
async def fetch_emails(
    provider: str,
    q: Optional[str] = Query(None, max_length=200),
    limit: int = Query(50, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    return _result(await dispatcher.fetch_emails(user_id, provider, query=q, limit=limit))


@router.get("/{provider}/calendar-events")
async def fetch_calendar_events(
    provider: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(250, ge=1, le=1000),
    user_id: str = Depends(get_current_user_id),
    dispatcher: ConnectorDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Events between ``start`` and ``end``; defaults to the next 30 days."""
    start = _utc(start) or datetime.now(timezone.utc)
    end = _utc(end) or start + timedelta(days=30)
    if end <= start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must be after start")
    return _result(
        await dispatcher.fetch_calendar_events(user_id, provider, start=start, end=end, limit=limit)
    )
