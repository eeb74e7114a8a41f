"""
JWT-style token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256.
Secret key is loaded from ``config.jwt_secret`` (env var: ``JWT_SECRET``).
Users themselves live in the CRM; this service only checks that a caller
presents a token the CRM issued.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional

from fastapi import HTTPException, status

from config.settings import config


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(user_id: str, *, secret: Optional[str] = None, expires_in: Optional[int] = None) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    payload = {
        "user_id": user_id,
        "exp": int(time.time()) + (expires_in if expires_in is not None else config.jwt_expiry_seconds),
    }
    raw = json.dumps(payload).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw, secret or config.jwt_secret)


def verify_token(token: str, *, secret: Optional[str] = None) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        encoded, sig = token.split(".", 1)
        raw = urlsafe_b64decode(encoded)
        if not hmac.compare_digest(sig, _sign(raw, secret or config.jwt_secret)):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        return str(payload["user_id"])
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        ) from exc
