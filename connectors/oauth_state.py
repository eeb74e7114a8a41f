"""
OAuth ``state`` tokens (CSRF protection + callback association).

The state is the only thing that survives the round trip through the
provider, so it carries the initiating ``user_id``, the provider it was
issued for, and an expiry — signed with ``config.oauth_state_secret``.
Connectors never look inside it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode

from connectors.errors import InvalidState
from connectors.models import ProviderId


class StateSigner:
    def __init__(self, secret: str, ttl_seconds: int = 600):
        self._secret = secret.encode()
        self._ttl = ttl_seconds

    def _sign(self, raw: bytes) -> str:
        return hmac.new(self._secret, raw, hashlib.sha256).hexdigest()[:32]

    def create(self, user_id: str, provider: ProviderId) -> str:
        """Create an opaque state string encoding user_id + provider + expiry."""
        payload = json.dumps(
            {
                "user_id": user_id,
                "provider": provider.value,
                "exp": int(time.time()) + self._ttl,
                "nonce": secrets.token_urlsafe(8),
            }
        )
        raw = payload.encode()
        return urlsafe_b64encode(raw).decode().rstrip("=") + "." + self._sign(raw)

    def verify(self, state: str, provider: ProviderId) -> str:
        """Verify a state token and return its user_id.  Raises ``InvalidState``."""
        try:
            encoded, sig = state.split(".", 1)
            raw = urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
            if not hmac.compare_digest(sig, self._sign(raw)):
                raise ValueError("bad signature")
            payload = json.loads(raw)
            if payload.get("exp", 0) < time.time():
                raise ValueError("state expired")
            if payload.get("provider") != provider.value:
                raise ValueError("state issued for another provider")
            user_id = payload["user_id"]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise InvalidState(f"Invalid or expired OAuth state: {exc}", provider=provider) from exc
        return str(user_id)
