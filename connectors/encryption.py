"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The key comes from ``config.token_encryption_key`` (env var:
``TOKEN_ENCRYPTION_KEY``) and is handed to ``TokenCipher`` by whoever builds
the durable token store.

If no key is configured, encryption is **disabled** and tokens are stored
as plaintext (with a startup warning).  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenCipher:
    """Symmetric cipher for token columns; a no-op when no key is set."""

    def __init__(self, key: Optional[str] = None):
        self._fernet: Optional[Fernet] = None
        if not key:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set — OAuth tokens will be stored as plaintext."
            )
            return
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
            logger.info("Token encryption enabled (Fernet/AES-128-CBC)")
        except (ValueError, TypeError) as exc:
            raise ValueError(f"Invalid TOKEN_ENCRYPTION_KEY: {exc}") from exc

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a token string for database storage.

        Returns the Fernet ciphertext (URL-safe base64), or the input
        unchanged when encryption is disabled.
        """
        if plaintext is None or self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a token string read from the database.

        Values written before encryption was enabled are not valid Fernet
        tokens and are returned as-is.
        """
        if ciphertext is None or self._fernet is None:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            return ciphertext
