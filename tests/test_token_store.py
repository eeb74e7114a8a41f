"""
Tests for the token stores, token encryption and OAuth state signing.
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

from connectors.encryption import TokenCipher
from connectors.errors import InvalidState
from connectors.models import Connection, ProviderId, Token
from connectors.oauth_state import StateSigner
from connectors.token_store import DatabaseTokenStore, InMemoryTokenStore, TokenStore
from database.models import UserConnection
from database.session import create_tables, dispose_engine, get_engine, get_session_factory

from conftest import make_token


class TestIsExpired:
    def test_missing_expiry_is_expired(self):
        assert TokenStore.is_expired(Token(access_token="AT")) is True

    def test_boundary_is_inclusive(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        token = Token(access_token="AT", expires_at=now)
        assert TokenStore.is_expired(token, now=now) is True
        assert TokenStore.is_expired(token, now=now - timedelta(microseconds=1)) is False

    def test_future_expiry_is_live(self):
        assert TokenStore.is_expired(make_token(expires_in=60)) is False

    def test_naive_expiry_is_read_as_utc(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        token = Token(access_token="AT", expires_at=datetime(2024, 5, 1, 13, 0))
        assert TokenStore.is_expired(token, now=now) is False

    def test_repr_hides_secrets(self):
        token = make_token(access_token="secret-at", refresh_token="secret-rt")
        assert "secret" not in repr(token)
        assert "secret" not in str(token)


class TestInMemoryTokenStore:
    @pytest.mark.asyncio
    async def test_put_get_remove(self):
        store = InMemoryTokenStore()
        token = make_token()

        await store.put("u1", ProviderId.GOOGLE, token)
        assert await store.get("u1", ProviderId.GOOGLE) == token
        assert await store.get("u2", ProviderId.GOOGLE) is None
        assert await store.get("u1", ProviderId.HUBSPOT) is None

        await store.remove("u1", ProviderId.GOOGLE)
        await store.remove("u1", ProviderId.GOOGLE)
        assert await store.get("u1", ProviderId.GOOGLE) is None

    @pytest.mark.asyncio
    async def test_close_drops_state(self):
        store = InMemoryTokenStore()
        await store.put("u1", ProviderId.GOOGLE, make_token())
        await store.save_connection(Connection(user_id="u1", provider=ProviderId.GOOGLE, connected=True))

        await store.close()

        assert await store.get("u1", ProviderId.GOOGLE) is None
        assert await store.get_connection("u1", ProviderId.GOOGLE) is None


class TestDatabaseTokenStore:
    @staticmethod
    async def _store(tmp_path, cipher=None):
        url = f"sqlite+aiosqlite:///{tmp_path / 'tokens.db'}"
        await create_tables(get_engine(url))
        return url, DatabaseTokenStore(get_session_factory(url), cipher=cipher)

    @pytest.mark.asyncio
    async def test_round_trip_is_encrypted_at_rest(self, tmp_path):
        url, store = await self._store(tmp_path, TokenCipher(Fernet.generate_key().decode()))
        try:
            token = make_token(access_token="AT1", refresh_token="RT1", instance_url="https://acme")
            token.scopes = ["api", "refresh_token"]
            await store.put("u1", ProviderId.SALESFORCE, token)

            loaded = await store.get("u1", ProviderId.SALESFORCE)
            assert loaded.access_token == "AT1"
            assert loaded.refresh_token == "RT1"
            assert loaded.scopes == ["api", "refresh_token"]
            assert loaded.provider_meta == {"instance_url": "https://acme"}
            assert loaded.expires_at.tzinfo is not None
            assert abs((loaded.expires_at - token.expires_at).total_seconds()) < 1

            async with get_session_factory(url)() as session:
                row = (await session.execute(select(UserConnection))).scalar_one()
            assert row.access_token != "AT1"
            assert row.refresh_token != "RT1"
        finally:
            await dispose_engine(url)

    @pytest.mark.asyncio
    async def test_put_overwrites_single_row(self, tmp_path):
        url, store = await self._store(tmp_path)
        try:
            await store.put("u1", ProviderId.GOOGLE, make_token(access_token="AT1"))
            await store.put("u1", ProviderId.GOOGLE, make_token(access_token="AT2", refresh_token=None))

            loaded = await store.get("u1", ProviderId.GOOGLE)
            assert loaded.access_token == "AT2"
            assert loaded.refresh_token is None

            async with get_session_factory(url)() as session:
                rows = (await session.execute(select(UserConnection))).scalars().all()
            assert len(rows) == 1
        finally:
            await dispose_engine(url)

    @pytest.mark.asyncio
    async def test_remove_keeps_connection_row_disconnected(self, tmp_path):
        url, store = await self._store(tmp_path)
        try:
            await store.save_connection(Connection(user_id="u1", provider=ProviderId.HUBSPOT, connected=True))
            token = make_token(hub_id="42")
            token.scopes = ["oauth"]
            await store.put("u1", ProviderId.HUBSPOT, token)

            await store.remove("u1", ProviderId.HUBSPOT)
            await store.remove("u1", ProviderId.HUBSPOT)

            assert await store.get("u1", ProviderId.HUBSPOT) is None
            async with get_session_factory(url)() as session:
                row = (await session.execute(select(UserConnection))).scalar_one()
            assert row.access_token is None
            assert row.refresh_token is None
            assert not row.scopes
            assert row.provider_meta == {}
            connection = await store.get_connection("u1", ProviderId.HUBSPOT)
            assert connection.connected is False

            await store.delete_connection("u1", ProviderId.HUBSPOT)
            assert await store.get_connection("u1", ProviderId.HUBSPOT) is None
        finally:
            await dispose_engine(url)

    @pytest.mark.asyncio
    async def test_connection_last_sync_round_trip(self, tmp_path):
        url, store = await self._store(tmp_path)
        try:
            synced = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
            await store.save_connection(
                Connection(user_id="u1", provider=ProviderId.MICROSOFT, connected=True, last_sync_at=synced)
            )
            connection = await store.get_connection("u1", ProviderId.MICROSOFT)
            assert connection.connected is True
            assert connection.last_sync_at == synced
            assert await store.get("u1", ProviderId.MICROSOFT) is None
        finally:
            await dispose_engine(url)


class TestTokenCipher:
    def test_round_trip(self):
        cipher = TokenCipher(Fernet.generate_key().decode())
        encrypted = cipher.encrypt("AT1")
        assert encrypted != "AT1"
        assert cipher.decrypt(encrypted) == "AT1"

    def test_plaintext_passthrough_without_key(self):
        cipher = TokenCipher(None)
        assert cipher.enabled is False
        assert cipher.encrypt("AT1") == "AT1"

    def test_legacy_plaintext_is_returned_unchanged(self):
        cipher = TokenCipher(Fernet.generate_key().decode())
        assert cipher.decrypt("legacy-plaintext") == "legacy-plaintext"
        assert cipher.decrypt(None) is None

    def test_invalid_key(self):
        with pytest.raises(ValueError):
            TokenCipher("not-a-fernet-key")


class TestStateSigner:
    def test_round_trip(self, signer):
        state = signer.create("user-42", ProviderId.GOOGLE)
        assert signer.verify(state, ProviderId.GOOGLE) == "user-42"

    def test_state_is_bound_to_provider(self, signer):
        state = signer.create("user-42", ProviderId.GOOGLE)
        with pytest.raises(InvalidState):
            signer.verify(state, ProviderId.HUBSPOT)

    def test_tampered_state(self, signer):
        state = signer.create("user-42", ProviderId.GOOGLE)
        forged = StateSigner("other-secret").create("attacker", ProviderId.GOOGLE)
        with pytest.raises(InvalidState):
            signer.verify(forged, ProviderId.GOOGLE)
        with pytest.raises(InvalidState):
            signer.verify(state.split(".")[0] + ".deadbeef", ProviderId.GOOGLE)

    @pytest.mark.parametrize("garbage", ["", "no-dot", "!!!.???", "a.b.c"])
    def test_garbage_state(self, signer, garbage):
        with pytest.raises(InvalidState):
            signer.verify(garbage, ProviderId.GOOGLE)

    def test_expired_state(self):
        signer = StateSigner("s", ttl_seconds=-1)
        state = signer.create("user-42", ProviderId.GOOGLE)
        with pytest.raises(InvalidState):
            signer.verify(state, ProviderId.GOOGLE)
