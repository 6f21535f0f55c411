"""Tests for refresh-token sessions and access-token denylisting."""

from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from wayfarer.service.devices import DeviceFingerprint
from wayfarer.service.errors import NotFoundError, UnauthorizedError
from wayfarer.service.sessions import SessionManager
from wayfarer.service.tokens import TokenMinter, hash_secret
from wayfarer.storage.memory import MemoryStore
from wayfarer.storage.redis_cache import RedisCache


class FakeCache:
    """Async stand-in for RedisCache's denylist surface."""

    def __init__(self):
        self.denylisted = {}

    async def denylist_access_token(self, jti, ttl_seconds):
        self.denylisted[jti] = ttl_seconds

    async def is_access_token_denylisted(self, jti):
        return jti in self.denylisted


class DownCache(FakeCache):
    async def denylist_access_token(self, jti, ttl_seconds):
        raise RedisConnectionError("redis unavailable")


@pytest.fixture
def memory_store():
    return MemoryStore(mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def minter():
    return TokenMinter(
        "Test-Secret-Key_for-Automation-Only-987654321!",
        issuer="wayfarer",
        audience="wayfarer-api",
    )


@pytest.fixture
def device():
    return DeviceFingerprint.from_request("Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0", "10.0.0.1")


@pytest.fixture
def sessions(memory_store, minter):
    return SessionManager(memory_store, minter, refresh_ttl_days=7)


class TestSessionLifecycle:
    """Tests for create, renew and revoke."""

    def test_create_stores_only_the_hash(self, sessions, memory_store, device):
        """The raw secret is returned once and only its hash is persisted."""
        issued = sessions.create_session("user-1", device)

        stored = memory_store.sessions[issued.session.id]
        assert stored.token_hash == hash_secret(issued.refresh_token)
        assert issued.refresh_token not in repr(stored)
        assert stored.device_name == "Firefox on Linux"
        assert stored.access_jti == issued.access_token.jti
        remaining = stored.expires_at - datetime.now(timezone.utc)
        assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)

    def test_renew_mints_access_without_rotation(self, sessions, memory_store, device):
        """Renewal keeps the refresh secret and bumps last_used_at."""
        issued = sessions.create_session("user-1", device)
        before = memory_store.sessions[issued.session.id].last_used_at

        session, access = sessions.renew(issued.refresh_token)

        assert session.id == issued.session.id
        assert access.jti != issued.access_token.jti
        stored = memory_store.sessions[issued.session.id]
        assert stored.last_used_at >= before
        assert stored.access_jti == access.jti
        sessions.renew(issued.refresh_token)

    def test_renew_unknown_secret(self, sessions):
        """Unknown secrets fail with invalid_or_expired."""
        with pytest.raises(UnauthorizedError) as excinfo:
            sessions.renew("nope")

        assert excinfo.value.error_code == "invalid_or_expired"

    def test_renew_expired_session(self, sessions, memory_store, device):
        """Expired sessions cannot be renewed."""
        issued = sessions.create_session("user-1", device)
        memory_store.sessions[issued.session.id].expires_at = datetime.now(
            timezone.utc
        ) - timedelta(seconds=1)

        with pytest.raises(UnauthorizedError):
            sessions.renew(issued.refresh_token)

    async def test_revoke_is_idempotent(self, sessions, device):
        """Revoking twice, or revoking garbage, is not an error."""
        issued = sessions.create_session("user-1", device)

        assert await sessions.revoke(issued.refresh_token) is True
        assert await sessions.revoke(issued.refresh_token) is False
        assert await sessions.revoke("unknown") is False
        with pytest.raises(UnauthorizedError):
            sessions.renew(issued.refresh_token)

    async def test_revoke_all(self, sessions, device):
        """Every active session for the user is deactivated."""
        first = sessions.create_session("user-1", device)
        second = sessions.create_session("user-1", device)
        other = sessions.create_session("user-2", device)

        assert await sessions.revoke_all("user-1") == 2

        for issued in (first, second):
            with pytest.raises(UnauthorizedError):
                sessions.renew(issued.refresh_token)
        sessions.renew(other.refresh_token)

    async def test_revoke_by_id_is_owner_scoped(self, sessions, device):
        """Another user's session id is reported as not found."""
        issued = sessions.create_session("user-1", device)

        with pytest.raises(NotFoundError):
            await sessions.revoke_by_id("user-2", issued.session.id)

        await sessions.revoke_by_id("user-1", issued.session.id)
        with pytest.raises(NotFoundError):
            await sessions.revoke_by_id("user-1", issued.session.id)

    def test_list_active_newest_first(self, sessions, memory_store, device):
        """Listing hides hashes and sorts by last use."""
        older = sessions.create_session("user-1", device)
        newer = sessions.create_session("user-1", device)
        memory_store.sessions[older.session.id].last_used_at -= timedelta(hours=1)

        listed = sessions.list_active("user-1")

        assert [entry["id"] for entry in listed] == [newer.session.id, older.session.id]
        assert all("token_hash" not in entry for entry in listed)


class TestAccessDenylist:
    """Tests for Redis-backed access-token revocation."""

    async def test_revoke_denylists_latest_access_token(self, memory_store, minter, device):
        """Revoking a session denylists its newest access token."""
        cache = FakeCache()
        sessions = SessionManager(memory_store, minter, cache)
        issued = sessions.create_session("user-1", device)

        await sessions.revoke(issued.refresh_token)

        assert issued.access_token.jti in cache.denylisted
        assert await sessions.is_access_revoked(issued.access_token.jti)

    async def test_denylist_failure_does_not_block_revoke(self, memory_store, minter, device):
        """A Redis outage is logged and the session is still revoked."""
        sessions = SessionManager(memory_store, minter, DownCache())
        issued = sessions.create_session("user-1", device)

        assert await sessions.revoke(issued.refresh_token) is True
        assert memory_store.sessions[issued.session.id].is_active is False

    async def test_without_cache_nothing_is_revoked(self, sessions):
        """With no Redis there is no denylist to consult."""
        assert await sessions.is_access_revoked("any-jti") is False
        await sessions.denylist_access_token("any-jti", datetime.now(timezone.utc))

    def test_ttl_seconds_clamped(self):
        """Past expiries still produce a positive TTL."""
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        future = datetime.now(timezone.utc) + timedelta(minutes=5)

        assert RedisCache.ttl_seconds(past) == 1
        assert 290 <= RedisCache.ttl_seconds(future) <= 300
