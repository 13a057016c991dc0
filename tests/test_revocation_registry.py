"""Tests for the access token revocation registry implementations."""

from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sessioncore.service.clock import epoch_seconds
from sessioncore.service.revocation import (
    MemoryRevocationRegistry,
    RedisRevocationRegistry,
    StoreRevocationRegistry,
)
from sessioncore.storage.errors import StoreUnavailable
from sessioncore.storage.memory import MemoryStore
from sessioncore.storage.models import RevocationReason


class FakeRevocationCache:
    """Dict-backed stand-in for RedisCache that records TTLs."""

    def __init__(self):
        self.revoked = {}
        self.markers = {}

    async def revoke_access_token(self, jti, ttl_seconds):
        self.revoked[jti] = ttl_seconds

    async def is_access_token_revoked(self, jti):
        return jti in self.revoked

    async def set_user_revoked_before(self, user_id, epoch, ttl_seconds):
        current = self.markers.get(user_id, (None, None))[0]
        if current is None or epoch > current:
            self.markers[user_id] = (epoch, ttl_seconds)
        return self.markers[user_id][0]

    async def get_user_revoked_before(self, user_id):
        return self.markers.get(user_id, (None, None))[0]

    async def revocation_state(self, jti, user_id):
        return jti in self.revoked, self.markers.get(user_id, (None, None))[0]


class BrokenCache(FakeRevocationCache):
    async def revocation_state(self, jti, user_id):
        raise RedisConnectionError("connection refused")

    async def revoke_access_token(self, jti, ttl_seconds):
        raise RedisConnectionError("connection refused")


@pytest.fixture(params=["memory", "store", "redis"])
def registry(request, clock, tmp_path):
    if request.param == "memory":
        return MemoryRevocationRegistry(clock=clock, marker_retention=timedelta(minutes=20))
    if request.param == "store":
        return StoreRevocationRegistry(MemoryStore(fs_root=str(tmp_path / "store")), clock=clock)
    return RedisRevocationRegistry(
        FakeRevocationCache(), marker_retention=timedelta(minutes=20), clock=clock
    )


class TestPointRevocation:
    async def test_revoked_jti_is_reported(self, registry, clock):
        await registry.revoke("jti-1", "user-1", clock() + timedelta(minutes=10), RevocationReason.LOGOUT)

        assert await registry.is_revoked("jti-1") is True
        assert await registry.is_revoked("jti-2") is False

    async def test_revoke_is_idempotent(self, registry, clock):
        expires = clock() + timedelta(minutes=10)
        await registry.revoke("jti-1", "user-1", expires, RevocationReason.LOGOUT)
        await registry.revoke("jti-1", "user-1", expires, RevocationReason.LOGOUT)

        assert await registry.is_revoked("jti-1") is True

    async def test_combined_check_sees_point_entry(self, registry, clock):
        await registry.revoke("jti-1", "user-1", clock() + timedelta(minutes=10), RevocationReason.LOGOUT)
        assert await registry.is_token_revoked("jti-1", "user-1", epoch_seconds(clock())) is True
        assert await registry.is_token_revoked("jti-2", "user-1", epoch_seconds(clock())) is False


class TestRevokeAll:
    async def test_tokens_issued_before_marker_are_revoked(self, registry, clock):
        issued = epoch_seconds(clock())
        clock.advance(minutes=1)
        await registry.revoke_all("user-1", RevocationReason.ADMIN_REVOKE)

        assert await registry.is_token_revoked("jti-old", "user-1", issued) is True
        assert await registry.is_token_revoked("jti-other", "user-2", issued) is False

    async def test_same_second_tokens_are_revoked(self, registry, clock):
        await registry.revoke_all("user-1", RevocationReason.ADMIN_REVOKE)
        assert await registry.is_token_revoked("jti", "user-1", epoch_seconds(clock())) is True

    async def test_later_tokens_are_not_revoked(self, registry, clock):
        await registry.revoke_all("user-1", RevocationReason.ADMIN_REVOKE)
        clock.advance(seconds=1)
        assert await registry.is_token_revoked("jti", "user-1", epoch_seconds(clock())) is False

    async def test_marker_never_moves_backwards(self, registry, clock):
        first = await registry.revoke_all("user-1", RevocationReason.ADMIN_REVOKE)
        clock.advance(seconds=-30)
        second = await registry.revoke_all("user-1", RevocationReason.ROLE_CHANGED)

        assert epoch_seconds(second) == epoch_seconds(first)
        assert epoch_seconds(await registry.revoked_before("user-1")) == epoch_seconds(first)

    async def test_no_marker_for_unknown_user(self, registry):
        assert await registry.revoked_before("nobody") is None


class TestPurge:
    async def test_memory_purge_drops_naturally_expired_entries(self, clock):
        registry = MemoryRevocationRegistry(clock=clock)
        await registry.revoke("short", "user-1", clock() + timedelta(minutes=1), RevocationReason.LOGOUT)
        await registry.revoke("long", "user-1", clock() + timedelta(minutes=30), RevocationReason.LOGOUT)
        clock.advance(minutes=2)

        assert await registry.purge_expired() == 1
        assert await registry.is_revoked("long") is True

    async def test_memory_purge_drops_stale_markers(self, clock):
        registry = MemoryRevocationRegistry(clock=clock, marker_retention=timedelta(minutes=15))
        await registry.revoke_all("user-1", RevocationReason.ADMIN_REVOKE)
        clock.advance(minutes=16)
        await registry.purge_expired()

        assert await registry.revoked_before("user-1") is None

    async def test_store_purge_deletes_rows(self, clock, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "store"))
        registry = StoreRevocationRegistry(store, clock=clock)
        await registry.revoke("short", "user-1", clock() + timedelta(minutes=1), RevocationReason.LOGOUT)
        clock.advance(minutes=2)

        assert await registry.purge_expired() == 1
        assert store.get_revoked_access_token("short") is None

    async def test_store_keeps_revocation_details(self, clock, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "store"))
        registry = StoreRevocationRegistry(store, clock=clock)
        await registry.revoke(
            "jti-1", "user-1", clock() + timedelta(minutes=5), RevocationReason.LOGOUT, revoked_by="user-1"
        )

        entry = store.get_revoked_access_token("jti-1")
        assert entry.reason == RevocationReason.LOGOUT
        assert entry.revoked_by == "user-1"
        assert entry.revoked_at == clock.now


class TestRedisRegistry:
    async def test_point_ttl_matches_remaining_lifetime(self, clock):
        cache = FakeRevocationCache()
        registry = RedisRevocationRegistry(cache, marker_retention=timedelta(minutes=15), clock=clock)
        await registry.revoke("jti-1", "user-1", clock() + timedelta(minutes=7), RevocationReason.LOGOUT)

        assert cache.revoked["jti-1"] == 7 * 60

    async def test_already_expired_token_is_not_stored(self, clock):
        cache = FakeRevocationCache()
        registry = RedisRevocationRegistry(cache, marker_retention=timedelta(minutes=15), clock=clock)
        await registry.revoke("jti-1", "user-1", clock() - timedelta(seconds=1), RevocationReason.LOGOUT)

        assert cache.revoked == {}

    async def test_marker_ttl_is_access_lifetime_plus_leeway(self, clock):
        cache = FakeRevocationCache()
        retention = timedelta(minutes=15, seconds=5)
        registry = RedisRevocationRegistry(cache, marker_retention=retention, clock=clock)
        await registry.revoke_all("user-1", RevocationReason.ADMIN_REVOKE)

        assert cache.markers["user-1"] == (epoch_seconds(clock()), 905)

    async def test_redis_failure_surfaces_as_unavailable(self, clock):
        registry = RedisRevocationRegistry(BrokenCache(), marker_retention=timedelta(minutes=15), clock=clock)

        with pytest.raises(StoreUnavailable):
            await registry.is_token_revoked("jti", "user-1", epoch_seconds(clock()))
        with pytest.raises(StoreUnavailable):
            await registry.revoke("jti", "user-1", clock() + timedelta(minutes=1), RevocationReason.LOGOUT)

    async def test_purge_is_left_to_key_expiry(self, clock):
        registry = RedisRevocationRegistry(FakeRevocationCache(), marker_retention=timedelta(minutes=15), clock=clock)
        assert await registry.purge_expired() == 0

    async def test_point_ttl_covers_exp_leeway(self, clock):
        cache = FakeRevocationCache()
        registry = RedisRevocationRegistry(
            cache, marker_retention=timedelta(minutes=15), clock=clock, leeway=timedelta(seconds=5)
        )
        await registry.revoke("jti-1", "user-1", clock() + timedelta(seconds=10), RevocationReason.LOGOUT)

        assert cache.revoked["jti-1"] == 15

    async def test_token_past_exp_but_inside_leeway_is_still_stored(self, clock):
        cache = FakeRevocationCache()
        registry = RedisRevocationRegistry(
            cache, marker_retention=timedelta(minutes=15), clock=clock, leeway=timedelta(seconds=5)
        )
        await registry.revoke("jti-1", "user-1", clock() - timedelta(seconds=2), RevocationReason.LOGOUT)
        await registry.revoke("jti-2", "user-1", clock() - timedelta(seconds=5), RevocationReason.LOGOUT)

        assert cache.revoked == {"jti-1": 3}


class TestLeewayRetention:
    async def test_memory_entry_outlives_exp_by_leeway(self, clock):
        registry = MemoryRevocationRegistry(clock=clock, leeway=timedelta(seconds=5))
        await registry.revoke("jti-1", "user-1", clock() + timedelta(minutes=1), RevocationReason.LOGOUT)
        clock.advance(minutes=1, seconds=4)

        assert await registry.purge_expired() == 0
        assert await registry.is_revoked("jti-1") is True

        clock.advance(seconds=1)
        assert await registry.is_revoked("jti-1") is False
        assert await registry.purge_expired() == 1

    async def test_store_purge_keeps_entries_inside_leeway(self, clock, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "store"))
        registry = StoreRevocationRegistry(store, clock=clock, leeway=timedelta(seconds=5))
        await registry.revoke("jti-1", "user-1", clock() + timedelta(minutes=1), RevocationReason.LOGOUT)
        clock.advance(minutes=1, seconds=3)

        assert await registry.purge_expired() == 0
        assert await registry.is_revoked("jti-1") is True

        clock.advance(seconds=2)
        assert await registry.purge_expired() == 1
