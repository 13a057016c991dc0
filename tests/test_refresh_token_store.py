"""Tests for refresh credential issue, validation, rotation and revocation."""

import hashlib
import threading
from datetime import timedelta

import pytest

from sessioncore.service.errors import (
    RefreshTokenExpired,
    RefreshTokenNotFound,
    RefreshTokenRevoked,
)
from sessioncore.service.refresh_tokens import RefreshTokenStore, hash_refresh_token
from sessioncore.storage.memory import MemoryStore
from sessioncore.storage.models import RequestMeta, RevocationReason


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def user(store):
    return store.create_user("sub-1", "one@example.com", "One", roles=["USER"])


@pytest.fixture
def tokens(store, clock):
    return RefreshTokenStore(store, default_ttl=timedelta(days=7), clock=clock)


class TestIssue:
    def test_only_the_hash_is_persisted(self, tokens, store, user, tmp_path):
        issued = tokens.issue(user.id)
        record = store.get_refresh_token(issued.record.id)

        assert record.token_hash == hashlib.sha256(issued.raw.encode()).hexdigest()
        state_file = tmp_path / "store" / "state" / "memory_store.json"
        assert issued.raw not in state_file.read_text()

    def test_raw_values_are_unique_and_long(self, tokens, user):
        raws = {tokens.issue(user.id).raw for _ in range(20)}
        assert len(raws) == 20
        assert all(len(raw) >= 64 for raw in raws)

    def test_expiry_uses_default_ttl(self, tokens, user, clock):
        issued = tokens.issue(user.id)
        assert issued.record.issued_at == clock.now
        assert issued.record.expires_at == clock.now + timedelta(days=7)

    def test_request_metadata_is_recorded(self, tokens, user):
        issued = tokens.issue(user.id, meta=RequestMeta(ip_address="10.0.0.1", user_agent="pytest"))
        assert issued.record.ip_address == "10.0.0.1"
        assert issued.record.user_agent == "pytest"


class TestLookup:
    def test_unknown_credential(self, tokens):
        with pytest.raises(RefreshTokenNotFound):
            tokens.lookup("does-not-exist")

    def test_find_without_validation(self, tokens, user):
        issued = tokens.issue(user.id)
        tokens.revoke(issued.record.id, RevocationReason.LOGOUT)
        assert tokens.find(issued.raw).id == issued.record.id
        assert tokens.find("") is None

    def test_expired_credential(self, tokens, user, clock):
        issued = tokens.issue(user.id, ttl=timedelta(minutes=5))
        clock.advance(minutes=5)
        with pytest.raises(RefreshTokenExpired):
            tokens.lookup(issued.raw)

    def test_revoked_wins_over_expired(self, tokens, user, clock):
        issued = tokens.issue(user.id, ttl=timedelta(minutes=5))
        tokens.revoke(issued.record.id, RevocationReason.LOGOUT)
        clock.advance(minutes=10)
        with pytest.raises(RefreshTokenRevoked):
            tokens.lookup(issued.raw)

    def test_lookup_does_not_mutate(self, tokens, store, user):
        issued = tokens.issue(user.id)
        tokens.lookup(issued.raw)
        assert store.get_refresh_token(issued.record.id).last_used_at is None


class TestConsume:
    def test_reusable_credential_stays_valid(self, tokens, store, user, clock):
        issued = tokens.issue(user.id)
        clock.advance(minutes=1)
        first = tokens.consume(issued.raw)
        second = tokens.consume(issued.raw)

        assert first.id == second.id == issued.record.id
        assert store.get_refresh_token(issued.record.id).last_used_at == clock.now


class TestRotate:
    def test_rotation_revokes_and_links(self, tokens, store, user):
        issued = tokens.issue(user.id)
        successor = tokens.rotate(issued.raw)

        old = store.get_refresh_token(issued.record.id)
        assert old.revoked is True
        assert old.revoked_reason == RevocationReason.ROTATED
        assert old.replaced_by == successor.record.id
        assert tokens.lookup(successor.raw).id == successor.record.id

    def test_rotated_credential_cannot_be_replayed(self, tokens, user):
        issued = tokens.issue(user.id)
        tokens.rotate(issued.raw)
        with pytest.raises(RefreshTokenRevoked):
            tokens.rotate(issued.raw)

    def test_concurrent_rotation_has_a_single_winner(self, tokens, user):
        issued = tokens.issue(user.id)
        barrier = threading.Barrier(8)
        winners, losers, errors = [], [], []

        def worker():
            barrier.wait()
            try:
                winners.append(tokens.rotate(issued.raw))
            except RefreshTokenRevoked:
                losers.append(True)
            except Exception as exc:  # pragma: no cover - surfaced by assertion
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(winners) == 1
        assert len(losers) == 7


class TestRevoke:
    def test_only_first_revocation_reports_change(self, tokens, user):
        issued = tokens.issue(user.id)
        assert tokens.revoke(issued.record.id, RevocationReason.LOGOUT) is True
        assert tokens.revoke(issued.record.id, RevocationReason.LOGOUT) is False

    def test_revoke_all_for_user(self, tokens, store, user):
        other = store.create_user("sub-2", "two@example.com", roles=["USER"])
        for _ in range(3):
            tokens.issue(user.id)
        kept = tokens.issue(other.id)

        assert tokens.revoke_all_for_user(user.id, RevocationReason.ADMIN_REVOKE) == 3
        assert tokens.lookup(kept.raw).id == kept.record.id

    def test_purge_expired_deletes_rows(self, tokens, store, user, clock):
        short = tokens.issue(user.id, ttl=timedelta(hours=1))
        tokens.issue(user.id)
        clock.advance(hours=2)

        assert tokens.purge_expired() == 1
        assert store.get_refresh_token(short.record.id) is None


def test_hash_is_stable():
    assert hash_refresh_token("abc") == hash_refresh_token("abc")
    assert hash_refresh_token("abc") != hash_refresh_token("abd")
