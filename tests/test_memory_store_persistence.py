from datetime import datetime, timedelta, timezone

import pytest

from sessioncore.storage.errors import StoreUnavailable
from sessioncore.storage.memory import MemoryStore
from sessioncore.storage.models import RefreshToken, RevocationReason, RevokedAccessToken

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_memory_store_persists_users_and_token_state(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("idp|persist", "persist@example.com", "Persist", roles=["USER"], now=NOW)
    store.grant_role(user.id, "MANAGER", granted_by="admin-1", now=NOW)
    record = store.create_refresh_token(
        RefreshToken.new(user.id, "ab" * 32, ttl=timedelta(days=7), issued_at=NOW)
    )
    store.add_revoked_access_token(
        RevokedAccessToken(
            jti="jti-1",
            user_id=user.id,
            expires_at=NOW + timedelta(minutes=15),
            revoked_at=NOW,
            reason=RevocationReason.LOGOUT,
        )
    )
    store.set_user_revoked_before(user.id, NOW)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user_by_subject("idp|persist")
    assert reloaded_user.id == user.id
    assert reloaded_user.created_at == NOW
    assert [(g.role, g.granted_by) for g in reloaded.list_user_roles(user.id)] == [
        ("MANAGER", "admin-1"),
        ("USER", "SYSTEM"),
    ]
    assert reloaded.get_refresh_token_by_hash("ab" * 32).id == record.id
    assert reloaded.is_access_token_revoked("jti-1") is True
    assert reloaded.get_user_revoked_before(user.id) == NOW


def test_rotation_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("idp|rot", "rot@example.com", roles=["USER"], now=NOW)
    old = store.create_refresh_token(RefreshToken.new(user.id, "aa" * 32, ttl=timedelta(days=1), issued_at=NOW))
    successor = RefreshToken.new(user.id, "bb" * 32, ttl=timedelta(days=1), issued_at=NOW)

    assert store.rotate_refresh_token(old.id, successor, revoked_at=NOW) is True

    reloaded = MemoryStore(fs_root=str(tmp_path))
    previous = reloaded.get_refresh_token(old.id)
    assert previous.revoked is True
    assert previous.replaced_by == successor.id
    assert reloaded.get_refresh_token(successor.id).revoked is False


def test_fresh_root_starts_with_default_roles_only(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path / "fresh"))

    assert store.list_users() == []
    assert sorted(r.name for r in store.list_roles()) == ["ADMIN", "MANAGER", "USER"]


def test_write_failure_is_unavailable_and_rolls_back(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    kept = store.create_user("idp|kept", "kept@example.com", roles=["USER"], now=NOW)
    # A directory where the staging file goes makes every write fail
    (tmp_path / "state" / "memory_store.tmp").mkdir()

    with pytest.raises(StoreUnavailable):
        store.create_user("idp|lost", "lost@example.com", roles=["USER"], now=NOW)

    assert store.get_user_by_subject("idp|lost") is None
    assert store.get_user_by_subject("idp|kept").id == kept.id
    assert store.list_user_roles(kept.id)[0].role == "USER"
