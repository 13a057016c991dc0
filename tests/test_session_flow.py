"""Session issue / refresh / logout flows under both refresh policies."""

import asyncio
import threading
from datetime import timedelta

import pytest

from sessioncore.config import RefreshPolicy, Settings
from sessioncore.service.authenticator import RequestAuthenticator
from sessioncore.service.claims import ClaimsCodec
from sessioncore.service.errors import (
    AccountDisabled,
    RefreshRejected,
    RefreshTokenExpired,
    RefreshTokenNotFound,
    RefreshTokenRevoked,
    RefreshUserInactive,
    TokenExpired,
    TokenRevoked,
)
from sessioncore.service.provisioning import IdentityProvisioner
from sessioncore.service.refresh_tokens import RefreshTokenStore
from sessioncore.service.revocation import MemoryRevocationRegistry
from sessioncore.service.revocation_admin import RevocationAdministrator
from sessioncore.service.sessions import (
    ForcedReauthStrategy,
    SessionIssuer,
    SessionRefresher,
    SilentRefreshStrategy,
    build_refresh_strategy,
)
from sessioncore.storage.memory import MemoryStore
from sessioncore.storage.models import ExternalIdentity, RequestMeta, RevocationReason

SECRET = "session-flow-secret-0123456789-abcdefghij"


class Stack:
    def __init__(self, clock, tmp_path, strategy):
        self.store = MemoryStore(fs_root=str(tmp_path / "store"))
        self.codec = ClaimsCodec(SECRET, "sessioncore", "clients", clock=clock)
        self.registry = MemoryRevocationRegistry(clock=clock)
        self.refresh_tokens = RefreshTokenStore(self.store, default_ttl=timedelta(days=7), clock=clock)
        self.provisioner = IdentityProvisioner(self.store, clock=clock)
        self.issuer = SessionIssuer(self.provisioner, self.codec, self.refresh_tokens)
        self.refresher = SessionRefresher(self.provisioner, self.codec, self.refresh_tokens, strategy)
        self.authenticator = RequestAuthenticator(self.codec, self.registry)
        self.admin = RevocationAdministrator(
            self.registry, self.refresh_tokens, self.provisioner, clock=clock
        )


@pytest.fixture
def silent(clock, tmp_path):
    return Stack(clock, tmp_path, SilentRefreshStrategy(rotate=True))


@pytest.fixture
def forced(clock, tmp_path):
    return Stack(clock, tmp_path, ForcedReauthStrategy())


IDENTITY = ExternalIdentity(subject="abc", email="a@x.com", display_name="A")


class TestIssuer:
    def test_issue_session_returns_pair(self, silent):
        issued = silent.issuer.issue_session(IDENTITY, RequestMeta(ip_address="127.0.0.1"))

        assert issued.roles == ["USER"]
        assert issued.access.claims.subject == issued.user.id
        assert issued.access.claims.roles == ["USER"]
        assert issued.refresh.record.user_id == issued.user.id
        assert issued.refresh.record.ip_address == "127.0.0.1"

    def test_inactive_user_gets_no_tokens(self, silent):
        user = silent.provisioner.resolve_user("abc", "a@x.com")
        silent.provisioner.set_active(user.id, False)

        with pytest.raises(AccountDisabled):
            silent.issuer.issue_session(IDENTITY)
        assert silent.store.list_refresh_tokens(user.id) == []


class TestSilentRefresh:
    def test_refresh_rotates_credential(self, silent, clock):
        issued = silent.issuer.issue_session(IDENTITY)
        clock.advance(minutes=16)

        result = silent.refresher.refresh(issued.refresh.raw)

        assert result.requires_reauth is False
        assert result.access.claims.jti != issued.access.claims.jti
        assert result.refresh.raw != issued.refresh.raw

    def test_refresh_picks_up_current_roles(self, silent):
        issued = silent.issuer.issue_session(IDENTITY)
        silent.provisioner.grant_role(issued.user.id, "MANAGER", granted_by="admin")

        result = silent.refresher.refresh(issued.refresh.raw)

        assert result.access.claims.roles == ["MANAGER", "USER"]

    def test_reusable_mode_keeps_credential(self, clock, tmp_path):
        stack = Stack(clock, tmp_path, SilentRefreshStrategy(rotate=False))
        issued = stack.issuer.issue_session(IDENTITY)

        first = stack.refresher.refresh(issued.refresh.raw)
        second = stack.refresher.refresh(issued.refresh.raw)

        assert first.refresh is None and second.refresh is None
        assert first.access.claims.jti != second.access.claims.jti

    def test_expired_credential_is_hard_rejected(self, silent, clock):
        issued = silent.issuer.issue_session(IDENTITY)
        clock.advance(days=8)
        with pytest.raises(RefreshTokenExpired):
            silent.refresher.refresh(issued.refresh.raw)

    def test_deactivated_user_cannot_refresh(self, silent):
        issued = silent.issuer.issue_session(IDENTITY)
        silent.provisioner.set_active(issued.user.id, False)

        with pytest.raises(RefreshUserInactive):
            silent.refresher.refresh(issued.refresh.raw)
        assert all(r.revoked for r in silent.store.list_refresh_tokens(issued.user.id))

    def test_concurrent_refresh_has_single_winner(self, silent):
        issued = silent.issuer.issue_session(IDENTITY)
        barrier = threading.Barrier(2)
        outcomes = []

        def refresh():
            barrier.wait()
            try:
                outcomes.append(silent.refresher.refresh(issued.refresh.raw))
            except RefreshTokenRevoked as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=refresh) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(successes) == 1
        assert sum(isinstance(o, RefreshTokenRevoked) for o in outcomes) == 1
        # The surviving credential consumes cleanly exactly once more
        follow_up = silent.refresher.refresh(successes[0].refresh.raw)
        assert follow_up.access is not None
        with pytest.raises(RefreshTokenRevoked):
            silent.refresher.refresh(successes[0].refresh.raw)


class TestForcedReauth:
    def test_live_credential_requires_reauth(self, forced, clock):
        issued = forced.issuer.issue_session(IDENTITY)
        clock.advance(minutes=16)

        result = forced.refresher.refresh(issued.refresh.raw)

        assert result.requires_reauth is True
        assert result.access is None
        # Nothing was consumed
        assert forced.refresh_tokens.lookup(issued.refresh.raw).last_used_at is None

    def test_expired_credential_is_hard_rejected(self, forced, clock):
        issued = forced.issuer.issue_session(IDENTITY)
        clock.advance(days=8)
        with pytest.raises(RefreshTokenExpired):
            forced.refresher.refresh(issued.refresh.raw)

    def test_unknown_credential_is_hard_rejected(self, forced):
        with pytest.raises(RefreshTokenNotFound):
            forced.refresher.refresh("made-up")

    def test_revoked_credential_is_hard_rejected(self, forced, clock):
        issued = forced.issuer.issue_session(IDENTITY)
        forced.refresh_tokens.revoke(issued.refresh.record.id, RevocationReason.LOGOUT)
        clock.advance(minutes=16)

        with pytest.raises(RefreshTokenRevoked):
            forced.refresher.refresh(issued.refresh.raw)

    def test_admin_revoked_credential_is_hard_rejected(self, forced):
        issued = forced.issuer.issue_session(IDENTITY)
        asyncio.run(forced.admin.admin_revoke_user(issued.user.id))

        with pytest.raises(RefreshTokenRevoked):
            forced.refresher.refresh(issued.refresh.raw)


class TestSessionCheck:
    def test_check_reports_both_credentials(self, silent):
        issued = silent.issuer.issue_session(IDENTITY)
        principal = asyncio.run(silent.authenticator.authenticate(issued.access.token))

        status = silent.refresher.check(principal, issued.refresh.raw)

        assert status.authenticated is True
        assert status.refresh_valid is True
        assert status.requires_reauth is False
        assert status.user_id == issued.user.id

    def test_silent_mode_with_live_refresh_needs_no_reauth(self, silent):
        issued = silent.issuer.issue_session(IDENTITY)
        status = silent.refresher.check(None, issued.refresh.raw)
        assert status.requires_reauth is False

    def test_forced_mode_always_needs_reauth_without_access(self, forced):
        issued = forced.issuer.issue_session(IDENTITY)
        status = forced.refresher.check(None, issued.refresh.raw)
        assert status.refresh_valid is True
        assert status.requires_reauth is True

    def test_dead_refresh_is_reported_not_raised(self, silent):
        status = silent.refresher.check(None, "made-up")
        assert status.refresh_valid is False
        assert status.requires_reauth is True


def test_strategy_follows_settings():
    base = dict(jwt_secret="x" * 40)
    assert isinstance(
        build_refresh_strategy(Settings(refresh_policy="forced-reauth", **base)), ForcedReauthStrategy
    )
    strategy = build_refresh_strategy(
        Settings(refresh_policy="SILENT_REFRESH", refresh_rotate_on_use=False, **base)
    )
    assert isinstance(strategy, SilentRefreshStrategy)
    assert strategy.policy == RefreshPolicy.SILENT_REFRESH
    assert strategy.rotate is False


async def test_full_session_lifecycle(silent, clock):
    """Login, expiry, silent refresh, replay rejection, logout."""
    issued = silent.issuer.issue_session(IDENTITY)
    t1, r1 = issued.access.token, issued.refresh.raw
    assert issued.access.claims.expires_at - issued.access.claims.issued_at == 15 * 60

    clock.advance(minutes=16)
    with pytest.raises(TokenExpired):
        await silent.authenticator.authenticate(t1)

    refreshed = silent.refresher.refresh(r1)
    t2, r2 = refreshed.access, refreshed.refresh
    assert t2.claims.jti != issued.access.claims.jti

    with pytest.raises((RefreshTokenRevoked, RefreshTokenNotFound)):
        silent.refresher.refresh(r1)

    principal = await silent.authenticator.authenticate(t2.token)
    assert principal.user_id == issued.user.id

    await silent.admin.logout(
        principal.user_id, principal.jti, t2.claims.expires_at_dt, r2.record.id
    )

    with pytest.raises(TokenRevoked):
        await silent.authenticator.authenticate(t2.token)
    with pytest.raises(RefreshRejected):
        silent.refresher.refresh(r2.raw)
