import pytest

from arenaauth.config import Settings
from arenaauth.service.auth import AuthContext, AuthService
from arenaauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
)
from arenaauth.storage.errors import StoreError


def _last(store, action):
    return [e for e in store.security_logs if e.action == action][-1]


class TestUsers:
    async def test_upsert_creates_then_refreshes(self, auth_service):
        created = await auth_service.upsert_user("u9", email="a@example.com", first_name="A")
        refreshed = await auth_service.upsert_user("u9", last_name="B")

        assert created.role == "user"
        assert refreshed.email == "a@example.com"
        assert refreshed.first_name == "A"
        assert refreshed.last_name == "B"

    async def test_upsert_duplicate_email(self, auth_service, user):
        with pytest.raises(ConflictError):
            await auth_service.upsert_user("u2", email=user.email)

    async def test_upsert_requires_id(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.upsert_user("")

    async def test_get_unknown_user(self, auth_service):
        assert await auth_service.get_user("ghost") is None

    async def test_profile_update(self, auth_service, memory_store, user):
        updated = await auth_service.enhance_user_profile(
            user.id, {"phone_number": "+15550100", "meta": {"team": "red"}}
        )

        assert updated.phone_number == "+15550100"
        assert updated.meta == {"team": "red"}
        entry = _last(memory_store, "profile_updated")
        assert entry.details["fields"] == ["meta", "phone_number"]

    @pytest.mark.parametrize(
        "field", ["account_locked", "failed_login_attempts", "role", "two_factor_secret"]
    )
    async def test_profile_update_rejects_security_fields(self, auth_service, user, field):
        with pytest.raises(ValidationError):
            await auth_service.enhance_user_profile(user.id, {field: True})

        assert (await auth_service.get_user(user.id)).account_locked is False

    async def test_profile_update_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.enhance_user_profile("ghost", {"first_name": "x"})

    async def test_profile_update_empty(self, auth_service, user):
        with pytest.raises(ValidationError):
            await auth_service.enhance_user_profile(user.id, {})


class TestSessionCreationGuards:
    async def test_locked_account_cannot_open_session(self, auth_service, memory_store, user):
        await auth_service.lock_account(user.id, "chargeback")

        with pytest.raises(AccountLockedError):
            await auth_service.create_session(user.id, ip_address="10.0.0.1")

        assert memory_store.sessions == {}
        entry = _last(memory_store, "locked_account_access_attempt")
        assert entry.risk_score == 80
        assert entry.success is False

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.create_session("ghost")

    async def test_invalid_device_info(self, auth_service, user):
        with pytest.raises(ValidationError):
            await auth_service.create_session(user.id, {"platform": "ios", "gpu": "x"})


class TestTwoFactor:
    async def test_secret_encrypted_at_rest(self, auth_service, memory_store, user):
        secret = await auth_service.enable_two_factor(user.id)

        fetched = await auth_service.get_user(user.id)
        assert fetched.two_factor_enabled is True
        assert fetched.two_factor_secret == secret
        assert memory_store.users[user.id].two_factor_secret != secret
        assert secret not in repr(fetched)

    async def test_disable_clears_secret(self, auth_service, memory_store, user):
        await auth_service.enable_two_factor(user.id)
        await auth_service.disable_two_factor(user.id)

        fetched = await auth_service.get_user(user.id)
        assert fetched.two_factor_enabled is False
        assert fetched.two_factor_secret is None
        actions = [e.action for e in memory_store.security_logs]
        assert actions[-2:] == ["two_factor_enabled", "two_factor_disabled"]

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.enable_two_factor("ghost")


class TestAuthenticate:
    async def test_valid_token(self, auth_service, memory_store, user):
        session = await auth_service.create_session(user.id)

        ctx = await auth_service.authenticate(
            session.session_token, "10.0.0.1", "UA", path="/matches", method="GET"
        )

        assert ctx.user_id == user.id
        assert ctx.session_id == session.id
        assert ctx.role == "user"
        entry = _last(memory_store, "authenticated_access")
        assert entry.details["path"] == "/matches"

    async def test_authenticated_access_audit_can_be_disabled(
        self, memory_store, user, encryption_key
    ):
        service = AuthService(
            memory_store,
            Settings(secret_encryption_key=encryption_key, audit_authenticated_access=False),
        )
        session = await service.create_session(user.id)

        await service.authenticate(session.session_token)

        assert "authenticated_access" not in [e.action for e in memory_store.security_logs]

    async def test_missing_token(self, auth_service, memory_store):
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(None, "10.0.0.1")

        entry = _last(memory_store, "unauthorized_access_attempt")
        assert entry.risk_score == 40
        assert entry.user_id is None
        assert entry.details["reason"] == "missing_token"

    async def test_revoked_token_attributed(self, auth_service, memory_store, user):
        session = await auth_service.create_session(user.id)
        await auth_service.revoke_session(session.id)

        with pytest.raises(SessionExpiredError):
            await auth_service.authenticate(session.session_token)

        entry = _last(memory_store, "unauthorized_access_attempt")
        assert entry.user_id == user.id
        assert entry.details["reason"] == "revoked_session"

    async def test_locked_account(self, auth_service, memory_store, user):
        session = await auth_service.create_session(user.id)
        # lock without the session cascade to reach the locked-account branch
        memory_store.lock_user(user.id, "fraud review")

        with pytest.raises(AccountLockedError) as excinfo:
            await auth_service.authenticate(session.session_token)

        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "account_locked"
        entry = _last(memory_store, "locked_account_access_attempt")
        assert entry.risk_score == 80

    async def test_token_revoked_by_lock_reports_locked_account(
        self, auth_service, memory_store, user
    ):
        session = await auth_service.create_session(user.id)
        await auth_service.lock_account(user.id, "fraud review")

        with pytest.raises(AccountLockedError):
            await auth_service.authenticate(session.session_token, "10.0.0.1")

        entry = memory_store.security_logs[-1]
        assert entry.action == "locked_account_access_attempt"
        assert entry.risk_score == 80
        assert entry.user_id == user.id
        assert entry.details["reason"] == "fraud review"

    async def test_token_revoked_by_lock_stays_dead_after_unlock(self, auth_service, memory_store, user):
        session = await auth_service.create_session(user.id)
        await auth_service.lock_account(user.id, "fraud review")
        await auth_service.unlock_account(user.id)

        with pytest.raises(SessionExpiredError):
            await auth_service.authenticate(session.session_token)

        assert memory_store.security_logs[-1].action == "unauthorized_access_attempt"


class TestAuthorize:
    async def test_basic_role_allowed(self, auth_service, user):
        ctx = AuthContext(user_id=user.id, role="user", session_id="s1")

        await auth_service.authorize_role(ctx, ["user", "admin"])

    async def test_assigned_role_allowed(self, auth_service, user):
        role = await auth_service.create_role("organizer", ["tournament.create"])
        await auth_service.assign_role(user.id, role.id, "admin-1")
        ctx = AuthContext(user_id=user.id, role="user", session_id="s1")

        await auth_service.authorize_role(ctx, ["organizer"])
        await auth_service.authorize_permission(ctx, "tournament.create")

    async def test_insufficient_role_logged(self, auth_service, memory_store, user):
        ctx = AuthContext(user_id=user.id, role="user", session_id="s1", ip_address="10.0.0.1")

        with pytest.raises(ForbiddenError):
            await auth_service.authorize_role(ctx, ["admin"], path="/admin")

        entry = _last(memory_store, "insufficient_permissions")
        assert entry.risk_score == 20
        assert entry.details["required_roles"] == ["admin"]
        assert entry.details["user_roles"] == ["user"]

    async def test_permission_denied(self, auth_service, memory_store, user):
        ctx = AuthContext(user_id=user.id, role="user", session_id="s1")

        with pytest.raises(ForbiddenError):
            await auth_service.authorize_permission(ctx, "tournament.delete")

        assert _last(memory_store, "permission_denied").risk_score == 25


class TestFailClosed:
    async def test_log_write_failure_fails_operation(self, auth_service, memory_store, user, monkeypatch):
        def broken(**kwargs):
            raise StoreError("disk full")

        monkeypatch.setattr(memory_store, "append_security_log", broken)

        with pytest.raises(StoreError):
            await auth_service.track_failed_login(user.id)
        with pytest.raises(StoreError):
            await auth_service.lock_account(user.id, "manual")

    async def test_store_read_failure_is_not_a_miss(self, auth_service, memory_store, user, monkeypatch):
        def broken(*args, **kwargs):
            raise StoreError("connection reset")

        monkeypatch.setattr(memory_store, "touch_active_session", broken)

        with pytest.raises(StoreError):
            await auth_service.authenticate("a" * 64)
        assert "unauthorized_access_attempt" not in [e.action for e in memory_store.security_logs]

    async def test_user_lookup_failure_propagates(self, auth_service, memory_store, monkeypatch):
        def broken(*args, **kwargs):
            raise StoreError("connection reset")

        monkeypatch.setattr(memory_store, "get_user", broken)

        with pytest.raises(StoreError):
            await auth_service.get_user("u1")


class TestSecurityOverview:
    async def test_summary(self, auth_service, user):
        role = await auth_service.create_role("player", ["match.join"])
        await auth_service.assign_role(user.id, role.id, "system")
        await auth_service.create_session(user.id)
        await auth_service.track_failed_login(user.id, "10.0.0.1")

        summary = await auth_service.get_security_summary(user.id, "10.0.0.1")

        assert summary.failed_login_attempts == 1
        assert summary.active_sessions == 1
        assert summary.account_locked is False
        assert summary.roles == ["player"]
        assert summary.risk_score == 35

    async def test_summary_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.get_security_summary("ghost")

    async def test_security_log_newest_first(self, auth_service, user):
        await auth_service.track_failed_login(user.id)
        await auth_service.track_successful_login(user.id)

        entries = await auth_service.get_security_log(user.id, limit=2)

        assert [e.action for e in entries] == ["successful_login", "failed_login"]
