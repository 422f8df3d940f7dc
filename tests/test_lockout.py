import threading

import pytest

from arenaauth.service.errors import NotFoundError, ValidationError
from arenaauth.service.lockout import LOCK_REASON_FAILED_LOGINS


def _entries(store, action):
    return [e for e in store.security_logs if e.action == action]


class TestFailedLoginThreshold:
    async def test_four_failures_do_not_lock(self, auth_service, user):
        for _ in range(4):
            await auth_service.track_failed_login(user.id, "10.0.0.1")

        fetched = await auth_service.get_user(user.id)
        assert fetched.failed_login_attempts == 4
        assert fetched.account_locked is False

    async def test_fifth_failure_locks_and_kills_sessions(
        self, auth_service, memory_store, user
    ):
        session = await auth_service.create_session(user.id)

        for _ in range(5):
            await auth_service.track_failed_login(user.id, "10.0.0.1")

        fetched = await auth_service.get_user(user.id)
        assert fetched.account_locked is True
        assert fetched.lock_reason == LOCK_REASON_FAILED_LOGINS
        assert await auth_service.validate_session(session.session_token) is None

        locked = _entries(memory_store, "account_locked")
        assert len(locked) == 1
        assert locked[0].risk_score == 100
        assert locked[0].details["changed"] is True
        assert locked[0].details["revoked_sessions"] == 1

    async def test_each_failure_logged(self, auth_service, memory_store, user):
        for _ in range(3):
            await auth_service.track_failed_login(user.id, "10.0.0.9", "curl/8")

        failed = _entries(memory_store, "failed_login")
        assert [e.details["attempt_count"] for e in failed] == [1, 2, 3]
        assert all(e.risk_score == 30 and e.success is False for e in failed)
        assert failed[0].ip_address == "10.0.0.9"

    async def test_success_resets_counter_but_keeps_lock(self, auth_service, user):
        for _ in range(6):
            await auth_service.track_failed_login(user.id)
        await auth_service.track_successful_login(user.id, "10.0.0.1")
        await auth_service.track_failed_login(user.id)

        fetched = await auth_service.get_user(user.id)
        assert fetched.failed_login_attempts == 1
        assert fetched.account_locked is True

    async def test_success_resets_counter(self, auth_service, user):
        for _ in range(3):
            await auth_service.track_failed_login(user.id)

        await auth_service.track_successful_login(user.id, device_info={"platform": "ios"})

        fetched = await auth_service.get_user(user.id)
        assert fetched.failed_login_attempts == 0
        assert fetched.login_count == 1
        assert fetched.last_login_at is not None

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.track_failed_login("ghost")
        with pytest.raises(NotFoundError):
            await auth_service.track_successful_login("ghost")

    def test_concurrent_failures_counted_exactly(self, auth_service, memory_store, user):
        threads = [
            threading.Thread(target=auth_service.lockout.track_failed_login, args=(user.id,))
            for _ in range(20)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        fetched = memory_store.get_user(user.id)
        assert fetched.failed_login_attempts == 20
        assert fetched.account_locked is True
        assert sorted(e.details["attempt_count"] for e in _entries(memory_store, "failed_login")) == list(
            range(1, 21)
        )
        changed = [e.details["changed"] for e in _entries(memory_store, "account_locked")]
        assert changed.count(True) == 1


class TestLockUnlock:
    async def test_lock_twice_same_state(self, auth_service, memory_store, user):
        await auth_service.lock_account(user.id, "manual review")
        await auth_service.lock_account(user.id, "second reason")

        fetched = await auth_service.get_user(user.id)
        assert fetched.account_locked is True
        # first reason wins
        assert fetched.lock_reason == "manual review"
        assert [e.details["changed"] for e in _entries(memory_store, "account_locked")] == [
            True,
            False,
        ]

    async def test_unlock_clears_state(self, auth_service, user):
        for _ in range(5):
            await auth_service.track_failed_login(user.id)

        await auth_service.unlock_account(user.id)

        fetched = await auth_service.get_user(user.id)
        assert fetched.account_locked is False
        assert fetched.lock_reason is None
        assert fetched.failed_login_attempts == 0

    async def test_unlock_already_unlocked(self, auth_service, memory_store, user):
        await auth_service.unlock_account(user.id)

        fetched = await auth_service.get_user(user.id)
        assert fetched.account_locked is False
        entry = _entries(memory_store, "account_unlocked")[-1]
        assert entry.details["changed"] is False

    async def test_successful_login_does_not_unlock(self, auth_service, memory_store, user):
        await auth_service.lock_account(user.id, "manual review")
        await auth_service.track_successful_login(user.id)

        assert (await auth_service.get_user(user.id)).account_locked is True

    async def test_lock_requires_reason(self, auth_service, user):
        with pytest.raises(ValidationError):
            await auth_service.lock_account(user.id, "   ")

    async def test_lock_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.lock_account("ghost", "reason")
        with pytest.raises(NotFoundError):
            await auth_service.unlock_account("ghost")
