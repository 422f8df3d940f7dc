from dataclasses import replace
from datetime import timedelta

from arenaauth.config import Settings
from arenaauth.service.auth import AuthService
from arenaauth.storage.models import utcnow


class TestRiskScore:
    async def test_clean_history_scores_zero(self, auth_service, user):
        assert await auth_service.compute_risk_score(user.id) == 0

    async def test_failures_weighted(self, auth_service, user):
        for _ in range(3):
            await auth_service.track_failed_login(user.id)

        assert await auth_service.compute_risk_score(user.id) == 30

    async def test_unseen_ip_adds_bump(self, auth_service, user):
        assert await auth_service.compute_risk_score(user.id, "203.0.113.7") == 25

    async def test_known_ip_has_no_bump(self, auth_service, user):
        await auth_service.track_successful_login(user.id, "198.51.100.4")

        assert await auth_service.compute_risk_score(user.id, "198.51.100.4") == 0

    async def test_failed_entries_do_not_make_ip_known(self, auth_service, user):
        await auth_service.track_failed_login(user.id, "198.51.100.4")

        assert await auth_service.compute_risk_score(user.id, "198.51.100.4") == 35

    async def test_failure_component_capped(self, auth_service, user):
        for _ in range(9):
            await auth_service.track_failed_login(user.id)

        assert await auth_service.compute_risk_score(user.id) == 50
        assert await auth_service.compute_risk_score(user.id, "203.0.113.7") == 75

    async def test_score_clamped_to_hundred(self, memory_store, user, encryption_key):
        settings = Settings(
            secret_encryption_key=encryption_key,
            risk_failure_weight=40,
            risk_failure_cap=90,
            risk_new_ip_weight=60,
        )
        service = AuthService(memory_store, settings)
        for _ in range(3):
            await service.track_failed_login(user.id)

        assert await service.compute_risk_score(user.id, "203.0.113.7") == 100

    async def test_failures_outside_window_ignored(self, auth_service, memory_store, user):
        for _ in range(2):
            await auth_service.track_failed_login(user.id)
        stale = utcnow() - timedelta(hours=25)
        memory_store.security_logs = [
            replace(e, created_at=stale) if e.action == "failed_login" else e
            for e in memory_store.security_logs
        ]
        await auth_service.track_failed_login(user.id)

        assert await auth_service.compute_risk_score(user.id) == 10

    async def test_other_users_failures_ignored(self, auth_service, memory_store, user):
        memory_store.upsert_user("u2")
        for _ in range(4):
            await auth_service.track_failed_login("u2")

        assert await auth_service.compute_risk_score(user.id) == 0
