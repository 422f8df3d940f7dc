import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from arenaauth.api.deps import (
    _bearer_token,
    get_auth_context,
    install_runtime,
    require_permission,
    require_role,
)
from arenaauth.api.error_handling import register_exception_handlers
from arenaauth.service.events import DeviceInfo
from arenaauth.service.runtime import Runtime
from arenaauth.storage.errors import StoreError


@pytest.fixture
def runtime(settings, memory_store):
    return Runtime(settings, store=memory_store)


@pytest.fixture
def client(runtime):
    app = FastAPI()
    install_runtime(app, runtime)

    @app.get("/me")
    async def me(ctx=Depends(get_auth_context)):
        return {"user_id": ctx.user_id, "session_id": ctx.session_id}

    @app.get("/admin")
    async def admin(ctx=Depends(require_role("admin"))):
        return {"ok": True}

    @app.post("/tournaments")
    async def create_tournament(ctx=Depends(require_permission("tournament.create"))):
        return {"ok": True}

    return TestClient(app)


@pytest.fixture
def token(runtime, user):
    return runtime.auth.sessions.create(user.id, DeviceInfo()).session_token


class TestBearerToken:
    def test_bearer_header(self):
        assert _bearer_token("Bearer abc", None) == "abc"

    def test_session_header_fallback(self):
        assert _bearer_token(None, " abc ") == "abc"

    def test_non_bearer_scheme_ignored(self):
        assert _bearer_token("Basic dXNlcjpwYXNz", None) is None


class TestAuthDependency:
    def test_missing_token_is_401_envelope(self, client):
        response = client.get("/me")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["request_id"]

    def test_bearer_token(self, client, token, user):
        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["user_id"] == user.id

    def test_session_token_header(self, client, token, user):
        response = client.get("/me", headers={"X-Session-Token": token})

        assert response.status_code == 200

    def test_request_id_echoed(self, client, token):
        response = client.get(
            "/me", headers={"Authorization": f"Bearer {token}", "X-Request-ID": "trace-42"}
        )

        assert response.headers["X-Request-ID"] == "trace-42"

    def test_locked_account(self, client, token, memory_store, user):
        memory_store.lock_user(user.id, "fraud review")

        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_locked"

    def test_account_locked_after_failed_logins(self, client, token, runtime, user):
        for _ in range(5):
            runtime.auth.lockout.track_failed_login(user.id)

        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_locked"

    def test_access_is_audited(self, client, token, memory_store):
        client.get("/me", headers={"Authorization": f"Bearer {token}"})

        entry = memory_store.security_logs[-1]
        assert entry.action == "authenticated_access"
        assert entry.details["path"] == "/me"
        assert entry.details["method"] == "GET"

    def test_store_failure_is_500(self, client, token, memory_store, monkeypatch):
        def broken(*args, **kwargs):
            raise StoreError("connection reset")

        monkeypatch.setattr(memory_store, "touch_active_session", broken)

        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"


class TestAuthorizationDependencies:
    def test_role_required(self, client, token):
        response = client.get("/admin", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_assigned_role_allowed(self, client, token, memory_store, user):
        role = memory_store.create_role("admin", ["*"])
        memory_store.assign_role(user.id, role.id)

        response = client.get("/admin", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200

    def test_permission_required(self, client, token, memory_store):
        response = client.post("/tournaments", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403
        assert memory_store.security_logs[-1].action == "permission_denied"

    def test_permission_granted(self, client, token, memory_store, user):
        role = memory_store.create_role("organizer", ["tournament.create"])
        memory_store.assign_role(user.id, role.id)

        response = client.post("/tournaments", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert memory_store.security_logs[-1].action == "permission_granted"

    def test_require_role_needs_roles(self):
        with pytest.raises(ValueError):
            require_role()


def test_runtime_not_installed_is_500(token):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/me")
    async def me(ctx=Depends(get_auth_context)):
        return {"user_id": ctx.user_id}

    client = TestClient(app, raise_server_exceptions=False)
    response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "server_error"
