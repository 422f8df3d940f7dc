"""FastAPI wiring for the auth core.

The application owns its ``Runtime`` and installs it with
``install_runtime``; dependencies read it back from ``app.state``. Route
modules then depend on ``get_auth_context``, ``require_role(...)`` or
``require_permission(...)``.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, Request

from arenaauth.api.error_handling import register_exception_handlers
from arenaauth.logging import set_correlation_id
from arenaauth.service.auth import AuthContext, AuthService
from arenaauth.service.runtime import Runtime


def install_runtime(app: FastAPI, runtime: Runtime) -> None:
    app.state.runtime = runtime
    register_exception_handlers(app)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("auth runtime is not installed; call install_runtime at start-up")
    return runtime


def get_auth_service(request: Request) -> AuthService:
    return get_runtime(request).auth


def _bearer_token(authorization: Optional[str], session_token: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    if session_token and session_token.strip():
        return session_token.strip()
    return None


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_session_token: Optional[str] = Header(None, alias="X-Session-Token"),
) -> AuthContext:
    auth = get_auth_service(request)
    return await auth.authenticate(
        _bearer_token(authorization, x_session_token),
        request.client.host if request.client else None,
        request.headers.get("user-agent"),
        path=request.url.path,
        method=request.method,
    )


def require_role(*roles: str) -> Callable:
    if not roles:
        raise ValueError("require_role needs at least one role")

    async def _dependency(
        request: Request, ctx: AuthContext = Depends(get_auth_context)
    ) -> AuthContext:
        await get_auth_service(request).authorize_role(ctx, roles, path=request.url.path)
        return ctx

    return _dependency


def require_permission(permission: str) -> Callable:
    if not permission:
        raise ValueError("require_permission needs a permission name")

    async def _dependency(
        request: Request, ctx: AuthContext = Depends(get_auth_context)
    ) -> AuthContext:
        await get_auth_service(request).authorize_permission(
            ctx, permission, path=request.url.path
        )
        return ctx

    return _dependency
