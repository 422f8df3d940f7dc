from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError

from arenaauth.config import Settings
from arenaauth.logging import get_logger
from arenaauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
)
from arenaauth.service.events import (
    RISK_INSUFFICIENT_PERMISSIONS,
    RISK_LOCKED_ACCOUNT_ACCESS,
    RISK_NONE,
    RISK_PERMISSION_DENIED,
    RISK_UNAUTHORIZED_ACCESS,
    AccessAttempt,
    DeviceInfo,
    PermissionCheck,
    ProfileUpdated,
    RoleCheck,
    SecurityAction,
    SecurityEvent,
    TwoFactorChanged,
    parse_device_info,
)
from arenaauth.service.lockout import AccountLockController
from arenaauth.service.risk import RiskScorer
from arenaauth.service.roles import RoleManager
from arenaauth.service.security_log import SecurityEventLog
from arenaauth.service.sessions import SessionManager
from arenaauth.service.verification import VerificationTokenManager
from arenaauth.storage.common import PROFILE_FIELDS
from arenaauth.storage.errors import ConstraintViolation
from arenaauth.storage.models import (
    Role,
    RoleAssignment,
    SecurityLogEntry,
    Session,
    User,
    VerificationToken,
    VerificationType,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    """Persistence primitives the auth core relies on.

    ``increment_failed_logins``, ``lock_user``, ``touch_active_session``,
    ``deactivate_*`` and ``consume_verification_token`` must each be atomic
    at the row level (``col = col + 1`` / ``UPDATE ... WHERE <guard>``);
    read-then-write in application code is not an acceptable
    implementation. Mutators return ``None`` when the target row does not
    exist and raise ``StoreError`` when the store itself fails.
    """

    def upsert_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        profile_image_url: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user_profile(self, user_id: str, updates: Dict[str, Any]) -> Optional[User]: ...

    def increment_failed_logins(self, user_id: str) -> Optional[int]: ...

    def record_successful_login(self, user_id: str) -> Optional[User]: ...

    def lock_user(self, user_id: str, reason: str) -> Optional[bool]: ...

    def unlock_user(self, user_id: str) -> Optional[bool]: ...

    def set_two_factor(
        self, user_id: str, *, enabled: bool, secret: Optional[str]
    ) -> Optional[User]: ...

    def mark_verified(self, user_id: str, channel: VerificationType) -> Optional[User]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token(self, session_token: str) -> Optional[Session]: ...

    def touch_active_session(self, session_token: str) -> Optional[Session]: ...

    def deactivate_session(
        self, session_id: str, *, user_id: Optional[str] = None
    ) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_active_sessions(self, user_id: str) -> List[Session]: ...

    def append_security_log(
        self,
        *,
        action: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        risk_score: int = 0,
        location: Optional[str] = None,
    ) -> SecurityLogEntry: ...

    def list_security_logs(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[SecurityLogEntry]: ...

    def count_security_events(self, user_id: str, action: str, since: datetime) -> int: ...

    def has_successful_event_from_ip(self, user_id: str, ip_address: str) -> bool: ...

    def create_role(
        self,
        name: str,
        permissions: List[str],
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment: ...

    def list_active_roles(self, user_id: str) -> List[Role]: ...

    def create_verification_token(
        self,
        user_id: str,
        token: str,
        token_type: VerificationType,
        expires_at: datetime,
    ) -> VerificationToken: ...

    def consume_verification_token(
        self, token: str, token_type: VerificationType
    ) -> Optional[VerificationToken]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class SecuritySummary:
    user_id: str
    email_verified: bool
    phone_verified: bool
    two_factor_enabled: bool
    account_locked: bool
    lock_reason: Optional[str]
    failed_login_attempts: int
    login_count: int
    last_login_at: Optional[datetime]
    active_sessions: int
    risk_score: int
    roles: List[str] = field(default_factory=list)


class AuthService:
    """Session, lockout, role and verification handling behind one API.

    Constructed once per process with an injected store; the components it
    composes share the same store and security log. Every state change it
    makes is recorded in the security log before the call returns, and a
    failed log write fails the call.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.security_log = SecurityEventLog(store, settings)
        self.sessions = SessionManager(store, self.security_log, settings)
        self.lockout = AccountLockController(store, self.security_log, settings)
        self.roles = RoleManager(store, self.security_log)
        self.verification = VerificationTokenManager(store, self.security_log, settings)
        self.risk = RiskScorer(self.security_log, settings)
        self.logger = logger

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    @staticmethod
    def _device_info(raw: DeviceInfo | Dict[str, Any] | None) -> DeviceInfo:
        try:
            return parse_device_info(raw)
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid device info", detail={"errors": exc.errors(include_url=False)}
            ) from exc

    # users
    async def upsert_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        profile_image_url: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> User:
        """Create the user on first authentication, refresh identity fields after."""
        if not user_id:
            raise ValidationError("user_id is required")
        try:
            return self.store.upsert_user(
                user_id,
                email=email,
                first_name=first_name,
                last_name=last_name,
                profile_image_url=profile_image_url,
                email_verified=email_verified,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    async def get_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    async def enhance_user_profile(self, user_id: str, updates: Dict[str, Any]) -> User:
        if not updates:
            raise ValidationError("no profile fields supplied")
        rejected = sorted(set(updates) - PROFILE_FIELDS)
        if rejected:
            raise ValidationError(
                "fields cannot be changed through a profile update",
                detail={"fields": rejected},
            )
        try:
            user = self.store.update_user_profile(user_id, dict(updates))
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.PROFILE_UPDATED,
                user_id=user_id,
                details=ProfileUpdated(fields=sorted(updates)),
            )
        )
        return user

    # sessions
    async def create_session(
        self,
        user_id: str,
        device_info: DeviceInfo | Dict[str, Any] | None = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        info = self._device_info(device_info)
        user = self._require_user(user_id)
        if user.account_locked:
            self.security_log.record(
                SecurityEvent(
                    action=SecurityAction.LOCKED_ACCOUNT_ACCESS_ATTEMPT,
                    user_id=user_id,
                    details=AccessAttempt(
                        kind="locked_account_access_attempt", reason="session_create"
                    ),
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=False,
                    risk_score=RISK_LOCKED_ACCOUNT_ACCESS,
                )
            )
            raise AccountLockedError("account is locked", detail={"reason": user.lock_reason})
        try:
            return self.sessions.create(user_id, info, ip_address, user_agent)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    async def validate_session(self, session_token: str) -> Optional[Session]:
        return self.sessions.validate(session_token)

    async def revoke_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        self.sessions.revoke(session_id, expected_user_id=user_id)

    async def revoke_all_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        self._require_user(user_id)
        return self.sessions.revoke_all(user_id, except_session_id=except_session_id)

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.list_active(user_id)

    # lockout
    async def track_failed_login(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.lockout.track_failed_login(user_id, ip_address, user_agent)

    async def track_successful_login(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: DeviceInfo | Dict[str, Any] | None = None,
    ) -> None:
        info = self._device_info(device_info) if device_info is not None else None
        self.lockout.track_successful_login(user_id, ip_address, user_agent, info)

    async def lock_account(self, user_id: str, reason: str) -> None:
        if not reason or not reason.strip():
            raise ValidationError("lock reason is required")
        self.lockout.lock_account(user_id, reason.strip())

    async def unlock_account(self, user_id: str) -> None:
        self.lockout.unlock_account(user_id)

    # two-factor
    async def enable_two_factor(self, user_id: str) -> str:
        """Generate and store a base32 TOTP secret; OTP checks happen elsewhere."""
        secret = base64.b32encode(secrets.token_bytes(20)).decode()
        user = self.store.set_two_factor(user_id, enabled=True, secret=secret)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.TWO_FACTOR_ENABLED,
                user_id=user_id,
                details=TwoFactorChanged(kind="two_factor_enabled"),
            )
        )
        return secret

    async def disable_two_factor(self, user_id: str) -> None:
        user = self.store.set_two_factor(user_id, enabled=False, secret=None)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.TWO_FACTOR_DISABLED,
                user_id=user_id,
                details=TwoFactorChanged(kind="two_factor_disabled"),
            )
        )

    # verification tokens
    async def issue_verification_token(
        self,
        user_id: str,
        token_type: VerificationType | str,
        ttl_minutes: Optional[int] = None,
    ) -> str:
        return self.verification.issue(user_id, token_type, ttl_minutes).token

    async def consume_verification_token(
        self, token: str, token_type: VerificationType | str
    ) -> Optional[str]:
        return self.verification.consume(token, token_type)

    # roles
    async def create_role(
        self,
        name: str,
        permissions: Iterable[str],
        description: Optional[str] = None,
        *,
        created_by: Optional[str] = None,
    ) -> Role:
        return self.roles.create_role(
            name, permissions, description, created_by=created_by
        )

    async def assign_role(
        self,
        user_id: str,
        role_id: str,
        assigned_by: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> None:
        self.roles.assign_role(user_id, role_id, assigned_by, expires_at)

    async def get_active_roles(self, user_id: str) -> List[Role]:
        return self.roles.get_active_roles(user_id)

    async def has_permission(
        self,
        user_id: str,
        permission: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        path: Optional[str] = None,
    ) -> bool:
        if not permission:
            raise ValidationError("permission is required")
        granted = self.roles.has_permission(user_id, permission)
        self.security_log.record(
            SecurityEvent(
                action=(
                    SecurityAction.PERMISSION_GRANTED
                    if granted
                    else SecurityAction.PERMISSION_DENIED
                ),
                user_id=user_id,
                details=PermissionCheck(
                    kind="permission_granted" if granted else "permission_denied",
                    permission=permission,
                    path=path,
                ),
                ip_address=ip_address,
                user_agent=user_agent,
                success=granted,
                risk_score=RISK_NONE if granted else RISK_PERMISSION_DENIED,
            )
        )
        return granted

    # risk and audit
    async def compute_risk_score(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        return self.risk.score(user_id, ip_address, user_agent)

    async def get_security_log(
        self, user_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[SecurityLogEntry]:
        return self.security_log.query(user_id=user_id, limit=limit)

    async def get_security_summary(
        self, user_id: str, ip_address: Optional[str] = None
    ) -> SecuritySummary:
        user = self._require_user(user_id)
        return SecuritySummary(
            user_id=user.id,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
            two_factor_enabled=user.two_factor_enabled,
            account_locked=user.account_locked,
            lock_reason=user.lock_reason,
            failed_login_attempts=user.failed_login_attempts,
            login_count=user.login_count,
            last_login_at=user.last_login_at,
            active_sessions=len(self.sessions.list_active(user_id)),
            risk_score=self.risk.score(user_id, ip_address),
            roles=[role.name for role in self.roles.get_active_roles(user_id)],
        )

    # request authentication
    def _record_access(
        self,
        kind: str,
        *,
        user_id: Optional[str],
        risk_score: int,
        success: bool,
        ip_address: Optional[str],
        user_agent: Optional[str],
        path: Optional[str],
        method: Optional[str],
        reason: Optional[str] = None,
    ) -> None:
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction(kind),
                user_id=user_id,
                details=AccessAttempt(kind=kind, path=path, method=method, reason=reason),
                ip_address=ip_address,
                user_agent=user_agent,
                success=success,
                risk_score=risk_score,
            )
        )

    def _reject_locked(
        self,
        user: User,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        path: Optional[str],
        method: Optional[str],
    ) -> None:
        self._record_access(
            SecurityAction.LOCKED_ACCOUNT_ACCESS_ATTEMPT.value,
            user_id=user.id,
            risk_score=RISK_LOCKED_ACCOUNT_ACCESS,
            success=False,
            ip_address=ip_address,
            user_agent=user_agent,
            path=path,
            method=method,
            reason=user.lock_reason,
        )
        self.logger.warning("locked_account_access_rejected", user_id=user.id, path=path)
        raise AccountLockedError("account is locked", detail={"reason": user.lock_reason})

    async def authenticate(
        self,
        session_token: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        path: Optional[str] = None,
        method: Optional[str] = None,
    ) -> AuthContext:
        """Resolve a bearer session token into an AuthContext or raise.

        Rejections are logged before raising: an unknown or dead session as
        ``unauthorized_access_attempt`` and a locked account as
        ``locked_account_access_attempt``. Locking revokes sessions, so a
        dead token whose owner is locked counts as the latter.
        """
        session = self.sessions.validate(session_token) if session_token else None
        if session is None:
            stale = self.sessions.lookup(session_token) if session_token else None
            if stale is not None:
                # locking revokes sessions, so a locked owner shows up here
                owner = self.store.get_user(stale.user_id)
                if owner is not None and owner.account_locked:
                    self._reject_locked(
                        owner,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        path=path,
                        method=method,
                    )
            reason = "missing_token" if not session_token else "invalid_session"
            if stale is not None:
                reason = "revoked_session" if not stale.is_active else "expired_session"
            self._record_access(
                SecurityAction.UNAUTHORIZED_ACCESS_ATTEMPT.value,
                user_id=stale.user_id if stale else None,
                risk_score=RISK_UNAUTHORIZED_ACCESS,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                path=path,
                method=method,
                reason=reason,
            )
            self.logger.info("authentication_rejected", reason=reason, path=path)
            if stale is not None:
                raise SessionExpiredError("session is no longer valid")
            raise AuthenticationError("authentication required")

        user = self.store.get_user(session.user_id)
        if user is None:
            self._record_access(
                SecurityAction.UNAUTHORIZED_ACCESS_ATTEMPT.value,
                user_id=None,
                risk_score=RISK_UNAUTHORIZED_ACCESS,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                path=path,
                method=method,
                reason="unknown_user",
            )
            raise AuthenticationError("authentication required")

        if user.account_locked:
            self._reject_locked(
                user,
                ip_address=ip_address,
                user_agent=user_agent,
                path=path,
                method=method,
            )

        if self.settings.audit_authenticated_access:
            self._record_access(
                SecurityAction.AUTHENTICATED_ACCESS.value,
                user_id=user.id,
                risk_score=RISK_NONE,
                success=True,
                ip_address=ip_address,
                user_agent=user_agent,
                path=path,
                method=method,
            )
        return AuthContext(
            user_id=user.id,
            role=user.role,
            session_id=session.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def authorize_role(
        self, ctx: AuthContext, roles: Sequence[str], *, path: Optional[str] = None
    ) -> None:
        """Allow when the basic role or any active assigned role is in ``roles``."""
        required = list(roles)
        if ctx.role in required:
            return
        held = [role.name for role in self.roles.get_active_roles(ctx.user_id)]
        if any(name in required for name in held):
            return
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.INSUFFICIENT_PERMISSIONS,
                user_id=ctx.user_id,
                details=RoleCheck(
                    required_roles=required, user_roles=[ctx.role, *held], path=path
                ),
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                success=False,
                risk_score=RISK_INSUFFICIENT_PERMISSIONS,
            )
        )
        raise ForbiddenError("insufficient role", detail={"required_roles": required})

    async def authorize_permission(
        self, ctx: AuthContext, permission: str, *, path: Optional[str] = None
    ) -> None:
        granted = await self.has_permission(
            ctx.user_id, permission, ctx.ip_address, ctx.user_agent, path=path
        )
        if not granted:
            raise ForbiddenError("permission denied", detail={"permission": permission})
