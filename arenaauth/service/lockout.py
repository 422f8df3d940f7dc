from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from arenaauth.config import Settings
from arenaauth.logging import get_logger
from arenaauth.service.errors import NotFoundError
from arenaauth.service.events import (
    RISK_ACCOUNT_LOCKED,
    RISK_FAILED_LOGIN,
    RISK_NONE,
    AccountLocked,
    AccountUnlocked,
    DeviceInfo,
    FailedLogin,
    SecurityAction,
    SecurityEvent,
    SuccessfulLogin,
)
from arenaauth.service.security_log import SecurityEventLog
from arenaauth.storage.models import User

if TYPE_CHECKING:
    from arenaauth.service.auth import AuthStore

logger = get_logger(__name__)

LOCK_REASON_FAILED_LOGINS = "Too many failed login attempts"


class AccountLockController:
    """Failed-login counting and the UNLOCKED <-> LOCKED state machine.

    The counter is bumped with the store's atomic increment and is the only
    input to the lock decision. Unlock is an explicit, trusted action; there
    is no time-based release.
    """

    def __init__(
        self, store: "AuthStore", security_log: SecurityEventLog, settings: Settings
    ) -> None:
        self.store = store
        self.security_log = security_log
        self.settings = settings

    def track_failed_login(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        attempts = self.store.increment_failed_logins(user_id)
        if attempts is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.FAILED_LOGIN,
                user_id=user_id,
                details=FailedLogin(attempt_count=attempts),
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                risk_score=RISK_FAILED_LOGIN,
            )
        )
        logger.info("failed_login_tracked", user_id=user_id, attempts=attempts)
        if attempts >= self.settings.lockout_threshold:
            self.lock_account(user_id, LOCK_REASON_FAILED_LOGINS)
        return attempts

    def track_successful_login(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> User:
        user = self.store.record_successful_login(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.SUCCESSFUL_LOGIN,
                user_id=user_id,
                details=SuccessfulLogin(
                    login_count=user.login_count, device_info=device_info
                ),
                ip_address=ip_address,
                user_agent=user_agent,
                risk_score=RISK_NONE,
            )
        )
        return user

    def lock_account(self, user_id: str, reason: str) -> bool:
        changed = self.store.lock_user(user_id, reason)
        if changed is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        # runs on repeat calls too: a create may have raced the first lock
        revoked = self.store.deactivate_user_sessions(user_id)
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.ACCOUNT_LOCKED,
                user_id=user_id,
                details=AccountLocked(
                    reason=reason, changed=changed, revoked_sessions=revoked
                ),
                risk_score=RISK_ACCOUNT_LOCKED,
            )
        )
        logger.warning(
            "account_locked",
            user_id=user_id,
            reason=reason,
            changed=changed,
            revoked_sessions=revoked,
        )
        return changed

    def unlock_account(self, user_id: str) -> bool:
        changed = self.store.unlock_user(user_id)
        if changed is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.ACCOUNT_UNLOCKED,
                user_id=user_id,
                details=AccountUnlocked(changed=changed),
                risk_score=RISK_NONE,
            )
        )
        logger.info("account_unlocked", user_id=user_id, changed=changed)
        return changed
