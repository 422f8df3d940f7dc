from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from arenaauth.config import Settings
from arenaauth.logging import get_logger
from arenaauth.service.errors import ForbiddenError, NotFoundError
from arenaauth.service.events import (
    RISK_FOREIGN_SESSION_REVOKE,
    AllSessionsRevoked,
    DeviceInfo,
    SecurityAction,
    SecurityEvent,
    SessionCreated,
    SessionRevoked,
)
from arenaauth.service.security_log import SecurityEventLog
from arenaauth.storage.models import Session

if TYPE_CHECKING:
    from arenaauth.service.auth import AuthStore

logger = get_logger(__name__)


class SessionManager:
    """Creates, validates and soft-revokes login sessions.

    Validity is ``is_active and now < expires_at`` and is evaluated by the
    store on every lookup; nothing here caches a positive answer.
    """

    def __init__(
        self, store: "AuthStore", security_log: SecurityEventLog, settings: Settings
    ) -> None:
        self.store = store
        self.security_log = security_log
        self.settings = settings

    def create(
        self,
        user_id: str,
        device_info: DeviceInfo,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            user_id,
            self.settings.session_ttl_minutes,
            device_info=device_info.model_dump(mode="json", exclude_none=True),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        # row is written before the token leaves this method
        session = self.store.create_session(session)
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.SESSION_CREATED,
                user_id=user_id,
                details=SessionCreated(session_id=session.id, device_info=device_info),
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    def validate(self, session_token: str) -> Optional[Session]:
        if not session_token:
            return None
        return self.store.touch_active_session(session_token)

    def lookup(self, session_token: str) -> Optional[Session]:
        """Raw read, used only to attribute a rejected token to its owner."""
        if not session_token:
            return None
        return self.store.get_session_by_token(session_token)

    def revoke(self, session_id: str, expected_user_id: Optional[str] = None) -> Session:
        session = self.store.get_session(session_id)
        if not session:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        if expected_user_id is not None and session.user_id != expected_user_id:
            self.security_log.record(
                SecurityEvent(
                    action=SecurityAction.SESSION_REVOKED,
                    user_id=expected_user_id,
                    details=SessionRevoked(
                        session_id=session_id, requested_by=expected_user_id
                    ),
                    success=False,
                    risk_score=RISK_FOREIGN_SESSION_REVOKE,
                )
            )
            logger.warning(
                "session_revoke_forbidden",
                session_id=session_id,
                requested_by=expected_user_id,
            )
            raise ForbiddenError("session belongs to another user")
        was_active = self.store.deactivate_session(session_id, user_id=session.user_id)
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.SESSION_REVOKED,
                user_id=session.user_id,
                details=SessionRevoked(
                    session_id=session_id,
                    was_active=was_active,
                    requested_by=expected_user_id,
                ),
            )
        )
        logger.info("session_revoked", session_id=session_id, was_active=was_active)
        session.is_active = False
        return session

    def revoke_all(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        revoked = self.store.deactivate_user_sessions(
            user_id, except_session_id=except_session_id
        )
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.ALL_SESSIONS_REVOKED,
                user_id=user_id,
                details=AllSessionsRevoked(
                    revoked_count=revoked, except_session_id=except_session_id
                ),
            )
        )
        logger.info("all_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked

    def list_active(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions(user_id)
