from __future__ import annotations

import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from arenaauth.config import Settings
from arenaauth.logging import get_logger
from arenaauth.service.errors import NotFoundError, ValidationError
from arenaauth.service.events import (
    SecurityAction,
    SecurityEvent,
    TokenVerified,
    VerificationTokenCreated,
)
from arenaauth.service.security_log import SecurityEventLog
from arenaauth.storage.models import VerificationToken, VerificationType, utcnow

if TYPE_CHECKING:
    from arenaauth.service.auth import AuthStore

logger = get_logger(__name__)

_VERIFIED_CHANNELS = {
    VerificationType.EMAIL_VERIFICATION,
    VerificationType.PHONE_VERIFICATION,
}


def coerce_verification_type(value: VerificationType | str) -> VerificationType:
    try:
        return VerificationType(value)
    except ValueError as exc:
        raise ValidationError(
            "unknown verification type",
            detail={"type": str(value), "allowed": [t.value for t in VerificationType]},
        ) from exc


class VerificationTokenManager:
    """Single-use, expiring tokens for email/phone verification and resets."""

    def __init__(
        self, store: "AuthStore", security_log: SecurityEventLog, settings: Settings
    ) -> None:
        self.store = store
        self.security_log = security_log
        self.settings = settings

    def issue(
        self,
        user_id: str,
        token_type: VerificationType | str,
        ttl_minutes: Optional[int] = None,
    ) -> VerificationToken:
        token_type = coerce_verification_type(token_type)
        ttl = self.settings.verification_ttl_minutes if ttl_minutes is None else ttl_minutes
        if ttl <= 0:
            raise ValidationError("ttl_minutes must be positive", detail={"ttl_minutes": ttl})
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        record = self.store.create_verification_token(
            user_id,
            secrets.token_hex(32),
            token_type,
            utcnow() + timedelta(minutes=ttl),
        )
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.VERIFICATION_TOKEN_CREATED,
                user_id=user_id,
                details=VerificationTokenCreated(
                    token_type=token_type.value, expires_at=record.expires_at
                ),
            )
        )
        logger.info(
            "verification_token_issued",
            user_id=user_id,
            verification_type=token_type.value,
            ttl_minutes=ttl,
        )
        return record

    def consume(self, token: str, token_type: VerificationType | str) -> Optional[str]:
        """Return the owning user id, or None for unknown, expired or used tokens."""
        token_type = coerce_verification_type(token_type)
        if not token:
            return None
        record = self.store.consume_verification_token(token, token_type)
        if record is None:
            return None
        if token_type in _VERIFIED_CHANNELS:
            self.store.mark_verified(record.user_id, token_type)
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.TOKEN_VERIFIED,
                user_id=record.user_id,
                details=TokenVerified(token_type=token_type.value),
            )
        )
        logger.info(
            "verification_token_consumed",
            user_id=record.user_id,
            verification_type=token_type.value,
        )
        return record.user_id
