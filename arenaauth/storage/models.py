from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationType(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PHONE_VERIFICATION = "phone_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    email_verified: bool = False
    phone_number: Optional[str] = None
    phone_verified: bool = False
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = field(default=None, repr=False)
    account_locked: bool = False
    lock_reason: Optional[str] = None
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class Session:
    id: str
    user_id: str
    session_token: str = field(repr=False)
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    device_info: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and (now or utcnow()) < self.expires_at

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int,
        *,
        device_info: Dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            # 32 random bytes -> 256 bits of entropy
            session_token=secrets.token_hex(32),
            created_at=now,
            last_accessed_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            device_info=dict(device_info or {}),
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass(frozen=True)
class SecurityLogEntry:
    id: int
    action: str
    created_at: datetime
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    risk_score: int = 0
    location: Optional[str] = None


@dataclass
class VerificationToken:
    id: int
    user_id: str
    token: str = field(repr=False)
    type: VerificationType
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_consumable(self, now: Optional[datetime] = None) -> bool:
        return not self.used and (now or utcnow()) < self.expires_at


@dataclass
class Role:
    id: str
    name: str
    permissions: List[str] = field(default_factory=list)
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def grants(self, permission: str) -> bool:
        return "*" in self.permissions or permission in self.permissions


@dataclass
class RoleAssignment:
    id: str
    user_id: str
    role_id: str
    assigned_by: Optional[str] = None
    assigned_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_current(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is None or self.expires_at > (now or utcnow())
