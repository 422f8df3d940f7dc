"""Security event vocabulary.

Every security log entry has an ``action`` and a typed ``details`` payload.
The payload models form a discriminated union on ``kind``, and ``kind``
always equals the action name, so a stored entry can be re-parsed without
guessing its shape.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class SecurityAction(str, Enum):
    PROFILE_UPDATED = "profile_updated"
    SESSION_CREATED = "session_created"
    SESSION_REVOKED = "session_revoked"
    ALL_SESSIONS_REVOKED = "all_sessions_revoked"
    FAILED_LOGIN = "failed_login"
    SUCCESSFUL_LOGIN = "successful_login"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    ROLE_CREATED = "role_created"
    ROLE_ASSIGNED = "role_assigned"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    VERIFICATION_TOKEN_CREATED = "verification_token_created"
    TOKEN_VERIFIED = "token_verified"
    UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"
    LOCKED_ACCOUNT_ACCESS_ATTEMPT = "locked_account_access_attempt"
    AUTHENTICATED_ACCESS = "authenticated_access"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_DENIED = "permission_denied"


# Fixed per-event risk scores
RISK_NONE = 0
RISK_FAILED_LOGIN = 30
RISK_ACCOUNT_LOCKED = 100
RISK_UNAUTHORIZED_ACCESS = 40
RISK_LOCKED_ACCOUNT_ACCESS = 80
RISK_INSUFFICIENT_PERMISSIONS = 20
RISK_PERMISSION_DENIED = 25
RISK_FOREIGN_SESSION_REVOKE = 20


class DeviceInfo(BaseModel):
    """What the client told us about the device a session was opened from."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    platform: Optional[str] = Field(None, max_length=128)
    user_agent: Optional[str] = Field(None, alias="userAgent", max_length=512)
    provider: Optional[str] = Field(None, max_length=64)
    device_type: Optional[str] = Field(None, alias="deviceType", max_length=64)


class _Details(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProfileUpdated(_Details):
    kind: Literal["profile_updated"] = "profile_updated"
    fields: List[str]


class SessionCreated(_Details):
    kind: Literal["session_created"] = "session_created"
    session_id: str
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)


class SessionRevoked(_Details):
    kind: Literal["session_revoked"] = "session_revoked"
    session_id: str
    was_active: bool = False
    requested_by: Optional[str] = None


class AllSessionsRevoked(_Details):
    kind: Literal["all_sessions_revoked"] = "all_sessions_revoked"
    revoked_count: int = Field(ge=0)
    except_session_id: Optional[str] = None


class FailedLogin(_Details):
    kind: Literal["failed_login"] = "failed_login"
    attempt_count: int = Field(ge=1)


class SuccessfulLogin(_Details):
    kind: Literal["successful_login"] = "successful_login"
    login_count: int = Field(ge=1)
    device_info: Optional[DeviceInfo] = None


class AccountLocked(_Details):
    kind: Literal["account_locked"] = "account_locked"
    reason: str
    changed: bool
    revoked_sessions: int = Field(0, ge=0)


class AccountUnlocked(_Details):
    kind: Literal["account_unlocked"] = "account_unlocked"
    changed: bool


class RoleCreated(_Details):
    kind: Literal["role_created"] = "role_created"
    role_id: str
    role_name: str
    permissions: List[str]


class RoleAssigned(_Details):
    kind: Literal["role_assigned"] = "role_assigned"
    role_id: str
    role_name: str
    assigned_by: Optional[str] = None
    expires_at: Optional[datetime] = None


class TwoFactorChanged(_Details):
    kind: Literal["two_factor_enabled", "two_factor_disabled"]


class VerificationTokenCreated(_Details):
    kind: Literal["verification_token_created"] = "verification_token_created"
    token_type: str
    expires_at: datetime


class TokenVerified(_Details):
    kind: Literal["token_verified"] = "token_verified"
    token_type: str


class AccessAttempt(_Details):
    kind: Literal[
        "unauthorized_access_attempt",
        "locked_account_access_attempt",
        "authenticated_access",
    ]
    path: Optional[str] = None
    method: Optional[str] = None
    reason: Optional[str] = None


class PermissionCheck(_Details):
    kind: Literal["permission_granted", "permission_denied"]
    permission: str
    path: Optional[str] = None


class RoleCheck(_Details):
    kind: Literal["insufficient_permissions"] = "insufficient_permissions"
    required_roles: List[str]
    user_roles: List[str] = Field(default_factory=list)
    path: Optional[str] = None


EventDetails = Annotated[
    Union[
        ProfileUpdated,
        SessionCreated,
        SessionRevoked,
        AllSessionsRevoked,
        FailedLogin,
        SuccessfulLogin,
        AccountLocked,
        AccountUnlocked,
        RoleCreated,
        RoleAssigned,
        TwoFactorChanged,
        VerificationTokenCreated,
        TokenVerified,
        AccessAttempt,
        PermissionCheck,
        RoleCheck,
    ],
    Field(discriminator="kind"),
]

_details_adapter: TypeAdapter[EventDetails] = TypeAdapter(EventDetails)


def parse_details(raw: Dict[str, Any]) -> EventDetails:
    """Re-hydrate a stored details dict into its typed model."""
    return _details_adapter.validate_python(raw)


def parse_device_info(raw: DeviceInfo | Dict[str, Any] | None) -> DeviceInfo:
    if raw is None:
        return DeviceInfo()
    if isinstance(raw, DeviceInfo):
        return raw
    return DeviceInfo.model_validate(raw)


class SecurityEvent(BaseModel):
    """A security decision about to be appended to the log."""

    action: SecurityAction
    details: EventDetails
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    risk_score: int = Field(RISK_NONE, ge=0, le=100)
    location: Optional[str] = Field(None, max_length=128)

    @model_validator(mode="after")
    def _details_match_action(self) -> "SecurityEvent":
        if self.details.kind != self.action.value:
            raise ValueError(
                f"details kind '{self.details.kind}' does not match action '{self.action.value}'"
            )
        return self
