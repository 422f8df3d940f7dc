from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Iterable, List, Optional

from arenaauth.logging import get_logger
from arenaauth.service.errors import ConflictError, NotFoundError, ValidationError
from arenaauth.service.events import (
    RoleAssigned,
    RoleCreated,
    SecurityAction,
    SecurityEvent,
)
from arenaauth.service.security_log import SecurityEventLog
from arenaauth.storage.errors import ConstraintViolation
from arenaauth.storage.models import Role, RoleAssignment

if TYPE_CHECKING:
    from arenaauth.service.auth import AuthStore

logger = get_logger(__name__)

WILDCARD_PERMISSION = "*"


class RoleManager:
    """Roles, time-bounded assignments and permission lookups.

    Expired assignments stay in storage and are filtered out on read. Every
    lookup goes to the store so an assignment that expired a moment ago is
    already gone from the answer.
    """

    def __init__(self, store: "AuthStore", security_log: SecurityEventLog) -> None:
        self.store = store
        self.security_log = security_log

    def create_role(
        self,
        name: str,
        permissions: Iterable[str],
        description: Optional[str] = None,
        *,
        is_active: bool = True,
        created_by: Optional[str] = None,
    ) -> Role:
        name = (name or "").strip()
        if not name:
            raise ValidationError("role name is required")
        if isinstance(permissions, str):
            raise ValidationError(
                "permissions must be a list of names", detail={"permissions": permissions}
            )
        perms = [p.strip() for p in permissions if p and p.strip()]
        try:
            role = self.store.create_role(
                name, perms, description=description, is_active=is_active
            )
        except ConstraintViolation as exc:
            raise ConflictError("role already exists", detail={"name": name}) from exc
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.ROLE_CREATED,
                user_id=created_by,
                details=RoleCreated(
                    role_id=role.id, role_name=role.name, permissions=role.permissions
                ),
            )
        )
        logger.info("role_created", role_id=role.id, role_name=role.name)
        return role

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        assigned_by: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment:
        if expires_at is not None and expires_at.tzinfo is None:
            raise ValidationError("expires_at must be timezone-aware")
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        try:
            assignment = self.store.assign_role(
                user_id, role_id, assigned_by=assigned_by, expires_at=expires_at
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "role already assigned", detail={"user_id": user_id, "role_id": role_id}
            ) from exc
        self.security_log.record(
            SecurityEvent(
                action=SecurityAction.ROLE_ASSIGNED,
                user_id=user_id,
                details=RoleAssigned(
                    role_id=role.id,
                    role_name=role.name,
                    assigned_by=assigned_by,
                    expires_at=expires_at,
                ),
            )
        )
        logger.info(
            "role_assigned",
            user_id=user_id,
            role_id=role_id,
            assigned_by=assigned_by,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return assignment

    def get_active_roles(self, user_id: str) -> List[Role]:
        return self.store.list_active_roles(user_id)

    def has_permission(self, user_id: str, permission: str) -> bool:
        return any(role.grants(permission) for role in self.get_active_roles(user_id))
