from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from arenaauth.config import Settings
from arenaauth.logging import get_logger
from arenaauth.service.errors import ValidationError
from arenaauth.service.events import SecurityEvent
from arenaauth.storage.models import SecurityLogEntry

if TYPE_CHECKING:
    from arenaauth.service.auth import AuthStore

logger = get_logger(__name__)

_MAX_USER_AGENT = 512


class SecurityEventLog:
    """Append-only record of security decisions.

    ``record`` writes synchronously and lets store failures propagate, so an
    operation whose decision could not be logged fails with it. There is no
    update or delete path.
    """

    def __init__(self, store: "AuthStore", settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def record(self, event: SecurityEvent) -> SecurityLogEntry:
        entry = self.store.append_security_log(
            action=event.action.value,
            user_id=event.user_id,
            details=event.details.model_dump(mode="json", exclude_none=True),
            ip_address=event.ip_address,
            user_agent=event.user_agent[:_MAX_USER_AGENT] if event.user_agent else None,
            success=event.success,
            risk_score=event.risk_score,
            location=event.location,
        )
        log_fn = logger.warning if event.risk_score >= 50 else logger.info
        log_fn(
            "security_event_recorded",
            action=entry.action,
            user_id=entry.user_id,
            success=entry.success,
            risk_score=entry.risk_score,
            entry_id=entry.id,
        )
        return entry

    def query(
        self, user_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[SecurityLogEntry]:
        if limit is None:
            limit = self.settings.security_log_default_limit
        if limit < 1:
            raise ValidationError("limit must be at least 1", detail={"limit": limit})
        limit = min(limit, self.settings.security_log_max_limit)
        # an empty id means "all users" on every backend
        return self.store.list_security_logs(user_id=user_id or None, limit=limit)

    def count_since(self, user_id: str, action: str, since: datetime) -> int:
        return self.store.count_security_events(user_id, action, since)

    def has_successful_ip(self, user_id: str, ip_address: str) -> bool:
        return self.store.has_successful_event_from_ip(user_id, ip_address)
