from __future__ import annotations

from datetime import timedelta
from typing import Optional

from arenaauth.config import Settings
from arenaauth.service.events import SecurityAction
from arenaauth.service.security_log import SecurityEventLog
from arenaauth.storage.models import utcnow


class RiskScorer:
    """Advisory 0-100 score built from recent failures and IP novelty.

    ``min(failures * weight, cap)`` over the trailing window, plus a fixed
    bump when the IP has never appeared on a successful entry for the user.
    The result never gates anything by itself.
    """

    def __init__(self, security_log: SecurityEventLog, settings: Settings) -> None:
        self.security_log = security_log
        self.settings = settings

    def score(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        since = utcnow() - timedelta(hours=self.settings.risk_window_hours)
        failures = self.security_log.count_since(
            user_id, SecurityAction.FAILED_LOGIN.value, since
        )
        score = min(
            failures * self.settings.risk_failure_weight, self.settings.risk_failure_cap
        )
        if ip_address and not self.security_log.has_successful_ip(user_id, ip_address):
            score += self.settings.risk_new_ip_weight
        # user_agent is accepted for parity with the log schema but not weighted
        return max(0, min(score, 100))
