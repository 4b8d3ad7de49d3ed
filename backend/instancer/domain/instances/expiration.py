"""
Instancer - Expiration Policy
Initial TTL and renewal eligibility
"""

from datetime import datetime, timedelta
from typing import Optional

from instancer.core.config import OrchestratorConfig

from .entities import ContestPolicy, as_utc, utc_now


class ExpirationPolicy:
    """
    Decides how long an instance lives and when it may be renewed.

    Renewal is only possible in the trailing ``extend_window`` before
    expiry, so instances cannot be kept alive by renewing early.
    """

    def __init__(self, config: OrchestratorConfig):
        self._config = config

    @property
    def extend_window(self) -> timedelta:
        return self._config.extend_window

    @property
    def extend_increment(self) -> timedelta:
        return self._config.extend_increment

    def initial_ttl(self, contest: Optional[ContestPolicy] = None) -> timedelta:
        if contest is not None and contest.instance_ttl_minutes:
            return timedelta(minutes=contest.instance_ttl_minutes)
        return self._config.initial_ttl

    def initial_expiry(
        self,
        contest: Optional[ContestPolicy] = None,
        now: Optional[datetime] = None,
    ) -> datetime:
        return (now or utc_now()) + self.initial_ttl(contest)

    def remaining(self, expires_at: datetime, now: Optional[datetime] = None) -> timedelta:
        return as_utc(expires_at) - (now or utc_now())

    def can_extend(self, expires_at: datetime, now: Optional[datetime] = None) -> bool:
        return self.remaining(expires_at, now) <= self._config.extend_window

    def extended(self, expires_at: datetime) -> datetime:
        return as_utc(expires_at) + self._config.extend_increment

    @staticmethod
    def ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Seconds left, clamped at zero."""
        seconds = (as_utc(expires_at) - (now or utc_now())).total_seconds()
        return max(0, int(seconds))

    @staticmethod
    def whole_minutes(delta: timedelta) -> int:
        """Minutes in ``delta``, truncated toward zero."""
        return int(delta.total_seconds() / 60)
