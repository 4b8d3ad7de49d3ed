"""
Instance domain: entities, expiration policy and flag generation.
"""

from .entities import (
    ChallengeSpec,
    ContestMode,
    ContestPolicy,
    ExtendResult,
    FlagInjection,
    Instance,
    InstanceDescriptor,
    InstanceStatus,
    InstanceView,
    SweepReport,
    UserInfo,
    as_utc,
    utc_now,
)
from .expiration import ExpirationPolicy
from .flags import DEFAULT_FLAG_FORMAT, generate_flag

__all__ = [
    "ChallengeSpec",
    "ContestMode",
    "ContestPolicy",
    "ExtendResult",
    "FlagInjection",
    "Instance",
    "InstanceDescriptor",
    "InstanceStatus",
    "InstanceView",
    "SweepReport",
    "UserInfo",
    "as_utc",
    "utc_now",
    "ExpirationPolicy",
    "DEFAULT_FLAG_FORMAT",
    "generate_flag",
]
