from dataclasses import dataclass
from enum import Enum


class UserTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: "str | UserTier | None") -> "UserTier":
        """Map any tier label to a member; unknown or missing labels become FREE."""
        if isinstance(value, UserTier):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.FREE
        return cls.FREE


@dataclass(frozen=True)
class TierPolicy:
    priority: int
    attempts: int
    queue_discount: float


ENTERPRISE_POLICY = TierPolicy(priority=1, attempts=5, queue_discount=0.2)
PREMIUM_POLICY = TierPolicy(priority=2, attempts=4, queue_discount=0.5)
BASIC_POLICY = TierPolicy(priority=3, attempts=3, queue_discount=0.8)
FREE_POLICY = TierPolicy(priority=4, attempts=2, queue_discount=1.0)


def policy_for(tier: "str | UserTier | None") -> TierPolicy:
    """Scheduling policy for a tier. Never raises: unknown tiers get the free row."""
    match UserTier.parse(tier):
        case UserTier.ENTERPRISE:
            return ENTERPRISE_POLICY
        case UserTier.PREMIUM:
            return PREMIUM_POLICY
        case UserTier.BASIC:
            return BASIC_POLICY
        case _:
            return FREE_POLICY
