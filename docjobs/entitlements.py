"""
Entitlements

Maps a subscription tier to what an account may do: monthly credits, maximum
file size, allowed operations and concurrent job limit. Pure lookups, safe to
call on every request.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Mapping, Optional, Union

MB = 1024 * 1024


class Tier(str, Enum):
    """Subscription tiers, lowest first"""
    FREE = "FREE"
    STARTER = "STARTER"
    PROFESSIONAL = "PROFESSIONAL"
    BUSINESS = "BUSINESS"


class Operation(str, Enum):
    """Document operations a job can request"""
    COMPRESS = "compress"
    MERGE = "merge"
    SPLIT = "split"
    WATERMARK = "watermark"
    EXTRACT = "extract"
    PROTECT = "protect"
    SIGN = "sign"


class JobPriority(IntEnum):
    """Job priority levels"""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3


@dataclass(frozen=True)
class Entitlement:
    tier: Tier
    max_credits_per_month: int
    max_file_size_bytes: int
    allowed_operations: FrozenSet[Operation]
    max_concurrent_jobs: int
    queue_priority: JobPriority
    retention_days: int

    def allows(self, operation: Union[Operation, str]) -> bool:
        try:
            return Operation(operation) in self.allowed_operations
        except ValueError:
            return False


TIER_ORDER = (Tier.FREE, Tier.STARTER, Tier.PROFESSIONAL, Tier.BUSINESS)

_BASIC_OPERATIONS = frozenset({Operation.COMPRESS, Operation.MERGE, Operation.SPLIT, Operation.WATERMARK})

_ENTITLEMENTS: Dict[Tier, Entitlement] = {
    Tier.FREE: Entitlement(
        tier=Tier.FREE,
        max_credits_per_month=5,
        max_file_size_bytes=10 * MB,
        allowed_operations=_BASIC_OPERATIONS,
        max_concurrent_jobs=1,
        queue_priority=JobPriority.NORMAL,
        retention_days=1,
    ),
    Tier.STARTER: Entitlement(
        tier=Tier.STARTER,
        max_credits_per_month=100,
        max_file_size_bytes=50 * MB,
        allowed_operations=_BASIC_OPERATIONS | {Operation.EXTRACT},
        max_concurrent_jobs=2,
        queue_priority=JobPriority.HIGH,
        retention_days=7,
    ),
    Tier.PROFESSIONAL: Entitlement(
        tier=Tier.PROFESSIONAL,
        max_credits_per_month=500,
        max_file_size_bytes=200 * MB,
        allowed_operations=_BASIC_OPERATIONS | {Operation.EXTRACT, Operation.PROTECT},
        max_concurrent_jobs=5,
        queue_priority=JobPriority.URGENT,
        retention_days=30,
    ),
    Tier.BUSINESS: Entitlement(
        tier=Tier.BUSINESS,
        max_credits_per_month=99999,  # effectively unlimited
        max_file_size_bytes=1000 * MB,
        allowed_operations=frozenset(Operation),
        max_concurrent_jobs=10,
        queue_priority=JobPriority.URGENT,
        retention_days=365,
    ),
}

DEFAULT_CREDIT_COST = 1


def parse_tier(tier: Union[Tier, str, None]) -> Tier:
    """Normalize a tier value; anything unknown is treated as FREE"""
    if isinstance(tier, Tier):
        return tier
    if tier is None:
        return Tier.FREE
    try:
        return Tier(str(tier).strip().upper())
    except ValueError:
        return Tier.FREE


def resolve(tier: Union[Tier, str, None]) -> Entitlement:
    """
    Resolve the entitlement for a tier.

    Total function: unknown or missing tiers fall back to the most
    restrictive tier.
    """
    return _ENTITLEMENTS[parse_tier(tier)]


def credit_cost(operation: Union[Operation, str], costs: Optional[Mapping[str, int]] = None) -> int:
    """Credits charged for one successful job of ``operation``"""
    key = Operation(operation).value
    if costs and key in costs:
        return int(costs[key])
    return DEFAULT_CREDIT_COST
