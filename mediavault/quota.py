"""Plan -> storage limit policy.

This is the only place a storage limit is derived from a plan name. The cached
``users.storage_limit`` column, the upload quota check and the payment-driven
plan upgrade all go through :func:`limit_for`.
"""
from enum import Enum
from typing import Optional, Union

MIB = 1024 * 1024
GIB = 1024 * MIB
TIB = 1024 * GIB


class Plan(str, Enum):
    FREE = "Free"
    PREMIUM = "Premium"
    CUSTOM = "Custom"


STORAGE_LIMITS = {
    Plan.FREE: 500 * MIB,
    Plan.PREMIUM: 750 * GIB,
    Plan.CUSTOM: 3 * TIB // 2,  # 1.5 TiB
}

# Legacy plan names still sent by the payment gateway
PLAN_ALIASES = {
    "pro": Plan.PREMIUM,
    "expert": Plan.CUSTOM,
}


def resolve_plan(name: Optional[Union[str, Plan]]) -> Plan:
    """Map a stored or gateway plan name onto a known plan; anything unknown is Free."""
    if isinstance(name, Plan):
        return name
    if not name:
        return Plan.FREE
    key = name.strip().lower()
    if key in PLAN_ALIASES:
        return PLAN_ALIASES[key]
    for plan in Plan:
        if plan.value.lower() == key:
            return plan
    return Plan.FREE


def limit_for(plan: Optional[Union[str, Plan]]) -> int:
    return STORAGE_LIMITS[resolve_plan(plan)]
