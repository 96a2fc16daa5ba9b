import os
from typing import Dict

# Plan limits configuration
# Free tier: a fixed number of new conversations per UTC day, a small toolkit allowance
# Paid tier: unlimited conversations, the full toolkit catalog
FREE_DAILY_LIMIT = int(os.getenv("FREE_DAILY_LIMIT", "5"))
UNLIMITED = -1  # -1 means unlimited

PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {
        "max_conversations_per_day": FREE_DAILY_LIMIT,
        "max_toolkits": 6,
    },
    "paid": {
        "max_conversations_per_day": UNLIMITED,
        "max_toolkits": 42,
    },
}


def get_plan_limit(plan_tier: str, limit_type: str) -> int:
    """Get the limit value for a specific plan and limit type."""
    return PLAN_LIMITS.get(plan_tier, PLAN_LIMITS["free"]).get(limit_type, 0)
