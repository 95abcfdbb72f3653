"""
Monthly video quota per plan tier.

The check runs once before a job is created. It is advisory: the usage
counter only moves when a job reaches `done`, so concurrent submissions for
one account can overshoot the limit by the number of jobs in flight.
"""

PLAN_LIMITS = {
    "trial": 1,
    "basic": 20,
    "pro": 100,
}


def plan_limit(plan: str) -> int:
    """Videos per billing period for a plan. Unknown plans get 0."""
    return PLAN_LIMITS.get(plan, 0)


def can_start(plan: str, used_this_period: int) -> bool:
    return used_this_period < plan_limit(plan)


def remaining(plan: str, used_this_period: int) -> int:
    return max(0, plan_limit(plan) - used_this_period)
