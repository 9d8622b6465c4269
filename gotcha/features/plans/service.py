"""
gotcha/features/plans/service.py

Plan limit policy. Pure functions of (plan, usage); no I/O.

Gating limits what a tenant can *see* (accessible_response_count); the
stored counts are never modified here. PRO is unbounded, represented by
a large sentinel so arithmetic stays total. Unknown plans get FREE limits.
"""

from typing import Optional

PRO_PLAN = "PRO"
FREE_PLAN = "FREE"
UNLIMITED = 999999
WARNING_RATIO = 0.8

RESPONSE_LIMITS = {
    FREE_PLAN: 500,
    PRO_PLAN: UNLIMITED,
}

PROJECT_LIMITS = {
    FREE_PLAN: 1,
    PRO_PLAN: UNLIMITED,
}


def _normalize(plan: Optional[str]) -> str:
    return (plan or "").strip().upper()


def _is_pro(plan: Optional[str]) -> bool:
    return _normalize(plan) == PRO_PLAN


def _display(value: int) -> str:
    return "∞" if value >= UNLIMITED else str(value)


def plan_limit(plan: Optional[str]) -> int:
    """Monthly response ceiling for plan."""
    return RESPONSE_LIMITS.get(_normalize(plan), RESPONSE_LIMITS[FREE_PLAN])


def plan_limit_display(plan: Optional[str]) -> str:
    return _display(plan_limit(plan))


def is_over_limit(plan: Optional[str], used: int) -> bool:
    """Strictly above the ceiling; reaching it exactly is still allowed."""
    if _is_pro(plan) or used < 0:
        return False
    return used > plan_limit(plan)


def accessible_response_count(plan: Optional[str], total: int) -> int:
    if _is_pro(plan):
        return total
    return min(total, plan_limit(plan))


def should_show_upgrade_warning(plan: Optional[str], used: int) -> bool:
    """True from 80% of the ceiling; evaluated independently of is_over_limit."""
    if _is_pro(plan) or used < 0:
        return False
    return used >= plan_limit(plan) * WARNING_RATIO


# Projects

def project_limit(plan: Optional[str]) -> int:
    return PROJECT_LIMITS.get(_normalize(plan), PROJECT_LIMITS[FREE_PLAN])


def project_limit_display(plan: Optional[str]) -> str:
    return _display(project_limit(plan))


def is_over_project_limit(plan: Optional[str], project_count: int) -> bool:
    """True when another project may not be created (count already at limit)."""
    if _is_pro(plan):
        return False
    return project_count >= project_limit(plan)
