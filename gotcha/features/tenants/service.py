"""
gotcha/features/tenants/service.py

Organization and project provisioning. A project is created together
with its first live API key; project count is capped by plan.
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import func, insert, select
from sqlalchemy.orm import Session

from gotcha.core.database import organizations, projects, subscriptions
from gotcha.core.errors import ForbiddenError
from gotcha.features.api_keys.service import create_api_key
from gotcha.features.plans.service import FREE_PLAN, is_over_project_limit
from gotcha.models.api_key import IssuedApiKey


def create_organization(session: Session, name: str, *, plan: str = FREE_PLAN, organization_id: Optional[str] = None) -> str:
    """Create an organization with its subscription row. Caller commits."""
    org_id = organization_id or str(uuid4())
    session.execute(
        insert(organizations).values(id=org_id, name=name, created_at=datetime.now(timezone.utc))
    )
    session.execute(
        insert(subscriptions).values(
            organization_id=org_id,
            plan=plan.upper(),
            responses_this_month=0,
            responses_reset_at=None,
        )
    )
    return org_id


def create_project(
    session: Session,
    organization_id: str,
    name: str,
    *,
    allowed_domains: Optional[List[str]] = None,
) -> Tuple[str, IssuedApiKey]:
    """Create a project and its live key. Raises ForbiddenError past the plan's project limit."""
    plan = session.execute(
        select(subscriptions.c.plan).where(subscriptions.c.organization_id == organization_id)
    ).scalar() or FREE_PLAN
    count = session.execute(
        select(func.count()).select_from(projects).where(projects.c.organization_id == organization_id)
    ).scalar() or 0
    if is_over_project_limit(plan, count):
        raise ForbiddenError("Project limit reached for the current plan")

    project_id = str(uuid4())
    session.execute(
        insert(projects).values(
            id=project_id,
            organization_id=organization_id,
            name=name,
            created_at=datetime.now(timezone.utc),
        )
    )
    issued = create_api_key(session, project_id, kind="live", allowed_domains=allowed_domains)
    return project_id, issued
