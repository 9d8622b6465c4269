"""
gotcha/features/usage/service.py

Monthly usage accounting per organization.

The counter lives on the organization's subscription row and is only
valid for the month of responses_reset_at. Rollover needs no job: the
increment statement itself resets a stale counter to 1.

Month boundaries use the server's local clock (first day, 00:00:00).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.orm import Session

from gotcha.core.database import get_db_session, subscriptions


logger = logging.getLogger("gotcha")


def start_of_month(now: Optional[datetime] = None) -> datetime:
    """First instant of now's calendar month, in now's timezone (local if naive)."""
    current = now or datetime.now()
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _align(value: datetime, reference: datetime) -> datetime:
    """Express value in reference's awareness so the two can be compared."""
    if value.tzinfo is not None and reference.tzinfo is None:
        return value.astimezone().replace(tzinfo=None)
    if value.tzinfo is None and reference.tzinfo is not None:
        return value.replace(tzinfo=reference.tzinfo)
    return value


def should_reset_counter(reset_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """
    True if the counter is stale: reset_at is missing or strictly before
    the start of the current month.

    Pure; same arguments always give the same answer.
    """
    if reset_at is None:
        return True
    boundary = start_of_month(now)
    return _align(reset_at, boundary) < boundary


def atomic_increment_usage(
    organization_id: str,
    *,
    now: Optional[datetime] = None,
    session_factory=None,
    session: Optional[Session] = None,
) -> None:
    """
    Count one unit of usage for organization_id.

    One UPDATE statement decides reset-vs-increment and applies it, so
    concurrent calls cannot lose updates or disagree about the reset.
    Pass session to count inside the caller's transaction (the write it
    accounts for). Store errors propagate to the caller.
    """
    current = now or datetime.now()
    boundary = start_of_month(current)
    stale = or_(
        subscriptions.c.responses_reset_at.is_(None),
        subscriptions.c.responses_reset_at < boundary,
    )

    statement = (
        update(subscriptions)
        .where(subscriptions.c.organization_id == organization_id)
        .values(
            responses_this_month=case((stale, 1), else_=subscriptions.c.responses_this_month + 1),
            responses_reset_at=case((stale, current), else_=subscriptions.c.responses_reset_at),
            updated_at=current,
        )
    )

    if session is None:
        with get_db_session(session_factory) as own:
            result = own.execute(statement)
    else:
        result = session.execute(statement)

    if result.rowcount == 0:
        logger.warning(
            "usage.increment.no_subscription",
            extra={"organization_id": organization_id, "event_type": "usage.increment"},
        )


@dataclass(frozen=True)
class UsageSnapshot:
    organization_id: str
    plan: str
    responses_this_month: int
    responses_reset_at: Optional[datetime]


def get_usage(organization_id: str, *, now: Optional[datetime] = None, session_factory=None) -> Optional[UsageSnapshot]:
    """
    Read the organization's current-month usage without mutating it.

    A stale counter reads as 0. Returns None if there is no subscription.
    """
    with get_db_session(session_factory) as session:
        row = session.execute(
            select(
                subscriptions.c.plan,
                subscriptions.c.responses_this_month,
                subscriptions.c.responses_reset_at,
            ).where(subscriptions.c.organization_id == organization_id)
        ).first()

    if row is None:
        return None

    count = 0 if should_reset_counter(row.responses_reset_at, now) else row.responses_this_month
    return UsageSnapshot(
        organization_id=organization_id,
        plan=row.plan,
        responses_this_month=count,
        responses_reset_at=row.responses_reset_at,
    )
