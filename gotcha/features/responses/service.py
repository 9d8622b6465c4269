"""
gotcha/features/responses/service.py

Storage for SDK feedback responses (the write behind admission control).
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import desc, func, insert, select
from sqlalchemy.orm import Session

from gotcha.core.database import get_db_session, responses
from gotcha.models.response import MODE_MAP, VOTE_MAP, SubmitResponseRequest


_MODE_NAMES = {v: k for k, v in MODE_MAP.items()}


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def create_response(
    project_id: str,
    payload: SubmitResponseRequest,
    *,
    idempotency_key: Optional[str] = None,
    session_factory=None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Insert a response row and return the SDK-facing result.

    With session, the insert joins the caller's transaction and nothing is
    committed here; otherwise it runs in its own.
    """
    if session is None:
        with get_db_session(session_factory) as own:
            return create_response(project_id, payload, idempotency_key=idempotency_key, session=own)

    response_id = str(uuid4())
    created_at = datetime.now(timezone.utc)
    meta = payload.end_user_meta()
    context = payload.context

    session.execute(
        insert(responses).values(
            id=response_id,
            project_id=project_id,
            element_id=payload.element_id,
            mode=MODE_MAP[payload.mode],
            content=payload.content,
            title=payload.title,
            rating=payload.rating,
            vote=VOTE_MAP[payload.vote] if payload.vote else None,
            poll_options=payload.poll_options,
            poll_selected=payload.poll_selected,
            experiment_id=payload.experiment_id,
            variant=payload.variant,
            end_user_id=meta.get("id"),
            end_user_meta=meta,
            url=context.url if context else None,
            user_agent=context.user_agent if context else None,
            idempotency_key=idempotency_key,
            created_at=created_at,
        )
    )

    result: Dict[str, Any] = {
        "id": response_id,
        "status": "created",
        "createdAt": _iso(created_at),
    }
    if payload.mode == "poll" and payload.poll_options:
        result["results"] = poll_results(project_id, payload.element_id, payload.poll_options, session=session)
    return result


def poll_results(
    project_id: str,
    element_id: str,
    options: List[str],
    *,
    session_factory=None,
    session: Optional[Session] = None,
) -> Dict[str, int]:
    """Vote counts per option across all poll responses for an element."""
    if session is None:
        with get_db_session(session_factory) as own:
            return poll_results(project_id, element_id, options, session=own)

    counts = {option: 0 for option in options}
    rows = session.execute(
        select(responses.c.poll_selected).where(
            responses.c.project_id == project_id,
            responses.c.element_id == element_id,
            responses.c.mode == "POLL",
        )
    ).all()
    for row in rows:
        for selected in row.poll_selected or []:
            if selected in counts:
                counts[selected] += 1
    return counts


def serialize_response(row) -> Dict[str, Any]:
    meta = row.end_user_meta or {}
    return {
        "id": row.id,
        "elementId": row.element_id,
        "mode": _MODE_NAMES.get(row.mode, row.mode.lower()),
        "content": row.content,
        "title": row.title,
        "rating": row.rating,
        "vote": row.vote.lower() if row.vote else None,
        "pollOptions": row.poll_options,
        "pollSelected": row.poll_selected,
        "experimentId": row.experiment_id,
        "variant": row.variant,
        "user": {"id": row.end_user_id, **meta} if row.end_user_id else meta,
        "createdAt": _iso(row.created_at),
    }


def _filters(project_id: str, element_id: Optional[str], mode: Optional[str], start: Optional[datetime], end: Optional[datetime]):
    clauses = [responses.c.project_id == project_id]
    if element_id:
        clauses.append(responses.c.element_id == element_id)
    if mode:
        clauses.append(responses.c.mode == MODE_MAP[mode])
    if start:
        clauses.append(responses.c.created_at >= start)
    if end:
        clauses.append(responses.c.created_at <= end)
    return clauses


def count_responses(project_id: str, *, element_id=None, mode=None, start=None, end=None, session_factory=None) -> int:
    with get_db_session(session_factory) as session:
        return session.execute(
            select(func.count()).select_from(responses).where(*_filters(project_id, element_id, mode, start, end))
        ).scalar() or 0


def list_responses(
    project_id: str,
    *,
    offset: int,
    limit: int,
    element_id=None,
    mode=None,
    start=None,
    end=None,
    session_factory=None,
) -> List[Dict[str, Any]]:
    if limit <= 0:
        return []
    with get_db_session(session_factory) as session:
        rows = session.execute(
            select(responses)
            .where(*_filters(project_id, element_id, mode, start, end))
            .order_by(desc(responses.c.created_at))
            .offset(offset)
            .limit(limit)
        ).all()
    return [serialize_response(row) for row in rows]


def find_latest_for_user(project_id: str, element_id: str, end_user_id: str, *, session_factory=None) -> Optional[Dict[str, Any]]:
    with get_db_session(session_factory) as session:
        row = session.execute(
            select(responses)
            .where(
                responses.c.project_id == project_id,
                responses.c.element_id == element_id,
                responses.c.end_user_id == end_user_id,
            )
            .order_by(desc(responses.c.created_at))
            .limit(1)
        ).first()
    return serialize_response(row) if row else None
