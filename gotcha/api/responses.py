"""
SDK response endpoints.

POST runs the full admission pipeline before writing:
API key -> rate limit -> body schema -> idempotency -> write -> usage.
GET lists responses with visibility gated by the organization's plan.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from gotcha.api.dependencies import Admission, get_admission, require_api_key
from gotcha.core.database import get_db_session
from gotcha.core.errors import CORS_HEADERS
from gotcha.core.logging import log_event
from gotcha.features.plans.service import (
    accessible_response_count,
    is_over_limit,
    plan_limit,
    should_show_upgrade_warning,
)
from gotcha.features.responses.service import count_responses, create_response, list_responses
from gotcha.features.usage.service import atomic_increment_usage, get_usage
from gotcha.models.api_key import ApiKeyIdentity
from gotcha.models.response import ResponseMode, SubmitResponseRequest

logger = logging.getLogger("gotcha")

router = APIRouter(prefix="/api/v1/responses", tags=["responses"])


def _cors(response: Response) -> None:
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value


@router.post("", status_code=201)
def submit_response(
    payload: SubmitResponseRequest,
    response: Response,
    identity: ApiKeyIdentity = Depends(require_api_key),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    admission: Admission = Depends(get_admission),
):
    _cors(response)

    # The row and its usage unit commit together or not at all.
    def write():
        with get_db_session(admission.session_factory) as session:
            created = create_response(identity.project_id, payload, idempotency_key=idempotency_key, session=session)
            atomic_increment_usage(identity.organization_id, session=session)
        return created

    if idempotency_key is None:
        result = write()
    else:
        result, duplicate = admission.idempotency.run(idempotency_key, write, scope=identity.project_id)
        if duplicate:
            logger.info("response.duplicate", extra={"project_id": identity.project_id})
            return {**result, "status": "duplicate"}

    log_event(
        "info",
        "response.created",
        request_id=None,
        organization_id=identity.organization_id,
        project_id=identity.project_id,
        event_type="response.create",
        extra={"mode": payload.mode, "element_id": payload.element_id},
    )
    return result


@router.get("")
def get_responses(
    response: Response,
    element_id: Optional[str] = Query(None, alias="elementId"),
    mode: Optional[ResponseMode] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: ApiKeyIdentity = Depends(require_api_key),
    admission: Admission = Depends(get_admission),
):
    _cors(response)
    filters = dict(element_id=element_id, mode=mode, start=start_date, end=end_date)

    total = count_responses(identity.project_id, session_factory=admission.session_factory, **filters)
    accessible = accessible_response_count(identity.plan, total)

    offset = (page - 1) * limit
    take = min(limit, max(0, accessible - offset))
    data = list_responses(
        identity.project_id,
        offset=offset,
        limit=take,
        session_factory=admission.session_factory,
        **filters,
    )

    usage = get_usage(identity.organization_id, session_factory=admission.session_factory)
    used = usage.responses_this_month if usage else 0

    return {
        "data": data,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": accessible,
            "hasMore": page * limit < accessible,
        },
        "usage": {
            "plan": identity.plan,
            "used": used,
            "limit": plan_limit(identity.plan),
            "overLimit": is_over_limit(identity.plan, used),
            "warn": should_show_upgrade_warning(identity.plan, used),
            "hiddenResponses": total - accessible,
        },
    }


@router.options("")
def preflight():
    return Response(status_code=204, headers=CORS_HEADERS)
