"""
Internal endpoints for the site's own embedded SDK.

Guarded by the strict same-site origin check; the project is resolved
from a server-side key and never from the browser.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from gotcha.api.dependencies import Admission, get_admission, require_same_site
from gotcha.core.errors import InternalError, InvalidApiKeyError, ValidationError
from gotcha.features.api_keys.service import hash_api_key
from gotcha.features.responses.service import find_latest_for_user

router = APIRouter(prefix="/api/v1/internal", tags=["internal"], dependencies=[Depends(require_same_site)])


@router.get("/responses/check")
def check_response(
    element_id: Optional[str] = Query(None, alias="elementId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    admission: Admission = Depends(get_admission),
):
    if not admission.internal_api_key:
        raise InternalError("SDK not configured")

    record = admission.authenticator.store.find_active(hash_api_key(admission.internal_api_key))
    if record is None:
        raise InvalidApiKeyError("Invalid API key")

    if not element_id or not user_id:
        raise ValidationError("elementId and userId are required")

    existing = find_latest_for_user(
        record.project_id, element_id, user_id, session_factory=admission.session_factory
    )
    if existing is None:
        return {"exists": False}
    return {"exists": True, "response": existing}
