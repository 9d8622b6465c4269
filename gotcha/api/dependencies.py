"""
Request admission dependencies.

Route handlers pull the Admission container off app.state and run the
stages in order: API key (format, lookup, origin allow-list), then the
per-key rate limit. Each stage short-circuits by raising an AppError.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request, Response

from gotcha.core.errors import ForbiddenError, RateLimitError
from gotcha.features.api_keys.service import ApiKeyAuthenticator
from gotcha.features.idempotency.service import IdempotencyGuard
from gotcha.features.origin.service import is_origin_allowed_strict
from gotcha.features.ratelimit.service import SlidingWindowRateLimiter, rate_limit_identifier
from gotcha.models.api_key import ApiKeyIdentity


@dataclass
class Admission:
    authenticator: ApiKeyAuthenticator
    rate_limiter: SlidingWindowRateLimiter
    idempotency: IdempotencyGuard
    session_factory: object = None
    app_host: Optional[str] = None
    internal_api_key: Optional[str] = None


def get_admission(request: Request) -> Admission:
    return request.app.state.admission


def require_api_key(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    origin: Optional[str] = Header(None),
    admission: Admission = Depends(get_admission),
) -> ApiKeyIdentity:
    identity = admission.authenticator.require(authorization, origin)

    result = admission.rate_limiter.check(rate_limit_identifier("api", identity.id), identity.plan)
    headers = result.headers()
    if not result.admitted:
        raise RateLimitError("Too many requests", headers=headers)

    for name, value in headers.items():
        response.headers[name] = value
    request.state.rate_limit = result
    request.state.identity = identity
    return identity


def require_same_site(
    request: Request,
    origin: Optional[str] = Header(None),
    admission: Admission = Depends(get_admission),
) -> None:
    """Internal routes: Origin and Host must both be present and match."""
    host = admission.app_host or request.headers.get("host")
    if not is_origin_allowed_strict(origin, host):
        raise ForbiddenError("Cross-origin requests not allowed")
