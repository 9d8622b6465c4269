"""
Health endpoints for operational monitoring without exposing secrets.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from gotcha.core.database import check_connection

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request):
    """Readiness check: relational store reachable."""
    engine = getattr(request.app.state, "engine", None)
    ok = check_connection(engine)
    return JSONResponse(status_code=200 if ok else 503, content={"ok": ok})
