"""
gotcha/models/api_key.py

Identity and decision models produced by API key authentication.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class ApiKeyRecord(BaseModel):
    """Active key row joined with its project, organization and plan."""
    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    organization_id: str
    plan: str = "FREE"
    allowed_domains: List[str] = []
    revoked_at: Optional[datetime] = None


class ApiKeyIdentity(BaseModel):
    """
    Resolved caller identity.

    Never carries the plaintext credential. An empty allowed_domains
    list means any origin is accepted.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    organization_id: str
    plan: str
    allowed_domains: List[str] = []


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    status: int


class AuthResult(BaseModel):
    """Either success with an identity or failure with an error."""
    model_config = ConfigDict(frozen=True)

    success: bool
    identity: Optional[ApiKeyIdentity] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def ok(cls, identity: ApiKeyIdentity) -> "AuthResult":
        return cls(success=True, identity=identity)

    @classmethod
    def fail(cls, code: str, message: str, status: int) -> "AuthResult":
        return cls(success=False, error=ErrorInfo(code=code, message=message, status=status))


class IssuedApiKey(BaseModel):
    """Returned once at creation; the only time the plaintext key is visible."""
    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    key: str
    key_prefix: str
    allowed_domains: List[str] = []
    created_at: datetime
