"""
gotcha/models/response.py

Boundary schemas for SDK response submission and listing.
"""

from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ResponseMode = Literal["feedback", "vote", "poll", "feature-request", "ab"]
VoteType = Literal["up", "down"]

# SDK mode strings -> stored enum values
MODE_MAP = {
    "feedback": "FEEDBACK",
    "vote": "VOTE",
    "poll": "POLL",
    "feature-request": "FEATURE_REQUEST",
    "ab": "AB",
}

VOTE_MAP = {
    "up": "UP",
    "down": "DOWN",
}


class EndUser(BaseModel):
    """End-user metadata; arbitrary extra keys are kept."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None


class SubmitContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, alias="userAgent")

    @field_validator("url")
    @classmethod
    def _valid_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        parts = urlsplit(value)
        if not parts.scheme or not parts.netloc:
            raise ValueError("Invalid url")
        return value


class SubmitResponseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    element_id: str = Field(alias="elementId", min_length=1)
    mode: ResponseMode

    content: Optional[str] = None
    title: Optional[str] = None
    rating: Optional[int] = Field(default=None, ge=1, le=10)
    vote: Optional[VoteType] = None

    poll_options: Optional[List[str]] = Field(default=None, alias="pollOptions", min_length=2, max_length=6)
    poll_selected: Optional[List[str]] = Field(default=None, alias="pollSelected")

    experiment_id: Optional[str] = Field(default=None, alias="experimentId")
    variant: Optional[str] = None

    user: Optional[EndUser] = None
    context: Optional[SubmitContext] = None

    @field_validator("element_id")
    @classmethod
    def _element_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("elementId is required")
        return value

    @model_validator(mode="after")
    def _mode_requirements(self) -> "SubmitResponseRequest":
        if self.mode == "vote" and not self.vote:
            raise ValueError("Vote mode requires a vote (up or down)")
        if self.mode == "poll":
            if not self.poll_options or len(self.poll_options) < 2 or not self.poll_selected:
                raise ValueError("Poll mode requires pollOptions (2-6) and pollSelected")
        if self.mode == "ab" and not self.experiment_id:
            raise ValueError("A/B mode requires experimentId")
        return self

    def end_user_meta(self) -> Dict[str, Any]:
        return self.user.model_dump(exclude_none=True) if self.user else {}
