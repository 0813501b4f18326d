"""Request and response bodies of the HTTP surface."""

from __future__ import annotations

from pydantic import Field

from src.models.enums import SessionStatus
from src.schemas.base import ApiModel
from src.schemas.privacy import ConsentChoices


class TextAnalyzeRequest(ApiModel):
    """JSON variant of POST /api/policies/analyze."""

    content: str
    jurisdiction: str | None = None
    consent: ConsentChoices | None = None


class AnalyzeResponse(ApiModel):
    session_id: str
    status: SessionStatus
    estimated_time_seconds: int
    estimated_time: str


class ConsentRequest(ApiModel):
    session_id: str
    consent: ConsentChoices


class KeyedRequest(ApiModel):
    """Anything that needs the session's vault key."""

    session_id: str
    encryption_key: str = Field(repr=False)


class ReportRequest(KeyedRequest):
    include_values: bool = False


class PersonalizeRequest(KeyedRequest):
    text: str
