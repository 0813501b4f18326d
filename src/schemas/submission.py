"""Submission variants resolved once at the HTTP boundary.

Usage:
    submission = TextSubmission(content="...")
    await orchestrator.start(session_id, submission, metadata)
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field

from src.schemas.privacy import ConsentChoices


class TextSubmission(BaseModel):
    """Raw or pre-anonymized policy text."""

    kind: Literal["text"] = "text"
    content: str
    filename: str = "anonymized_document.txt"


class FileSubmission(BaseModel):
    """An uploaded PDF / image. OCR happens in the ingest stage."""

    kind: Literal["file"] = "file"
    filename: str
    content_type: str
    data: bytes = Field(repr=False)


Submission = Annotated[TextSubmission | FileSubmission, Field(discriminator="kind")]


class SubmissionMetadata(BaseModel):
    """Request context carried alongside the submission."""

    jurisdiction: str
    consent: ConsentChoices | None = None
    source_ip: str | None = None
    user_agent: str | None = None


class ExtractionResult(BaseModel):
    """Output of the document extraction collaborator."""

    text: str = ""
    tables: list[list[list[str]]] = Field(default_factory=list)
    entities: list[dict[str, str]] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
