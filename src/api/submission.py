"""Submission parsing — resolves a request into TextSubmission | FileSubmission once.

Accepted bodies for POST /api/policies/analyze:
- multipart/form-data: `policy` (or `file`) upload, optional `jurisdiction`
  and `consent` (JSON-encoded ConsentChoices)
- application/json: {"content": "...", "jurisdiction": "AU", "consent": {...}}

Everything is validated here (presence, type, size, emptiness) so that a
rejected submission never creates a session.
"""

from __future__ import annotations

import json
import logging
import re

from fastapi import Request
from pydantic import ValidationError as SchemaValidationError
from starlette.datastructures import UploadFile

from src.config import settings
from src.errors import ValidationError
from src.schemas.api import TextAnalyzeRequest
from src.schemas.privacy import ConsentChoices
from src.schemas.submission import FileSubmission, Submission, SubmissionMetadata, TextSubmission

logger = logging.getLogger(__name__)

_JURISDICTION = re.compile(r"[A-Za-z]{2}")


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _too_large() -> ValidationError:
    limit_mb = settings.processing.max_upload_bytes // (1024 * 1024)
    return ValidationError(
        "file_too_large",
        f"File size exceeds the maximum limit of {limit_mb}MB. Please upload a smaller file.",
        "Compress your PDF file or remove unnecessary pages",
    )


def _jurisdiction(value: str | None) -> str:
    if not value:
        return settings.default_jurisdiction
    if not _JURISDICTION.fullmatch(value):
        msg = "Invalid parameter provided. Please check your input."
        raise ValidationError("invalid_jurisdiction", msg, "Use a two-letter country code such as AU or NZ")
    return value.upper()


def _consent(raw: str | None) -> ConsentChoices | None:
    if not raw:
        return None
    try:
        return ConsentChoices.model_validate_json(raw)
    except SchemaValidationError as exc:
        msg = "Invalid consent choices. Please check your input."
        raise ValidationError("invalid_consent", msg) from exc


async def parse_submission(request: Request) -> tuple[Submission, SubmissionMetadata]:
    """Resolve the request body. Raises ValidationError on anything unacceptable."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        submission, jurisdiction, consent = await _parse_multipart(request)
    elif content_type.startswith("application/json"):
        submission, jurisdiction, consent = await _parse_json(request)
    else:
        raise ValidationError(
            "unsupported_media_type",
            "Send a policy document as multipart/form-data or policy text as JSON.",
        )

    metadata = SubmissionMetadata(
        jurisdiction=jurisdiction,
        consent=consent,
        source_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return submission, metadata


async def _parse_multipart(request: Request) -> tuple[FileSubmission, str, ConsentChoices | None]:
    form = await request.form()
    upload = form.get("policy") or form.get("file")
    if not isinstance(upload, UploadFile):
        raise ValidationError("no_file_provided", "Please select a policy document to upload.")

    file_type = (upload.content_type or "").split(";")[0].strip().lower()
    if file_type not in settings.processing.allowed_content_types:
        raise ValidationError(
            "invalid_file_type",
            "Please upload a valid PDF or image file. Other file types are not supported.",
            "Convert your document to PDF if necessary",
        )

    # Read one byte past the ceiling so an oversize file is detected without buffering more
    limit = settings.processing.max_upload_bytes
    data = await upload.read(limit + 1)
    if len(data) > limit:
        raise _too_large()
    if not data:
        raise ValidationError("empty_file", "The uploaded file is empty. Please try uploading again.")

    jurisdiction = form.get("jurisdiction")
    consent = form.get("consent")
    submission = FileSubmission(
        filename=upload.filename or "policy",
        content_type=file_type,
        data=data,
    )
    return (
        submission,
        _jurisdiction(jurisdiction if isinstance(jurisdiction, str) else None),
        _consent(consent if isinstance(consent, str) else None),
    )


async def _parse_json(request: Request) -> tuple[TextSubmission, str, ConsentChoices | None]:
    try:
        body = await request.json()
        payload = TextAnalyzeRequest.model_validate(body)
    except (json.JSONDecodeError, UnicodeDecodeError, SchemaValidationError) as exc:
        raise ValidationError(
            "invalid_request_format",
            "Invalid request format. Please check your input.",
            'Send {"content": "<policy text>"}',
        ) from exc

    if not payload.content.strip():
        raise ValidationError("no_content_provided", "Please provide the policy text to analyze.")
    if len(payload.content.encode()) > settings.processing.max_upload_bytes:
        raise _too_large()

    return TextSubmission(content=payload.content), _jurisdiction(payload.jurisdiction), payload.consent
