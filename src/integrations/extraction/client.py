"""Async httpx client for the document text-extraction (OCR) service.

Two calls, both returning ExtractionResult or raising ServiceError:
- POST {base_url}/v1/extract    multipart file → text, tables, entities
- POST {base_url}/v1/structure  anonymized text → tables, entities

Only anonymized text is ever sent to /v1/structure. Raw uploads reach
/v1/extract, which is the OCR step that produces the text to anonymize.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from pydantic import ValidationError as SchemaValidationError

from src.config import settings
from src.errors import ServiceError
from src.events.bus import EventBus
from src.integrations.http import service_error_from
from src.models.enums import ServiceErrorKind
from src.schemas.events import EventType, SystemEvent
from src.schemas.submission import ExtractionResult

logger = logging.getLogger(__name__)

SERVICE_NAME = "extraction"


class ExtractionClient:
    """Thin async wrapper around the extraction service.

    Auth: Bearer token (optional).
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._events = events or EventBus()
        self._base_url = (base_url or settings.extraction.extraction_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.extraction.extraction_api_key
        self._timeout = httpx.Timeout(float(timeout or settings.extraction.extraction_timeout), connect=5.0)

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    async def extract(self, data: bytes, filename: str, content_type: str, session_id: str) -> ExtractionResult:
        """OCR an uploaded document into text."""
        return await self._post(
            "/v1/extract",
            session_id,
            operation="extract",
            files={"file": (filename, data, content_type)},
        )

    async def extract_structure(self, anonymized_text: str, session_id: str) -> ExtractionResult:
        """Tables and entities from already-anonymized text."""
        return await self._post(
            "/v1/structure",
            session_id,
            operation="structure",
            json={"text": anonymized_text},
        )

    async def _post(self, path: str, session_id: str, operation: str, **kwargs: Any) -> ExtractionResult:
        await self._events.emit(SystemEvent(
            event_type=EventType.EXTRACTION_REQUEST,
            session_id=session_id,
            data={"operation": operation},
            source_module="integrations.extraction.client",
        ))

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(f"{self._base_url}{path}", headers=self._headers, **kwargs)
                response.raise_for_status()
                payload: dict[str, Any] = response.json()
        except httpx.HTTPError as exc:
            error = service_error_from(SERVICE_NAME, exc)
            await self._report_error(session_id, operation, error)
            raise error from exc
        except ValueError as exc:
            error = ServiceError(SERVICE_NAME, ServiceErrorKind.UNAVAILABLE, "malformed_response")
            await self._report_error(session_id, operation, error)
            raise error from exc

        try:
            result = ExtractionResult.model_validate(payload)
        except SchemaValidationError as exc:
            error = ServiceError(SERVICE_NAME, ServiceErrorKind.UNAVAILABLE, "malformed_response")
            await self._report_error(session_id, operation, error)
            raise error from exc

        elapsed_ms = int((time.monotonic() - start) * 1000)
        await self._events.emit(SystemEvent(
            event_type=EventType.EXTRACTION_RESPONSE,
            session_id=session_id,
            data={
                "operation": operation,
                "latency_ms": elapsed_ms,
                "chars": len(result.text),
                "tables": len(result.tables),
                "confidence": result.confidence,
            },
            source_module="integrations.extraction.client",
        ))
        logger.info(
            "Extraction %s: session=%s latency=%dms chars=%d",
            operation,
            session_id,
            elapsed_ms,
            len(result.text),
        )
        return result

    async def _report_error(self, session_id: str, operation: str, error: ServiceError) -> None:
        await self._events.emit(SystemEvent(
            event_type=EventType.EXTRACTION_ERROR,
            session_id=session_id,
            data={"operation": operation, "kind": error.kind.value, "detail": error.detail},
            source_module="integrations.extraction.client",
        ))
        logger.warning(
            "Extraction %s failed: session=%s kind=%s detail=%s",
            operation,
            session_id,
            error.kind.value,
            error.detail,
        )
