"""Ollama LLM client for policy feature analysis.

Uses Ollama's native /api/chat endpoint (not OpenAI-compat) with
think=false and format=json. Input is always anonymized text; the output
is validated into PolicyFeatures.

Failures are raised as ServiceError:
- HTTP 429                       → rate-limited
- HTTP 400/413/415/422           → invalid-input
- timeout, 5xx, malformed output → unavailable
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
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
from src.schemas.session import PolicyFeatures
from src.schemas.submission import ExtractionResult

logger = logging.getLogger(__name__)

SERVICE_NAME = "llm"

ANALYSIS_SYSTEM_PROMPT = """\
You analyse private health insurance policy documents for {jurisdiction}.
Placeholders such as [NAME_1] or [PREMIUM_2] replace personal data; never guess their values.
Reply with a single JSON object and nothing else, using exactly these keys:
  policyType: "hospital" | "extras" | "combined"
  policyTier: "basic" | "bronze" | "silver" | "gold"
  premiumCategory: "under-200" | "200-400" | "400-600" | "over-600"
  excessCategory: "none" | "under-500" | "500-1000" | "over-1000"
  hospitalFeatures: list of snake_case feature ids (e.g. private_hospital, choice_of_doctor)
  extrasFeatures: list of snake_case feature ids (e.g. general_dental, optical, physiotherapy)
  waitingPeriods: object mapping service to period, e.g. {{"hospital_services": "12 months"}}
  exclusions: list of snake_case ids
  conditions: list of snake_case ids
"""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)
_THINK = re.compile(r"<think>.*?</think>", re.DOTALL)


def parse_features(content: str) -> PolicyFeatures:
    """Parse the model reply into PolicyFeatures. Raises ValueError on anything malformed."""
    cleaned = _FENCE.sub("", _THINK.sub("", content)).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        msg = "No JSON object in model output"
        raise ValueError(msg)
    try:
        data = json.loads(cleaned[start:end + 1])
        return PolicyFeatures.model_validate(data)
    except (json.JSONDecodeError, SchemaValidationError) as exc:
        msg = "Model output does not match PolicyFeatures"
        raise ValueError(msg) from exc


class OllamaClient:
    """Async client for Ollama's native /api/chat endpoint."""

    def __init__(self, base_url: str | None = None, model: str | None = None, events: EventBus | None = None) -> None:
        self._events = events or EventBus()
        self._base_url = base_url or settings.llm.ollama_base_url
        self._model = model or settings.llm.analysis_model
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(float(settings.llm.analysis_timeout), connect=10.0),
        )

    async def chat(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        session_id: str | None = None,
        temperature: float = 0.1,
        max_tokens: int | None = None,
    ) -> str:
        """Send a non-streaming chat request in JSON mode and return the raw content.

        Raises:
            ServiceError: classified transport or HTTP failure.
        """
        max_tokens = max_tokens or settings.llm.analysis_max_tokens
        api_messages: list[dict[str, str]] = [
            {"role": "system", "content": system_prompt},
            *messages,
        ]
        prompt_hash = hashlib.md5(system_prompt.encode()).hexdigest()[:8]

        await self._events.emit(SystemEvent(
            event_type=EventType.LLM_REQUEST,
            session_id=session_id,
            data={
                "model": self._model,
                "prompt_hash": prompt_hash,
                "message_count": len(messages),
            },
            source_module="llm.client",
        ))

        start = time.monotonic()
        try:
            response = await self._client.post(
                "/api/chat",
                json={
                    "model": self._model,
                    "messages": api_messages,
                    "stream": False,
                    "think": False,
                    "format": "json",
                    "keep_alive": settings.llm.keep_alive,
                    "options": {
                        "temperature": temperature,
                        "num_predict": max_tokens,
                    },
                },
            )
            response.raise_for_status()
            data: dict[str, Any] = response.json()
            content: str = data["message"]["content"]
        except httpx.HTTPError as exc:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            error = service_error_from(SERVICE_NAME, exc)
            await self._events.emit(SystemEvent(
                event_type=EventType.LLM_ERROR,
                session_id=session_id,
                data={"model": self._model, "kind": error.kind.value, "detail": error.detail, "latency_ms": elapsed_ms},
                source_module="llm.client",
            ))
            logger.error(
                "LLM %s after %dms: session=%s model=%s",
                error.detail,
                elapsed_ms,
                session_id,
                self._model,
            )
            raise error from exc
        except (KeyError, TypeError, ValueError) as exc:
            error = ServiceError(SERVICE_NAME, ServiceErrorKind.UNAVAILABLE, "malformed_response")
            logger.error("LLM returned an unexpected payload: session=%s", session_id)
            raise error from exc

        elapsed_ms = int((time.monotonic() - start) * 1000)
        completion_tokens = data.get("eval_count", 0)
        await self._events.emit(SystemEvent(
            event_type=EventType.LLM_RESPONSE,
            session_id=session_id,
            data={
                "model": self._model,
                "latency_ms": elapsed_ms,
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": completion_tokens,
            },
            source_module="llm.client",
        ))
        logger.info(
            "LLM response: session=%s model=%s latency=%dms tokens=%d",
            session_id,
            self._model,
            elapsed_ms,
            completion_tokens,
        )
        return content

    async def analyze_policy(
        self,
        anonymized_text: str,
        structure: ExtractionResult,
        jurisdiction: str,
        session_id: str,
    ) -> PolicyFeatures:
        """Extract PolicyFeatures from anonymized policy text.

        Malformed model output is reported as `unavailable` so the caller retries.
        """
        user_content = anonymized_text
        if structure.tables:
            rendered = "\n".join(" | ".join(row) for table in structure.tables for row in table)
            user_content = f"{anonymized_text}\n\nTables:\n{rendered}"

        content = await self.chat(
            ANALYSIS_SYSTEM_PROMPT.format(jurisdiction=jurisdiction),
            [{"role": "user", "content": user_content}],
            session_id=session_id,
        )
        try:
            return parse_features(content)
        except ValueError as exc:
            await self._events.emit(SystemEvent(
                event_type=EventType.LLM_ERROR,
                session_id=session_id,
                data={"model": self._model, "kind": ServiceErrorKind.UNAVAILABLE.value, "detail": "malformed_output"},
                source_module="llm.client",
            ))
            logger.warning("LLM output rejected: session=%s reason=%s", session_id, exc)
            raise ServiceError(SERVICE_NAME, ServiceErrorKind.UNAVAILABLE, "malformed_output") from exc

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
