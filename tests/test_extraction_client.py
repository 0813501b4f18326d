"""Tests for the extraction-service client."""

from __future__ import annotations

import json
from unittest.mock import patch

import httpx
import pytest
from fakes import event_types

from src.errors import ServiceError
from src.integrations.extraction.client import ExtractionClient
from src.models.enums import ServiceErrorKind
from src.schemas.events import EventType

_RealAsyncClient = httpx.AsyncClient


def _mock_transport(handler):
    """Patch the module's AsyncClient so every request goes to `handler`."""

    def factory(**kwargs):
        return _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    return patch("src.integrations.extraction.client.httpx.AsyncClient", factory)


@pytest.fixture
def client() -> ExtractionClient:
    return ExtractionClient(base_url="http://extract.test/", api_key="secret", timeout=5)


class TestExtract:
    @pytest.mark.asyncio()
    async def test_uploads_file(self, client: ExtractionClient, emitted) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"text": "Hospital cover", "confidence": 0.92})

        with _mock_transport(handler):
            result = await client.extract(b"%PDF-1.7", "policy.pdf", "application/pdf", "sess-1")

        assert result.text == "Hospital cover"
        assert result.confidence == 0.92
        request = seen[0]
        assert str(request.url) == "http://extract.test/v1/extract"
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        assert b"policy.pdf" in request.content
        assert event_types(emitted) == [EventType.EXTRACTION_REQUEST, EventType.EXTRACTION_RESPONSE]

    @pytest.mark.asyncio()
    async def test_no_auth_header_without_key(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"text": "x"})

        with _mock_transport(handler):
            await ExtractionClient(base_url="http://extract.test", api_key="").extract(b"x", "a.png", "image/png", "s")
        assert "Authorization" not in seen[0].headers


class TestExtractStructure:
    @pytest.mark.asyncio()
    async def test_sends_anonymized_text(self, client: ExtractionClient) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/structure"
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"tables": [[["Excess", "$500"]]], "confidence": 0.8})

        with _mock_transport(handler):
            result = await client.extract_structure("Policy for [NAME_1]", "sess-1")

        assert seen == [{"text": "Policy for [NAME_1]"}]
        assert result.tables == [[["Excess", "$500"]]]
        assert result.text == ""


class TestErrors:
    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("status", "kind"),
        [
            (429, ServiceErrorKind.RATE_LIMITED),
            (415, ServiceErrorKind.INVALID_INPUT),
            (422, ServiceErrorKind.INVALID_INPUT),
            (502, ServiceErrorKind.UNAVAILABLE),
        ],
    )
    async def test_status_classification(self, client: ExtractionClient, emitted, status, kind) -> None:
        with _mock_transport(lambda request: httpx.Response(status)):
            with pytest.raises(ServiceError) as exc_info:
                await client.extract(b"x", "a.pdf", "application/pdf", "sess-1")
        assert exc_info.value.kind is kind
        assert exc_info.value.service == "extraction"
        assert EventType.EXTRACTION_ERROR in event_types(emitted)

    @pytest.mark.asyncio()
    async def test_connect_error(self, client: ExtractionClient) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with _mock_transport(handler):
            with pytest.raises(ServiceError) as exc_info:
                await client.extract_structure("text", "sess-1")
        assert exc_info.value.kind is ServiceErrorKind.UNAVAILABLE
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio()
    async def test_timeout(self, client: ExtractionClient) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with _mock_transport(handler):
            with pytest.raises(ServiceError) as exc_info:
                await client.extract_structure("text", "sess-1")
        assert exc_info.value.detail == "timeout"

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("body", [b"<html>oops</html>", b'{"confidence": 7}'])
    async def test_malformed_response(self, client: ExtractionClient, body: bytes) -> None:
        with _mock_transport(lambda request: httpx.Response(200, content=body)):
            with pytest.raises(ServiceError) as exc_info:
                await client.extract_structure("text", "sess-1")
        assert exc_info.value.kind is ServiceErrorKind.UNAVAILABLE
        assert exc_info.value.detail == "malformed_response"
