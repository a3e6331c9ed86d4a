"""Tests for the HTTP vision analyzer."""

import json

import httpx
import pytest

from capture_service.db.models import Difficulty
from capture_service.errors import AnalysisError, PermanentAnalysisError, TransientAnalysisError
from capture_service.schemas.schemas import AnalysisContext, VisionResult
from capture_service.services.vision import HttpVisionAnalyzer, classify_status

ENDPOINT = "http://vision.test/v1/analyze"


def make_analyzer(handler) -> HttpVisionAnalyzer:
    return HttpVisionAnalyzer(
        endpoint=ENDPOINT,
        api_key="secret-key",
        model_name="gemini",
        model_version="gemini-2.5-flash",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_analyze_success():
    """The request carries the image and context; the result is normalized."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "category": "LANDMARK",
                "confidence": 1.4,
                "tags": ["Bridge", " bridge ", "Stone"],
                "difficulty": "legendary",
                "name": "Charles Bridge",
                "landmark_id": "q-1234",
            },
        )

    analyzer = make_analyzer(handler)
    context = AnalysisContext.model_validate({"location": {"latitude": 50.08, "longitude": 14.41}})
    result = await analyzer.analyze("https://bucket.s3.amazonaws.com/captures/1.jpg", context)
    await analyzer.aclose()

    assert seen["auth"] == "Bearer secret-key"
    assert seen["body"]["image_url"] == "https://bucket.s3.amazonaws.com/captures/1.jpg"
    assert seen["body"]["context"]["location"] == {"latitude": 50.08, "longitude": 14.41}

    assert isinstance(result, VisionResult)
    assert result.confidence == 1.0
    assert result.tags == ["bridge", "stone"]
    assert result.difficulty == Difficulty.MEDIUM
    assert result.schema_version == 1
    assert result.to_storage()["landmark_id"] == "q-1234"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, retryable",
    [(408, True), (429, True), (500, True), (503, True), (400, False), (404, False), (415, False)],
)
async def test_http_error_classification(status_code, retryable):
    analyzer = make_analyzer(lambda request: httpx.Response(status_code, json={"error": "nope"}))

    with pytest.raises(AnalysisError) as exc_info:
        await analyzer.analyze("https://example.com/a.jpg")

    assert exc_info.value.retryable is retryable
    assert str(status_code) in exc_info.value.message
    assert "nope" in exc_info.value.message


@pytest.mark.asyncio
async def test_error_body_overrides_classification():
    """An explicit `retryable` flag from the analyzer wins over the status code."""
    analyzer = make_analyzer(lambda request: httpx.Response(400, json={"retryable": True}))
    with pytest.raises(AnalysisError) as exc_info:
        await analyzer.analyze("https://example.com/a.jpg")
    assert exc_info.value.retryable is True

    analyzer = make_analyzer(lambda request: httpx.Response(503, json={"retryable": False}))
    with pytest.raises(AnalysisError) as exc_info:
        await analyzer.analyze("https://example.com/a.jpg")
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_transport_failures_are_transient():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    for handler in (refuse, slow):
        with pytest.raises(TransientAnalysisError):
            await make_analyzer(handler).analyze("https://example.com/a.jpg")


@pytest.mark.asyncio
async def test_malformed_response_is_permanent():
    analyzer = make_analyzer(lambda request: httpx.Response(200, content=b"<html>oops</html>"))
    with pytest.raises(PermanentAnalysisError):
        await analyzer.analyze("https://example.com/a.jpg")

    analyzer = make_analyzer(lambda request: httpx.Response(200, json=["not", "an", "object"]))
    with pytest.raises(PermanentAnalysisError):
        await analyzer.analyze("https://example.com/a.jpg")


def test_classify_status():
    assert classify_status(425) is True
    assert classify_status(502) is True
    assert classify_status(401) is False
    assert classify_status(422) is False


def test_stored_result_without_version_loads_as_v1():
    result = VisionResult.from_storage({"category": "PLANT", "confidence": 0.3})
    assert result.schema_version == 1
    assert VisionResult.from_storage(None) is None


def test_single_tag_string_from_analyzer():
    """A bare string tag is one tag, not one tag per letter."""
    assert VisionResult.model_validate({"tags": "Car"}).tags == ["car"]
    assert VisionResult.model_validate({"tags": None}).tags == []

    with pytest.raises(ValueError):
        VisionResult.model_validate({"tags": {"car": 0.9}})


@pytest.mark.asyncio
async def test_analyzer_single_tag_string():
    analyzer = make_analyzer(lambda request: httpx.Response(200, json={"category": "VEHICLE", "tags": "car"}))
    result = await analyzer.analyze("https://example.com/a.jpg")
    assert result.tags == ["car"]
