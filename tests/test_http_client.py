import json

import httpx
import pytest

from capture_app.backend.http_client import AnalysisHttpClient, extract_result
from capture_app.errors import ErrorKind, FrameError, SubmissionError
from capture_app.frames import CapturedFrame, encode_still

from conftest import ANALYSIS_URL, noise_image


@pytest.fixture
def frame() -> CapturedFrame:
    return encode_still(noise_image())


def _client(settings, handler) -> AnalysisHttpClient:
    return AnalysisHttpClient(settings, transport=httpx.MockTransport(handler))


async def test_posts_data_url_as_json(settings, frame):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"age": {"20-29": 0.8}}})

    client = _client(settings, handler)
    result = await client.submit(frame)
    await client.aclose()

    assert seen["method"] == "POST"
    assert seen["url"] == ANALYSIS_URL
    assert seen["body"] == {"image": frame.data_url}
    assert result.data == {"age": {"20-29": 0.8}}
    assert result.status_code == 200


async def test_service_error_carries_detail(settings, frame):
    client = _client(settings, lambda request: httpx.Response(500, json={"error": "model unavailable"}))

    with pytest.raises(SubmissionError) as excinfo:
        await client.submit(frame)
    await client.aclose()

    assert excinfo.value.kind is ErrorKind.SERVICE_ERROR
    assert "model unavailable" in excinfo.value.user_message


async def test_non_json_error_body_uses_text(settings, frame):
    client = _client(settings, lambda request: httpx.Response(502, text="Bad Gateway upstream"))

    with pytest.raises(SubmissionError) as excinfo:
        await client.submit(frame)
    await client.aclose()

    assert excinfo.value.kind is ErrorKind.SERVICE_ERROR
    assert "Bad Gateway upstream" in excinfo.value.user_message


async def test_unparseable_success_body(settings, frame):
    client = _client(settings, lambda request: httpx.Response(200, text="<html>ok</html>"))

    with pytest.raises(SubmissionError) as excinfo:
        await client.submit(frame)
    await client.aclose()

    assert excinfo.value.kind is ErrorKind.RESPONSE_PARSE_FAILURE


async def test_network_failure(settings, frame):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(settings, handler)
    with pytest.raises(SubmissionError) as excinfo:
        await client.submit(frame)
    await client.aclose()

    assert excinfo.value.kind is ErrorKind.NETWORK_FAILURE


async def test_invalid_frame_never_reaches_network(settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"data": {"a": 1}})

    client = _client(settings, handler)
    with pytest.raises(FrameError):
        await client.submit(None)
    await client.aclose()
    assert calls == []


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"data": {"race": "x"}}, {"race": "x"}),
        ({"analysis": {"age": 1}}, {"age": 1}),
        ({"results": {"gender": "f"}}, {"gender": "f"}),
        ({"race": {"a": 0.1}, "age": {"b": 0.2}}, {"race": {"a": 0.1}, "age": {"b": 0.2}}),
    ],
)
def test_extract_result_shapes(body, expected):
    assert extract_result(body) == expected


@pytest.mark.parametrize(
    "body, kind",
    [
        ({"data": {}}, ErrorKind.EMPTY_RESULT),
        ({}, ErrorKind.EMPTY_RESULT),
        ([], ErrorKind.EMPTY_RESULT),
        (None, ErrorKind.EMPTY_RESULT),
        ({"error": "quota exceeded"}, ErrorKind.SERVICE_ERROR),
        ({"message": "Invalid image"}, ErrorKind.SERVICE_ERROR),
    ],
)
def test_extract_result_failures(body, kind):
    with pytest.raises(SubmissionError) as excinfo:
        extract_result(body)
    assert excinfo.value.kind is kind
