from __future__ import annotations

import base64
import json
import sys
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from jobs.models import ImageSource, InputType, Job, VeoModel  # noqa: E402
from services.veo_client import (  # noqa: E402
    AuthError,
    GenerationParams,
    Operation,
    RequestError,
    VeoClient,
    classify_http_error,
    generate_video,
)

BASE_URL = "https://veo.test/v1beta"
OPERATION_NAME = "models/veo-3.1-fast-generate-preview/operations/op-123"
VIDEO_URI = "https://veo.test/v1beta/files/abc:download?alt=media"


def _done_payload(uri: str = VIDEO_URI) -> dict:
    return {
        "name": OPERATION_NAME,
        "done": True,
        "response": {"generateVideoResponse": {"generatedSamples": [{"video": {"uri": uri}}]}},
    }


def _google_error(status_code: int, message: str, status: str, reason: str = "") -> httpx.Response:
    error: dict = {"code": status_code, "message": message, "status": status}
    if reason:
        error["details"] = [{"@type": "type.googleapis.com/google.rpc.ErrorInfo", "reason": reason}]
    return httpx.Response(status_code, json={"error": error})


def _make_client(handler: Callable[[httpx.Request], httpx.Response], api_key: str = "test-key") -> VeoClient:
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return VeoClient(lambda: api_key, base_url=BASE_URL, http_client=http_client)


def test_submit_text_job_builds_request():
    captured: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"name": OPERATION_NAME})

    client = _make_client(_handler)
    job = Job.create(prompt="a paper boat in the rain", aspect_ratio="9:16", resolution="1080p")

    operation = client.submit(GenerationParams.from_job(job))

    assert operation == Operation(name=OPERATION_NAME)
    request = captured[0]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE_URL}/models/veo-3.1-fast-generate-preview:predictLongRunning"
    assert request.headers["x-goog-api-key"] == "test-key"
    body = json.loads(request.content)
    assert body == {
        "instances": [{"prompt": "a paper boat in the rain"}],
        "parameters": {"aspectRatio": "9:16", "resolution": "1080p", "sampleCount": 1},
    }


def test_submit_image_job_encodes_base64():
    captured: List[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(200, json={"name": OPERATION_NAME})

    client = _make_client(_handler)
    job = Job.create(
        input_type=InputType.IMAGE,
        model=VeoModel.QUALITY,
        image=ImageSource(data=b"\x89PNG-bytes", mime_type="image/png"),
    )

    client.submit(GenerationParams.from_job(job))

    instance = captured[0]["instances"][0]
    assert "prompt" not in instance
    assert instance["image"]["mimeType"] == "image/png"
    assert base64.b64decode(instance["image"]["bytesBase64Encoded"]) == b"\x89PNG-bytes"


def test_missing_key_raises_auth_error_without_request():
    def _handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("request should not be sent")

    client = _make_client(_handler, api_key="")
    job = Job.create(prompt="hello")

    with pytest.raises(AuthError):
        client.submit(GenerationParams.from_job(job))


@pytest.mark.parametrize(
    "response, resource_is_model, expected",
    [
        (_google_error(400, "API key not valid.", "INVALID_ARGUMENT", "API_KEY_INVALID"), False, AuthError),
        (_google_error(401, "Request had invalid credentials.", "UNAUTHENTICATED"), False, AuthError),
        (_google_error(403, "Permission denied.", "PERMISSION_DENIED"), False, AuthError),
        (_google_error(404, "Requested entity was not found.", "NOT_FOUND"), True, AuthError),
        (_google_error(404, "Requested entity was not found.", "NOT_FOUND"), False, RequestError),
        (_google_error(400, "Prompt is too long.", "INVALID_ARGUMENT"), True, RequestError),
        (_google_error(429, "Quota exceeded.", "RESOURCE_EXHAUSTED"), True, RequestError),
        (httpx.Response(502, text="Bad gateway"), True, RequestError),
    ],
)
def test_classify_http_error(response, resource_is_model, expected):
    error = classify_http_error(response, resource_is_model=resource_is_model)

    assert type(error) is expected
    assert error.status_code == response.status_code
    assert error.message


def test_error_message_is_taken_from_google_payload():
    def _handler(request: httpx.Request) -> httpx.Response:
        return _google_error(400, "Prompt is too long.", "INVALID_ARGUMENT")

    client = _make_client(_handler)

    with pytest.raises(RequestError) as excinfo:
        client.submit(GenerationParams.from_job(Job.create(prompt="x")))

    assert str(excinfo.value) == "Prompt is too long."


def test_transport_error_becomes_request_error():
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _make_client(_handler)

    with pytest.raises(RequestError):
        client.submit(GenerationParams.from_job(Job.create(prompt="x")))


def test_result_extracts_uri_and_reports_failures():
    assert VeoClient.result(Operation.from_payload(_done_payload())) == VIDEO_URI

    with pytest.raises(RequestError, match="No video URI returned from API"):
        VeoClient.result(Operation(name=OPERATION_NAME, done=True, response={}))

    with pytest.raises(RequestError, match="Content blocked"):
        VeoClient.result(
            Operation(name=OPERATION_NAME, done=True, error={"code": 3, "message": "Content blocked"})
        )

    with pytest.raises(AuthError):
        VeoClient.result(
            Operation(name=OPERATION_NAME, done=True, error={"code": 16, "message": "Key expired"})
        )


def test_operation_without_name_is_rejected():
    with pytest.raises(RequestError):
        Operation.from_payload({"done": False})


def test_generate_video_polls_until_done():
    requests: List[httpx.Request] = []
    poll_payloads = [{"name": OPERATION_NAME, "done": False}, _done_payload()]

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "POST":
            return httpx.Response(200, json={"name": OPERATION_NAME, "done": False})
        return httpx.Response(200, json=poll_payloads.pop(0))

    client = _make_client(_handler)
    messages: List[str] = []
    sleeps: List[float] = []
    job = Job.create(prompt="timelapse of clouds")

    uri = generate_video(client, job, messages.append, poll_interval_s=5, sleep=sleeps.append)

    assert uri == VIDEO_URI
    assert sleeps == [5, 5]
    assert messages == [
        "Uploading input data...",
        "Sending generation request...",
        "Generating video... (5s elapsed)",
        "Generating video... (10s elapsed)",
        "Finalizing download...",
    ]
    assert [request.method for request in requests] == ["POST", "GET", "GET"]
    assert str(requests[1].url) == f"{BASE_URL}/{OPERATION_NAME}"


def test_generate_video_gives_up_after_max_wait():
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"name": OPERATION_NAME, "done": False})

    client = _make_client(_handler)

    with pytest.raises(RequestError, match="did not finish"):
        generate_video(
            client,
            Job.create(prompt="x"),
            None,
            poll_interval_s=5,
            max_wait_s=12,
            sleep=lambda _delay: None,
        )


def test_generate_video_surfaces_operation_error():
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"name": OPERATION_NAME, "done": True, "error": {"code": 13, "message": "Internal error"}},
        )

    client = _make_client(_handler)

    with pytest.raises(RequestError, match="Internal error"):
        generate_video(client, Job.create(prompt="x"), None, sleep=lambda _delay: None)


def test_open_video_streams_with_key_header():
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-goog-api-key"] == "test-key"
        return httpx.Response(200, content=b"video-bytes", headers={"content-type": "video/mp4"})

    client = _make_client(_handler)

    response = client.open_video(VIDEO_URI)
    try:
        assert b"".join(response.iter_bytes()) == b"video-bytes"
    finally:
        response.close()


def test_result_with_malformed_samples_reports_missing_uri():
    operation = Operation(
        name=OPERATION_NAME,
        done=True,
        response={"generateVideoResponse": {"generatedSamples": {"video": {"uri": VIDEO_URI}}}},
    )

    with pytest.raises(RequestError, match="No video URI returned from API"):
        VeoClient.result(operation)


def test_generate_video_keeps_the_key_it_started_with():
    keys = {"current": "first-key"}
    poll_keys: List[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            keys["current"] = ""
            return httpx.Response(200, json={"name": OPERATION_NAME, "done": False})
        poll_keys.append(request.headers["x-goog-api-key"])
        return httpx.Response(200, json=_done_payload())

    http_client = httpx.Client(transport=httpx.MockTransport(_handler))
    client = VeoClient(lambda: keys["current"], base_url=BASE_URL, http_client=http_client)

    uri = generate_video(client, Job.create(prompt="x"), None, sleep=lambda _delay: None)

    assert uri == VIDEO_URI
    assert poll_keys == ["first-key"]
    with pytest.raises(AuthError):
        client.resolve_key()
