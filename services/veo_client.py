"""Thin client for the Gemini Veo long-running video generation API."""
from __future__ import annotations

import base64
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from config import VEO_API_BASE_URL, VEO_MAX_WAIT_S, VEO_POLL_INTERVAL_S, VEO_TIMEOUT_S
from observability.logger import get_logger

LOGGER = get_logger("veo_batch.services.veo_client")

_HTTP_CLIENT_LIMITS = httpx.Limits(
    max_connections=16,
    max_keepalive_connections=8,
    keepalive_expiry=120.0,
)

AUTH_ERROR_REASONS = frozenset(
    {
        "API_KEY_INVALID",
        "API_KEY_EXPIRED",
        "API_KEY_SERVICE_BLOCKED",
        "API_KEY_HTTP_REFERRER_BLOCKED",
        "API_KEY_IP_ADDRESS_BLOCKED",
        "ACCESS_TOKEN_EXPIRED",
    }
)
AUTH_ERROR_STATUSES = frozenset({"UNAUTHENTICATED", "PERMISSION_DENIED"})
# google.rpc.Code values carried by finished operations
AUTH_RPC_CODES = frozenset({7, 16})

PROGRESS_UPLOADING = "Uploading input data..."
PROGRESS_SENDING = "Sending generation request..."
PROGRESS_FINALIZING = "Finalizing download..."

ProgressCallback = Callable[[str], None]


class VeoError(RuntimeError):
    """Base class for failures reported by the generation service."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason


class AuthError(VeoError):
    """The credential is missing, invalid, expired or lacks access."""


class RequestError(VeoError):
    """Any other failure: transport, bad input, generation failure, missing output."""


@dataclass(frozen=True)
class GenerationParams:
    model: str
    aspect_ratio: str
    resolution: str
    prompt: Optional[str] = None
    image_bytes: Optional[bytes] = None
    mime_type: Optional[str] = None

    @classmethod
    def from_job(cls, job: Any) -> "GenerationParams":
        image = getattr(job, "image", None)
        return cls(
            model=_enum_value(job.model),
            aspect_ratio=job.aspect_ratio,
            resolution=job.resolution,
            prompt=job.prompt or None,
            image_bytes=image.data if image else None,
            mime_type=image.mime_type if image else None,
        )

    def to_payload(self) -> Dict[str, Any]:
        instance: Dict[str, Any] = {}
        if self.prompt:
            instance["prompt"] = self.prompt
        if self.image_bytes:
            instance["image"] = {
                "bytesBase64Encoded": base64.b64encode(self.image_bytes).decode("ascii"),
                "mimeType": self.mime_type or "image/png",
            }
        return {
            "instances": [instance],
            "parameters": {
                "aspectRatio": self.aspect_ratio,
                "resolution": self.resolution,
                "sampleCount": 1,
            },
        }


@dataclass(frozen=True)
class Operation:
    """Snapshot of a long-running operation."""

    name: str
    done: bool = False
    error: Optional[Dict[str, Any]] = None
    response: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Operation":
        if not isinstance(payload, dict) or not payload.get("name"):
            raise RequestError("Generation service returned an operation without a name")
        error = payload.get("error")
        response = payload.get("response")
        return cls(
            name=str(payload["name"]),
            done=bool(payload.get("done")),
            error=error if isinstance(error, dict) else None,
            response=response if isinstance(response, dict) else None,
        )


class VeoClient:
    """Submit, poll and resolve Veo operations.

    Requests use an explicit ``api_key`` when one is passed; otherwise
    ``api_key_provider`` is asked at request time. A job pins its key once
    through :meth:`resolve_key` so a later invalidation of the shared
    credential does not strand operations that are already running.
    """

    def __init__(
        self,
        api_key_provider: Callable[[], str],
        *,
        base_url: str = VEO_API_BASE_URL,
        timeout_s: float = VEO_TIMEOUT_S,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key_provider = api_key_provider
        self._base_url = base_url.rstrip("/")
        self._timeout_s = float(timeout_s)
        self._http_client = http_client
        self._lock = threading.Lock()

    def _client(self) -> httpx.Client:
        with self._lock:
            if self._http_client is None:
                timeout = httpx.Timeout(
                    timeout=self._timeout_s,
                    connect=min(20.0, self._timeout_s),
                )
                self._http_client = httpx.Client(
                    timeout=timeout,
                    limits=_HTTP_CLIENT_LIMITS,
                    follow_redirects=True,
                )
            return self._http_client

    def close(self) -> None:
        with self._lock:
            if self._http_client is not None:
                self._http_client.close()
                self._http_client = None

    def resolve_key(self) -> str:
        api_key = (self._api_key_provider() or "").strip()
        if not api_key:
            raise AuthError("API key not found. Please select a key.")
        return api_key

    def _headers(self, api_key: Optional[str] = None) -> Dict[str, str]:
        return {"x-goog-api-key": api_key or self.resolve_key()}

    def submit(self, params: GenerationParams, *, api_key: Optional[str] = None) -> Operation:
        url = f"{self._base_url}/models/{params.model}:predictLongRunning"
        response = self._request(
            "POST", url, json=params.to_payload(), api_key=api_key, resource_is_model=True
        )
        operation = Operation.from_payload(_json_or_error(response))
        LOGGER.info("veo_submitted", extra={"operation": operation.name, "model": params.model})
        return operation

    def poll(self, operation: Operation, *, api_key: Optional[str] = None) -> Operation:
        url = f"{self._base_url}/{operation.name.lstrip('/')}"
        response = self._request("GET", url, api_key=api_key)
        return Operation.from_payload(_json_or_error(response))

    @staticmethod
    def is_done(operation: Operation) -> bool:
        return operation.done

    @staticmethod
    def result(operation: Operation) -> str:
        if operation.error:
            message = str(operation.error.get("message") or "Unknown error during video generation")
            code = operation.error.get("code")
            if code in AUTH_RPC_CODES:
                raise AuthError(message, reason=str(code))
            raise RequestError(message)
        uri = _extract_video_uri(operation.response or {})
        if not uri:
            raise RequestError("No video URI returned from API")
        return uri

    def open_video(self, uri: str) -> httpx.Response:
        """Open a streaming download of a generated video; caller must close it."""

        client = self._client()
        request = client.build_request("GET", uri, headers=self._headers())
        try:
            response = client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise RequestError(f"Network error while downloading video: {exc}") from exc
        if response.status_code >= 400:
            response.read()
            response.close()
            raise classify_http_error(response)
        return response

    def _request(
        self,
        method: str,
        url: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        api_key: Optional[str] = None,
        resource_is_model: bool = False,
    ) -> httpx.Response:
        headers = self._headers(api_key)
        started_at = time.perf_counter()
        try:
            response = self._client().request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise RequestError("Network timeout while calling the generation service") from exc
        except httpx.HTTPError as exc:
            raise RequestError(f"Network error while calling the generation service: {exc}") from exc
        duration_ms = int((time.perf_counter() - started_at) * 1000)
        if response.status_code >= 400:
            error = classify_http_error(response, resource_is_model=resource_is_model)
            LOGGER.warning(
                "veo_request_failed",
                extra={
                    "method": method,
                    "status_code": response.status_code,
                    "reason": error.reason,
                    "auth": isinstance(error, AuthError),
                    "duration_ms": duration_ms,
                },
            )
            raise error
        return response


def classify_http_error(response: httpx.Response, *, resource_is_model: bool = False) -> VeoError:
    """Map an HTTP error response onto AuthError or RequestError.

    A 404 on the model endpoint means the selected key's project has no
    access to the model, so it is treated as a credential problem.
    """

    status_code = response.status_code
    message, status, reasons = _parse_google_error(response)
    message = message or f"HTTP {status_code}"
    reason = next(iter(reasons), None) or status or None
    if status_code in {401, 403}:
        return AuthError(message, status_code=status_code, reason=reason)
    if status in AUTH_ERROR_STATUSES or any(item in AUTH_ERROR_REASONS for item in reasons):
        return AuthError(message, status_code=status_code, reason=reason)
    if status_code == 404 and resource_is_model:
        return AuthError(message, status_code=status_code, reason=reason or "NOT_FOUND")
    return RequestError(message, status_code=status_code, reason=reason)


def generate_video(
    client: VeoClient,
    job: Any,
    on_progress: Optional[ProgressCallback] = None,
    *,
    poll_interval_s: float = VEO_POLL_INTERVAL_S,
    max_wait_s: float = VEO_MAX_WAIT_S,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Run one job to completion and return the generated video uri."""

    def _notify(message: str) -> None:
        if on_progress is not None:
            on_progress(message)

    api_key = client.resolve_key()
    _notify(PROGRESS_UPLOADING)
    params = GenerationParams.from_job(job)
    _notify(PROGRESS_SENDING)
    operation = client.submit(params, api_key=api_key)

    attempts = 0
    while not client.is_done(operation):
        attempts += 1
        elapsed = int(attempts * poll_interval_s)
        if max_wait_s and elapsed > max_wait_s:
            raise RequestError(f"Video generation did not finish within {int(max_wait_s)}s")
        _notify(f"Generating video... ({elapsed}s elapsed)")
        sleep(poll_interval_s)
        operation = client.poll(operation, api_key=api_key)
        LOGGER.info("veo_poll", extra={"job_id": job.id, "attempt": attempts, "done": operation.done})

    _notify(PROGRESS_FINALIZING)
    return client.result(operation)


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value))


def _json_or_error(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise RequestError("Generation service returned invalid JSON", status_code=response.status_code) from exc


def _parse_google_error(response: httpx.Response) -> tuple[str, str, List[str]]:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "").strip(), "", []
    block = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(block, dict):
        return (response.text or "").strip(), "", []
    reasons = [
        str(detail.get("reason"))
        for detail in block.get("details") or []
        if isinstance(detail, dict) and detail.get("reason")
    ]
    return str(block.get("message") or "").strip(), str(block.get("status") or ""), reasons


def _extract_video_uri(response: Dict[str, Any]) -> Optional[str]:
    container = response.get("generateVideoResponse")
    if not isinstance(container, dict):
        container = response
    samples = container.get("generatedSamples") or container.get("generatedVideos") or []
    if not isinstance(samples, list) or not samples or not isinstance(samples[0], dict):
        return None
    video = samples[0].get("video")
    if not isinstance(video, dict):
        return None
    uri = video.get("uri")
    return str(uri) if uri else None


__all__ = [
    "AuthError",
    "GenerationParams",
    "Operation",
    "RequestError",
    "VeoClient",
    "VeoError",
    "classify_http_error",
    "generate_video",
]
