"""Flask application exposing the batch video queue via HTTP."""
from __future__ import annotations

import base64
import binascii
import os
import uuid
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, Response, current_app, g, jsonify, request, stream_with_context
from flask_cors import CORS
from jsonschema import Draft7Validator
from jsonschema.exceptions import best_match
from werkzeug.exceptions import HTTPException

from config import GEMINI_API_KEY, MAX_BATCH_QUANTITY, MAX_IMAGE_BYTES, QUEUE_AUTOSTART
from jobs import (
    AuthGate,
    ImageSource,
    InputType,
    Job,
    JobBusyError,
    JobNotFoundError,
    JobStatus,
    JobStore,
    QueueScheduler,
    VeoModel,
)
from jobs.models import ASPECT_RATIOS, RESOLUTIONS
from observability.logger import bind_trace_id, clear_trace_id, get_logger
from observability.metrics import get_registry
from services.veo_client import AuthError, RequestError

load_dotenv()

LOGGER = get_logger("veo_batch.api")

EXTENSION_KEY = "veo_batch"
DOWNLOAD_CHUNK_BYTES = 64 * 1024

JOB_SUBMISSION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "prompt": {"type": "string"},
        "input_type": {"enum": [item.value for item in InputType]},
        "model": {"enum": [item.value for item in VeoModel]},
        "aspect_ratio": {"enum": list(ASPECT_RATIOS)},
        "resolution": {"enum": list(RESOLUTIONS)},
        "quantity": {"type": "integer", "minimum": 1, "maximum": MAX_BATCH_QUANTITY},
        "image": {
            "type": "object",
            "properties": {
                "data": {"type": "string", "minLength": 1},
                "mime_type": {"type": "string", "pattern": "^image/"},
                "filename": {"type": "string"},
            },
            "required": ["data", "mime_type"],
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}
_SUBMISSION_VALIDATOR = Draft7Validator(JOB_SUBMISSION_SCHEMA)


class ApiError(Exception):
    """Exception translated into an HTTP error response."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def create_app(
    *,
    store: Optional[JobStore] = None,
    gate: Optional[AuthGate] = None,
    scheduler: Optional[QueueScheduler] = None,
    start_scheduler: bool = True,
) -> Flask:
    app = Flask(__name__)
    if hasattr(app, "json"):
        app.json.ensure_ascii = False
    CORS(app, resources={r"/api/*": {"origins": "*"}})

    store = store or JobStore()
    gate = gate or AuthGate(GEMINI_API_KEY or os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY"))
    scheduler = scheduler or QueueScheduler(store, gate)
    app.extensions[EXTENSION_KEY] = {"store": store, "gate": gate, "scheduler": scheduler}

    if start_scheduler:
        scheduler.start_background()
        if QUEUE_AUTOSTART and gate.is_ready():
            scheduler.start()

    @app.before_request
    def _bind_request_trace() -> None:
        trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        g.trace_id = trace_id
        bind_trace_id(trace_id)

    @app.after_request
    def _append_trace(response):  # type: ignore[override]
        trace_id = getattr(g, "trace_id", None)
        if trace_id:
            response.headers.setdefault("X-Trace-Id", trace_id)
        clear_trace_id()
        return response

    @app.teardown_request
    def _teardown_trace(_exc):  # type: ignore[override]
        clear_trace_id()

    @app.errorhandler(ApiError)
    def _handle_api_error(exc: ApiError):  # type: ignore[override]
        LOGGER.warning("API error", extra={"error_message": exc.message, "code": exc.status_code})
        return _error_response(exc.message, exc.status_code)

    @app.errorhandler(HTTPException)
    def _handle_http_error(exc: HTTPException):  # type: ignore[override]
        return _error_response(exc.description or exc.name, exc.code or 500)

    @app.errorhandler(Exception)
    def _handle_generic_error(exc: Exception):  # type: ignore[override]
        LOGGER.exception("Unhandled error")
        return _error_response("Internal server error", 500)

    @app.post("/api/jobs")
    def submit_jobs():
        payload, image = _read_submission(request)
        errors = list(_SUBMISSION_VALIDATOR.iter_errors(payload))
        if errors:
            error = best_match(errors)
            location = ".".join(str(part) for part in error.absolute_path)
            raise ApiError(f"{location}: {error.message}" if location else error.message)

        if image is None and isinstance(payload.get("image"), dict):
            image = _decode_image(payload["image"])
        quantity = int(payload.get("quantity", 1))
        created: List[Job] = []
        for _ in range(quantity):
            try:
                job = Job.create(
                    prompt=str(payload.get("prompt", "")),
                    input_type=payload.get("input_type", InputType.TEXT.value),
                    model=payload.get("model", VeoModel.FAST.value),
                    aspect_ratio=payload.get("aspect_ratio", ASPECT_RATIOS[0]),
                    resolution=payload.get("resolution", RESOLUTIONS[0]),
                    image=image,
                )
            except ValueError as exc:
                raise ApiError(str(exc)) from exc
            created.append(_store().add(job))
        LOGGER.info("jobs_submitted", extra={"count": len(created), "input_type": created[0].input_type.value})
        return jsonify({"jobs": [job.to_dict() for job in created], "stats": _store().stats()}), 201

    @app.get("/api/jobs")
    def list_jobs():
        jobs = _store().list()
        return jsonify({"jobs": [job.to_dict() for job in jobs], "stats": _store().stats()})

    @app.get("/api/jobs/<job_id>")
    def get_job(job_id: str):
        snapshot = _store().snapshot(job_id)
        if not snapshot:
            raise ApiError("Job not found", status_code=404)
        return jsonify(snapshot)

    @app.delete("/api/jobs/<job_id>")
    def remove_job(job_id: str):
        try:
            _store().remove(job_id)
        except JobNotFoundError as exc:
            raise ApiError("Job not found", status_code=404) from exc
        except JobBusyError as exc:
            raise ApiError("Job is processing and cannot be removed", status_code=409) from exc
        return jsonify({"removed": job_id, "stats": _store().stats()})

    @app.post("/api/jobs/<job_id>/duplicate")
    def duplicate_job(job_id: str):
        try:
            job = _store().duplicate(job_id)
        except JobNotFoundError as exc:
            raise ApiError("Job not found", status_code=404) from exc
        return jsonify(job.to_dict()), 201

    @app.post("/api/jobs/clear")
    def clear_jobs():
        removed = _store().clear_finished()
        return jsonify({"removed": removed, "stats": _store().stats()})

    @app.get("/api/jobs/<job_id>/video")
    def download_video(job_id: str):
        job = _store().get(job_id)
        if job is None:
            raise ApiError("Job not found", status_code=404)
        if job.status is not JobStatus.COMPLETED or not job.video_uri:
            raise ApiError("Video is not ready", status_code=409)
        try:
            upstream = _scheduler().client.open_video(job.video_uri)
        except AuthError as exc:
            raise ApiError(exc.message, status_code=401) from exc
        except RequestError as exc:
            raise ApiError(exc.message, status_code=502) from exc

        def _stream():
            try:
                yield from upstream.iter_bytes(DOWNLOAD_CHUNK_BYTES)
            finally:
                upstream.close()

        return Response(
            stream_with_context(_stream()),
            mimetype=upstream.headers.get("content-type", "video/mp4"),
            headers={"Content-Disposition": f'attachment; filename="{job.id}.mp4"'},
        )

    @app.get("/api/queue")
    def queue_status():
        return jsonify(_queue_payload())

    @app.post("/api/queue/start")
    def queue_start():
        try:
            _scheduler().start()
        except AuthError as exc:
            raise ApiError(exc.message, status_code=409) from exc
        return jsonify(_queue_payload())

    @app.post("/api/queue/pause")
    def queue_pause():
        _scheduler().pause()
        return jsonify(_queue_payload())

    @app.get("/api/credentials")
    def credentials_status():
        return jsonify(_gate().status())

    @app.post("/api/credentials")
    def select_credentials():
        payload = _require_json(request)
        api_key = payload.get("api_key")
        if not isinstance(api_key, str) or not api_key.strip():
            raise ApiError("Field api_key is required")
        _gate().select(api_key)
        return jsonify(_gate().status())

    @app.get("/api/health")
    def health():
        queue = _queue_payload()
        checks = {
            "credentials": {
                "ok": queue["auth_ready"],
                "message": "API key selected" if queue["auth_ready"] else "API key not selected",
            },
            "scheduler": {
                "ok": True,
                "message": (
                    f"Queue {'running' if queue['running'] else 'paused'}; "
                    f"processing {queue['processing']}/{queue['max_concurrent']}"
                ),
            },
        }
        return jsonify({"ok": True, "checks": checks, "metrics": get_registry().snapshot()})

    return app


def _components() -> Dict[str, Any]:
    return current_app.extensions[EXTENSION_KEY]


def _store() -> JobStore:
    return _components()["store"]


def _gate() -> AuthGate:
    return _components()["gate"]


def _scheduler() -> QueueScheduler:
    return _components()["scheduler"]


def _queue_payload() -> Dict[str, Any]:
    payload = _scheduler().status()
    payload["stats"] = _store().stats()
    return payload


def _error_response(message: str, status_code: int):
    trace_id = getattr(g, "trace_id", None)
    return (
        jsonify({"error": {"message": message, "code": status_code, "trace_id": trace_id}}),
        status_code,
    )


def _require_json(req) -> Dict[str, Any]:
    try:
        data = req.get_json(force=True)  # type: ignore[no-any-return]
    except Exception as exc:  # noqa: BLE001
        raise ApiError("Invalid JSON") from exc
    if not isinstance(data, dict):
        raise ApiError("Expected a JSON object")
    return data


def _safe_int(value: Any, default: int = 0) -> Any:
    try:
        return int(value)
    except (TypeError, ValueError):
        return value if value not in (None, "") else default


def _read_submission(req) -> Tuple[Dict[str, Any], Optional[ImageSource]]:
    """Accept either a JSON body or a multipart form with an ``image`` file."""

    if not req.mimetype or not req.mimetype.startswith("multipart/"):
        return _require_json(req), None

    payload: Dict[str, Any] = {
        key: value for key, value in req.form.items() if key in JOB_SUBMISSION_SCHEMA["properties"]
    }
    if "quantity" in payload:
        payload["quantity"] = _safe_int(payload["quantity"], default=1)
    upload = req.files.get("image")
    if upload is None or not upload.filename:
        return payload, None
    mime_type = upload.mimetype or ""
    if not mime_type.startswith("image/"):
        raise ApiError("Uploaded file must be an image")
    data = upload.read()
    _check_image_size(data)
    return payload, ImageSource(data=data, mime_type=mime_type, filename=upload.filename)


def _decode_image(raw: Dict[str, Any]) -> ImageSource:
    encoded = str(raw["data"])
    # Разрешаем data URL вида "data:image/png;base64,..."
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ApiError("image.data must be valid base64") from exc
    _check_image_size(data)
    return ImageSource(data=data, mime_type=str(raw["mime_type"]), filename=raw.get("filename"))


def _check_image_size(data: bytes) -> None:
    if not data:
        raise ApiError("Image is empty")
    if len(data) > MAX_IMAGE_BYTES:
        raise ApiError(f"Image exceeds {MAX_IMAGE_BYTES} bytes", status_code=413)
