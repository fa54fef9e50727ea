"""Data models describing queued video-generation jobs."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from config import DEFAULT_ASPECT_RATIO, DEFAULT_MODEL, DEFAULT_RESOLUTION

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

ASPECT_RATIOS = ("16:9", "9:16")
RESOLUTIONS = ("720p", "1080p")


def utcnow() -> datetime:
    """Return a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(ISO_FORMAT) if value else None


class JobStatus(str, Enum):
    """Lifecycle states for a queued job."""

    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

ALLOWED_TRANSITIONS = {
    JobStatus.IDLE: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class InputType(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class VeoModel(str, Enum):
    FAST = "veo-3.1-fast-generate-preview"
    QUALITY = "veo-3.1-generate-preview"


@dataclass(frozen=True)
class ImageSource:
    """Raw image bytes used as the first frame of an image-to-video job."""

    data: bytes
    mime_type: str
    filename: Optional[str] = None

    def describe(self) -> Dict[str, Any]:
        return {"mime_type": self.mime_type, "filename": self.filename, "size": len(self.data)}


@dataclass
class Job:
    """One user-requested generation task."""

    id: str
    prompt: str = ""
    input_type: InputType = InputType.TEXT
    model: VeoModel = VeoModel(DEFAULT_MODEL)
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    resolution: str = DEFAULT_RESOLUTION
    image: Optional[ImageSource] = None
    status: JobStatus = JobStatus.IDLE
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    video_uri: Optional[str] = None
    error: Optional[str] = None
    progress_message: Optional[str] = None

    @classmethod
    def create(
        cls,
        *,
        prompt: str = "",
        input_type: InputType | str = InputType.TEXT,
        model: VeoModel | str = DEFAULT_MODEL,
        aspect_ratio: str = DEFAULT_ASPECT_RATIO,
        resolution: str = DEFAULT_RESOLUTION,
        image: Optional[ImageSource] = None,
    ) -> "Job":
        """Build a validated idle job with a fresh identifier."""

        try:
            resolved_type = InputType(input_type)
        except ValueError as exc:
            raise ValueError(f"Unsupported input type: {input_type!r}") from exc
        try:
            resolved_model = VeoModel(model)
        except ValueError as exc:
            raise ValueError(f"Unsupported model: {model!r}") from exc
        if aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f"Unsupported aspect ratio: {aspect_ratio!r}")
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Unsupported resolution: {resolution!r}")

        prompt = (prompt or "").strip()
        if resolved_type is InputType.TEXT:
            if not prompt:
                raise ValueError("Prompt is required for Text-to-Video")
            if image is not None:
                raise ValueError("Text-to-Video jobs do not accept an image")
        elif image is None or not image.data:
            raise ValueError("Image is required for Image-to-Video")

        return cls(
            id=uuid.uuid4().hex,
            prompt=prompt,
            input_type=resolved_type,
            model=resolved_model,
            aspect_ratio=aspect_ratio,
            resolution=resolution,
            image=image if resolved_type is InputType.IMAGE else None,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def elapsed_seconds(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.started_at is None:
            return None
        end = self.finished_at or now or utcnow()
        return max(0, int((end - self.started_at).total_seconds()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "created_at": _format_ts(self.created_at),
            "prompt": self.prompt,
            "input_type": self.input_type.value,
            "model": self.model.value,
            "aspect_ratio": self.aspect_ratio,
            "resolution": self.resolution,
            "image": self.image.describe() if self.image else None,
            "started_at": _format_ts(self.started_at),
            "finished_at": _format_ts(self.finished_at),
            "elapsed_s": self.elapsed_seconds(),
            "video_uri": self.video_uri,
            "error": self.error,
            "progress_message": self.progress_message,
        }


__all__ = [
    "ALLOWED_TRANSITIONS",
    "ASPECT_RATIOS",
    "ISO_FORMAT",
    "ImageSource",
    "InputType",
    "Job",
    "JobStatus",
    "RESOLUTIONS",
    "TERMINAL_STATUSES",
    "VeoModel",
    "utcnow",
]
