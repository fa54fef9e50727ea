"""In-memory, insertion-ordered job store."""
from __future__ import annotations

import dataclasses
import threading
import uuid
from typing import Any, Dict, List, Optional

from observability.logger import get_logger

from .models import ALLOWED_TRANSITIONS, Job, JobStatus, TERMINAL_STATUSES, utcnow

LOGGER = get_logger("veo_batch.jobs.store")

MUTABLE_FIELDS = frozenset(
    {"status", "started_at", "finished_at", "video_uri", "error", "progress_message"}
)


class JobNotFoundError(KeyError):
    """Raised when an explicit user action targets an unknown job."""


class JobBusyError(RuntimeError):
    """Raised when removing a job that still has a remote operation in flight."""


class InvalidJobUpdate(ValueError):
    """Raised when an update would break the job lifecycle invariants."""


class JobStore:
    """Thread-safe in-memory storage for jobs.

    Every mutation goes through the store lock, so concurrent progress updates
    from several workers are applied one at a time in arrival order. Readers
    always receive copies.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()

    def add(self, job: Job) -> Job:
        if job.status is not JobStatus.IDLE:
            raise ValueError(f"New jobs must be idle, got {job.status.value}")
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = dataclasses.replace(job)
            LOGGER.info("job_added", extra={"job_id": job.id, "input_type": job.input_type.value})
            return dataclasses.replace(job)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return dataclasses.replace(job) if job else None

    def list(self) -> List[Job]:
        with self._lock:
            return [dataclasses.replace(job) for job in self._jobs.values()]

    def snapshot(self, job_id: str) -> Optional[dict]:
        job = self.get(job_id)
        return job.to_dict() if job else None

    def remove(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status is JobStatus.PROCESSING:
                raise JobBusyError(f"Job {job_id} is processing and cannot be removed")
            del self._jobs[job_id]
        LOGGER.info("job_removed", extra={"job_id": job_id})
        return job

    def clear_finished(self) -> List[str]:
        with self._lock:
            removed = [job_id for job_id, job in self._jobs.items() if job.status in TERMINAL_STATUSES]
            for job_id in removed:
                del self._jobs[job_id]
        if removed:
            LOGGER.info("jobs_cleared", extra={"count": len(removed)})
        return removed

    def update(
        self,
        job_id: str,
        *,
        expected_status: Optional[JobStatus] = None,
        **fields: Any,
    ) -> Optional[Job]:
        """Merge ``fields`` into a job atomically.

        Returns the updated copy, or ``None`` when the job is gone or its
        status no longer matches ``expected_status``.
        """

        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise InvalidJobUpdate(f"Fields are not mutable: {', '.join(sorted(unknown))}")
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                LOGGER.debug("job_update_skipped", extra={"job_id": job_id, "reason": "missing"})
                return None
            if expected_status is not None and job.status is not expected_status:
                LOGGER.debug(
                    "job_update_skipped",
                    extra={"job_id": job_id, "reason": "status_mismatch", "job_status": job.status.value},
                )
                return None
            updated = dataclasses.replace(job, **fields)
            _check_update(job, updated)
            self._jobs[job_id] = updated
            return dataclasses.replace(updated)

    def duplicate(self, job_id: str) -> Job:
        with self._lock:
            source = self._jobs.get(job_id)
            if source is None:
                raise JobNotFoundError(job_id)
            clone = Job(
                id=uuid.uuid4().hex,
                prompt=source.prompt,
                input_type=source.input_type,
                model=source.model,
                aspect_ratio=source.aspect_ratio,
                resolution=source.resolution,
                image=source.image,
                created_at=utcnow(),
            )
            self._jobs[clone.id] = clone
        LOGGER.info("job_duplicated", extra={"job_id": clone.id, "source_id": job_id})
        return dataclasses.replace(clone)

    def count(self, status: JobStatus) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.status is status)

    def first(self, status: JobStatus) -> Optional[Job]:
        with self._lock:
            job = next((job for job in self._jobs.values() if job.status is status), None)
            return dataclasses.replace(job) if job else None

    def stats(self) -> Dict[str, int]:
        with self._lock:
            statuses = [job.status for job in self._jobs.values()]
        return {
            "total": len(statuses),
            "completed": statuses.count(JobStatus.COMPLETED),
            "failed": statuses.count(JobStatus.FAILED),
            "pending": statuses.count(JobStatus.IDLE) + statuses.count(JobStatus.PROCESSING),
        }

    def __len__(self) -> int:  # pragma: no cover - trivial
        with self._lock:
            return len(self._jobs)


def _check_update(before: Job, after: Job) -> None:
    if after.status is not before.status and after.status not in ALLOWED_TRANSITIONS[before.status]:
        raise InvalidJobUpdate(f"Cannot move job from {before.status.value} to {after.status.value}")
    if before.status is JobStatus.IDLE and after.status is JobStatus.PROCESSING and after.started_at is None:
        raise InvalidJobUpdate("started_at must be stamped when processing starts")
    if before.started_at is not None and after.started_at != before.started_at:
        raise InvalidJobUpdate("started_at is already set")
    if after.started_at is not None and before.started_at is None and after.status is not JobStatus.PROCESSING:
        raise InvalidJobUpdate("started_at is only set when processing starts")
    if after.video_uri is not None and after.error is not None:
        raise InvalidJobUpdate("A job cannot carry both a result and an error")
    if (after.video_uri is not None or after.error is not None) and after.status not in TERMINAL_STATUSES:
        raise InvalidJobUpdate("Results and errors are only set once the job leaves processing")
    if after.status is JobStatus.COMPLETED and not after.video_uri:
        raise InvalidJobUpdate("Completed jobs require a video uri")
    if after.status is JobStatus.FAILED and not after.error:
        raise InvalidJobUpdate("Failed jobs require an error message")


__all__ = ["InvalidJobUpdate", "JobBusyError", "JobNotFoundError", "JobStore", "MUTABLE_FIELDS"]
