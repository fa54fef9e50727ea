"""Periodic queue scheduler driving idle jobs through the Veo API."""
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, Dict, Optional

from config import MAX_CONCURRENT_JOBS, SCHEDULER_TICK_S
from observability.logger import get_logger, log_transition
from observability.metrics import get_registry
from services.veo_client import AuthError, VeoClient, generate_video

from .auth import AuthGate
from .models import Job, JobStatus, utcnow
from .store import InvalidJobUpdate, JobStore

LOGGER = get_logger("veo_batch.jobs.scheduler")
REGISTRY = get_registry()
PROCESSING_GAUGE = REGISTRY.gauge("jobs.processing")
LAUNCHED_COUNTER = REGISTRY.counter("jobs.launched_total")
COMPLETED_COUNTER = REGISTRY.counter("jobs.completed_total")
FAILED_COUNTER = REGISTRY.counter("jobs.failed_total")
AUTH_COUNTER = REGISTRY.counter("auth.invalidations_total")
DURATION_SUMMARY = REGISTRY.summary("jobs.duration_s")

MESSAGE_INITIALIZING = "Initializing..."
MESSAGE_COMPLETED = "Completed"
MESSAGE_AUTH_FAILED = "API key invalid or expired. Please select a key again."


class QueueScheduler:
    """Launch at most one idle job per tick while honouring a concurrency cap.

    Selection and reservation happen synchronously inside :meth:`tick`; the
    remote call runs on a worker pool so a slow generation never delays the
    next tick.
    """

    def __init__(
        self,
        store: JobStore,
        gate: AuthGate,
        client: Optional[VeoClient] = None,
        *,
        max_concurrent: int = MAX_CONCURRENT_JOBS,
        tick_interval_s: float = SCHEDULER_TICK_S,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._store = store
        self._gate = gate
        self._client = client or VeoClient(gate.require_key)
        self._max_concurrent = max(1, int(max_concurrent))
        self._tick_interval_s = max(0.01, float(tick_interval_s))
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self._max_concurrent, thread_name_prefix="veo-job"
        )
        self._running = False
        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._futures: Dict[str, Future] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def client(self) -> VeoClient:
        return self._client

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    def start(self) -> None:
        if not self._gate.is_ready():
            raise AuthError("API key not found. Please select a key.")
        with self._state_lock:
            if self._running:
                return
            self._running = True
        LOGGER.info("queue_started", extra={"max_concurrent": self._max_concurrent})

    def pause(self) -> None:
        with self._state_lock:
            if not self._running:
                return
            self._running = False
        LOGGER.info("queue_paused")

    def toggle(self) -> bool:
        if self.is_running:
            self.pause()
        else:
            self.start()
        return self.is_running

    def tick(self) -> Optional[Job]:
        """Run one scheduling decision and return the job it launched, if any."""

        with self._tick_lock:
            if not self.is_running or not self._gate.is_ready():
                return None
            if self._store.count(JobStatus.PROCESSING) >= self._max_concurrent:
                return None
            candidate = self._store.first(JobStatus.IDLE)
            if candidate is None:
                return None
            job = self._store.update(
                candidate.id,
                expected_status=JobStatus.IDLE,
                status=JobStatus.PROCESSING,
                started_at=utcnow(),
                progress_message=MESSAGE_INITIALIZING,
            )
            if job is None:
                # removed between selection and reservation
                return None
            LAUNCHED_COUNTER.inc()
            self._refresh_gauge()
            log_transition(LOGGER, job_id=job.id, status=job.status.value, model=job.model.value)
            future = self._executor.submit(self.process, job)
            with self._state_lock:
                self._futures[job.id] = future
            future.add_done_callback(lambda _f, job_id=job.id: self._forget(job_id))
            return job

    def process(self, job: Job) -> None:
        """Drive one reserved job to a terminal state."""

        try:
            self._run_job(job)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("job_finish_failed", extra={"job_id": job.id, "error": str(exc)})
            self._release(job, exc)
        finally:
            self._refresh_gauge()

    def _run_job(self, job: Job) -> None:
        def _on_progress(message: str) -> None:
            self._store.update(job.id, expected_status=JobStatus.PROCESSING, progress_message=message)

        try:
            video_uri = generate_video(self._client, job, _on_progress)
        except AuthError as exc:
            AUTH_COUNTER.inc()
            self._gate.invalidate(exc.reason or exc.message)
            self.pause()
            LOGGER.warning("queue_paused_auth", extra={"job_id": job.id, "error": exc.message})
            self._finish(job, status=JobStatus.FAILED, error=MESSAGE_AUTH_FAILED)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("job_failed", extra={"job_id": job.id, "error": str(exc)})
            self._finish(job, status=JobStatus.FAILED, error=str(exc) or "Unknown error")
        else:
            self._finish(
                job,
                status=JobStatus.COMPLETED,
                video_uri=video_uri,
                progress_message=MESSAGE_COMPLETED,
            )

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        with self._state_lock:
            future = self._futures.get(job_id)
        if future is None:
            job = self._store.get(job_id)
            return bool(job and job.is_terminal)
        done, _ = wait_futures([future], timeout=timeout)
        return bool(done)

    def start_background(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="queue-scheduler", daemon=True)
        self._thread.start()

    def shutdown(self, *, wait: bool = True) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=max(1.0, self._tick_interval_s * 2))
            self._thread = None
        self._executor.shutdown(wait=wait)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "auth_ready": self._gate.is_ready(),
            "max_concurrent": self._max_concurrent,
            "tick_interval_s": self._tick_interval_s,
            "processing": self._store.count(JobStatus.PROCESSING),
            "idle": self._store.count(JobStatus.IDLE),
        }

    def _loop(self) -> None:
        while not self._stop_event.wait(self._tick_interval_s):
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                LOGGER.exception("scheduler_tick_failed")

    def _finish(self, job: Job, *, status: JobStatus, **fields: Any) -> None:
        updated = self._store.update(
            job.id,
            expected_status=JobStatus.PROCESSING,
            status=status,
            finished_at=utcnow(),
            **fields,
        )
        if updated is None:
            LOGGER.info("job_result_discarded", extra={"job_id": job.id, "job_status": status.value})
            return
        if status is JobStatus.COMPLETED:
            COMPLETED_COUNTER.inc()
        else:
            FAILED_COUNTER.inc()
        if updated.started_at and updated.finished_at:
            DURATION_SUMMARY.observe((updated.finished_at - updated.started_at).total_seconds())
        log_transition(LOGGER, job_id=job.id, status=status.value, error=fields.get("error"))

    def _release(self, job: Job, exc: Exception) -> None:
        # a job must never stay processing once its worker is gone
        try:
            self._finish(job, status=JobStatus.FAILED, error=str(exc) or "Unknown error")
        except InvalidJobUpdate:
            LOGGER.exception("job_release_failed", extra={"job_id": job.id})

    def _forget(self, job_id: str) -> None:
        with self._state_lock:
            self._futures.pop(job_id, None)

    def _refresh_gauge(self) -> None:
        PROCESSING_GAUGE.set(float(self._store.count(JobStatus.PROCESSING)))


__all__ = ["QueueScheduler", "MESSAGE_AUTH_FAILED", "MESSAGE_COMPLETED", "MESSAGE_INITIALIZING"]
