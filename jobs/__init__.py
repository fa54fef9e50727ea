"""Job queue primitives for batch video generation."""

from .models import ImageSource, InputType, Job, JobStatus, VeoModel  # noqa: F401
from .store import InvalidJobUpdate, JobBusyError, JobNotFoundError, JobStore  # noqa: F401
from .auth import AuthGate  # noqa: F401
from .scheduler import QueueScheduler  # noqa: F401

__all__ = [
    "AuthGate",
    "ImageSource",
    "InputType",
    "InvalidJobUpdate",
    "Job",
    "JobBusyError",
    "JobNotFoundError",
    "JobStatus",
    "JobStore",
    "QueueScheduler",
    "VeoModel",
]
