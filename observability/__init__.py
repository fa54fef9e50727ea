"""Observability helpers."""

from .logger import bind_trace_id, clear_trace_id, configure_logging, get_logger, log_transition  # noqa: F401

__all__ = [
    "bind_trace_id",
    "clear_trace_id",
    "configure_logging",
    "get_logger",
    "log_transition",
]
