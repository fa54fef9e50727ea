# -*- coding: utf-8 -*-

import os


def _env_int(name: str, default: int) -> int:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "off", "no"}


# Ключ может прийти как GEMINI_API_KEY, так и как общий API_KEY
GEMINI_API_KEY = str(os.getenv("GEMINI_API_KEY", os.getenv("API_KEY", ""))).strip()
VEO_API_BASE_URL = (
    str(os.getenv("VEO_API_BASE_URL", "")).strip().rstrip("/")
    or "https://generativelanguage.googleapis.com/v1beta"
)
VEO_TIMEOUT_S = max(1, _env_int("VEO_TIMEOUT_S", 60))
VEO_POLL_INTERVAL_S = max(0.1, _env_float("VEO_POLL_INTERVAL_S", 5.0))
# 0 means "poll until the operation is done"
VEO_MAX_WAIT_S = max(0, _env_int("VEO_MAX_WAIT_S", 0))

MAX_CONCURRENT_JOBS = max(1, _env_int("MAX_CONCURRENT_JOBS", 4))
SCHEDULER_TICK_S = max(0.05, _env_float("SCHEDULER_TICK_S", 1.0))
QUEUE_AUTOSTART = _env_bool("QUEUE_AUTOSTART", False)

MAX_BATCH_QUANTITY = max(1, _env_int("MAX_BATCH_QUANTITY", 10))
MAX_IMAGE_BYTES = max(1, _env_int("MAX_IMAGE_BYTES", 20 * 1024 * 1024))

DEFAULT_MODEL = "veo-3.1-fast-generate-preview"
DEFAULT_ASPECT_RATIO = "16:9"
# Безопасное значение по умолчанию для обеих моделей
DEFAULT_RESOLUTION = "720p"
