"""Credential readiness gate consulted by the scheduler."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, Optional

from observability.logger import get_logger
from services.veo_client import AuthError

from .models import ISO_FORMAT, utcnow

LOGGER = get_logger("veo_batch.jobs.auth")


class AuthGate:
    """Holds the selected API key and whether it is still trusted."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        self._lock = threading.Lock()
        self._api_key: Optional[str] = None
        self._invalidated_at: Optional[datetime] = None
        self._invalid_reason: Optional[str] = None
        if api_key and api_key.strip():
            self._api_key = api_key.strip()

    def select(self, api_key: str) -> None:
        key = (api_key or "").strip()
        if not key:
            raise ValueError("API key must not be empty")
        with self._lock:
            self._api_key = key
            self._invalidated_at = None
            self._invalid_reason = None
        LOGGER.info("auth_key_selected")

    def is_ready(self) -> bool:
        with self._lock:
            return self._api_key is not None

    def require_key(self) -> str:
        with self._lock:
            if self._api_key is None:
                raise AuthError("API key not found. Please select a key.")
            return self._api_key

    def invalidate(self, reason: Optional[str] = None) -> None:
        with self._lock:
            was_ready = self._api_key is not None
            self._api_key = None
            self._invalidated_at = utcnow()
            self._invalid_reason = reason
        if was_ready:
            LOGGER.warning("auth_invalidated", extra={"reason": reason})

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "ready": self._api_key is not None,
                "invalidated_at": self._invalidated_at.strftime(ISO_FORMAT) if self._invalidated_at else None,
                "reason": self._invalid_reason,
            }


__all__ = ["AuthGate"]
