from __future__ import annotations

from typing import Any, Dict, Optional


class CacheError(Exception):
    """Base class for failures of the shared TTL cache."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheUnavailableError(CacheError):
    """Raised when the cache cannot be reached or a command times out."""


class CacheSerializationError(CacheError):
    """Raised when a value cannot be encoded or a stored payload is corrupt."""


__all__ = ["CacheError", "CacheUnavailableError", "CacheSerializationError"]
