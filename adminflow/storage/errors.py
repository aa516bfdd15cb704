from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for driver-level failures raised by record stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(StoreError):
    """Raised when a store cannot be opened or does not answer a ping."""


class CollectionCreateError(StoreError):
    """Raised when a collection or table cannot be created on the target."""


__all__ = ["StoreError", "StoreUnavailable", "CollectionCreateError"]
