from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the document store cannot complete an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DocumentNotFound(StoreError):
    """Raised by update() when the target document does not exist."""


__all__ = ["StoreError", "DocumentNotFound"]
