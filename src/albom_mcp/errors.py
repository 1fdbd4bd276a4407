"""Error types shared across the catalog, payment and execution layers."""

from __future__ import annotations

from typing import Any


class AlbomRuntimeError(Exception):
    """Uniform runtime failure carrying a machine code and an HTTP-like status.

    ``details`` is merged into the ``error`` payload of the failure envelope,
    so anything placed there becomes visible to the calling agent.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}


class CatalogValidationError(ValueError):
    """Raised when the upstream catalog document is malformed."""
