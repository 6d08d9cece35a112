"""
Custom exception classes for the GitLab to Azure DevOps migration tool.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import NormalizedError


class MigrationError(Exception):
    """Base exception for migration errors."""

    normalized: NormalizedError | None

    def __init__(self, message: str, *, normalized: NormalizedError | None = None) -> None:
        super().__init__(message)
        self.normalized = normalized


class TransientNetworkError(MigrationError):
    """Raised when a network failure or 5xx response persisted through all retries."""


class RateLimitedError(TransientNetworkError):
    """Raised when the platform kept answering 429 through all retries."""


class AuthorizationError(MigrationError):
    """Raised on missing or rejected credentials (401/403)."""


class NotFoundError(MigrationError):
    """Raised when a resource is required but absent."""


class ConflictError(MigrationError):
    """Raised on a 409 that is not a known idempotent duplicate."""


class ValidationError(MigrationError):
    """Raised when preflight blocks a unit from progressing."""


class ContentTransferError(MigrationError):
    """Raised when fetching or pushing git content fails.

    A partial transfer is not resumable mid-ref: the whole transfer step has to be retried.
    """


class UnsupportedApiVersionError(MigrationError):
    """Raised when the requested Azure DevOps API version is not supported."""


class MigrationCancelledError(MigrationError):
    """Raised between steps after an operator requested cancellation."""


class InvalidTransitionError(MigrationError):
    """Raised when a unit is moved along an edge its status machine does not have."""
