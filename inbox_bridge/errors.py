"""
Application error types.

Every error carries a stable machine-readable code and the HTTP status it
maps to when it escapes a request handler.
"""

from typing import Optional


class AppError(Exception):
    """Base class for errors surfaced by the service."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message


class NotFoundError(AppError):
    """Tenant or referenced entity is missing."""

    code = "not_found"
    status_code = 404


class InvalidInputError(AppError):
    """Malformed identifiers, oversized batches, invalid names."""

    code = "invalid_input"
    status_code = 400


class PayloadValidationError(InvalidInputError):
    """Well-formed JSON that does not match the webhook payload schema."""

    status_code = 422


class ExternalCallError(AppError):
    """Messaging provider or bot callback unreachable or non-2xx."""

    code = "external_call_failed"
    status_code = 502


class StorageError(AppError):
    """Underlying database error."""

    code = "storage_error"
    status_code = 500
