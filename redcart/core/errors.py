"""
Application error taxonomy.

Every error a caller can see derives from ``AppError`` and carries the HTTP
status code the API layer responds with.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base exception for errors surfaced to API callers."""

    status_code: int = 500
    code: str = "internal"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}


class ValidationError(AppError):
    """Malformed input (bad phone number, empty cart, missing payer name)."""

    status_code = 400
    code = "validation"


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthenticated"


class NotFoundError(AppError):
    """Unknown payment, order or receipt for the caller."""

    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    """Business rule violation such as insufficient stock."""

    status_code = 400
    code = "conflict"


class UpstreamError(AppError):
    """Payment provider returned an error or an unusable response."""

    status_code = 502
    code = "upstream"


class InternalError(AppError):
    status_code = 500
    code = "internal"
