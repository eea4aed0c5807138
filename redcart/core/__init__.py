"""Core checkout, payment reconciliation and receipt logic."""
from .errors import (
    AppError,
    AuthenticationError,
    ConflictError,
    InternalError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

__all__ = [
    "AppError",
    "AuthenticationError",
    "ConflictError",
    "InternalError",
    "NotFoundError",
    "UpstreamError",
    "ValidationError",
]
