"""Service layer for the Lean Coffee session core."""

from .errors import (  # noqa: F401
    Busy,
    FieldError,
    Forbidden,
    InvalidArgument,
    InvalidTransition,
    NotFound,
    SessionClosed,
    SessionCoreError,
    StoreUnavailable,
)
from .session_locks import SessionLockRegistry  # noqa: F401

__all__ = [
    "Busy",
    "FieldError",
    "Forbidden",
    "InvalidArgument",
    "InvalidTransition",
    "NotFound",
    "SessionClosed",
    "SessionCoreError",
    "StoreUnavailable",
    "SessionLockRegistry",
]
