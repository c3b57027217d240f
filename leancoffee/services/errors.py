"""Typed failures raised by the session collaboration core."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class FieldError:
    property_name: str
    error_message: str


class SessionCoreError(Exception):
    """Base class for failures the gateway maps onto the result envelope."""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        validation_errors: Optional[List[FieldError]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.validation_errors = list(validation_errors or [])


class InvalidTransition(SessionCoreError):
    error_code = "INVALID_TRANSITION"
    status_code = 409


class Forbidden(SessionCoreError):
    error_code = "FORBIDDEN"
    status_code = 403


class SessionClosed(SessionCoreError):
    error_code = "SESSION_CLOSED"
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is closed and read-only")
        self.session_id = session_id


class NotFound(SessionCoreError):
    error_code = "NOT_FOUND"
    status_code = 404


class InvalidArgument(SessionCoreError):
    error_code = "VALIDATION_ERROR"
    status_code = 400

    @classmethod
    def for_field(cls, property_name: str, error_message: str) -> "InvalidArgument":
        return cls(
            "Validation failed",
            validation_errors=[FieldError(property_name, error_message)],
        )


class Busy(SessionCoreError):
    error_code = "BUSY"
    status_code = 503

    def __init__(self, session_id: str, timeout: float) -> None:
        super().__init__(
            f"Session {session_id} is busy; lock not acquired within {timeout:g}s"
        )
        self.session_id = session_id


class StoreUnavailable(SessionCoreError):
    error_code = "STORE_UNAVAILABLE"
    status_code = 503


def session_not_found(session_id: str) -> NotFound:
    return NotFound(f"Session {session_id} not found", error_code="SESSION_NOT_FOUND")


def topic_not_found(topic_id: str) -> NotFound:
    return NotFound(f"Topic {topic_id} not found", error_code="TOPIC_NOT_FOUND")


def participant_not_found(session_id: str, user_id: str) -> NotFound:
    return NotFound(
        f"User {user_id} is not a participant of session {session_id}",
        error_code="PARTICIPANT_NOT_FOUND",
    )
