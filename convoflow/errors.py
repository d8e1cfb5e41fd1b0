from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field


class ConvoflowError(Exception):
    """Base class for errors raised by the orchestration core."""


class TransientError(ConvoflowError):
    """Retryable hiccup (inference backend or network)."""


class FatalError(ConvoflowError):
    """A dependency the turn cannot proceed without is unavailable."""


class PolicyRejection(ConvoflowError):
    """The model refused the request; terminal, never retried."""


class InferenceUnavailable(TransientError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InferenceRejected(PolicyRejection):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConflictError(ConvoflowError):
    """A message with the same turn_seq already exists for the session."""

    def __init__(self, session_id: str, turn_seq: int | None = None) -> None:
        if turn_seq is None:
            message = f"concurrent write detected for session {session_id}"
        else:
            message = f"turn_seq {turn_seq} already exists for session {session_id}"
        super().__init__(message)
        self.session_id = session_id
        self.turn_seq = turn_seq


class ConcurrentTurnError(ConvoflowError):
    """Another turn for the same session committed first; retry once it completes."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"another turn is in progress for session {session_id}; retry once it completes"
        )
        self.session_id = session_id


class StoreUnavailableError(FatalError):
    pass


class StateError(ConvoflowError):
    """Idempotency ledger used out of order (e.g. resolve without begin)."""


class ToolExecutionError(ConvoflowError):
    """
    Raised by action tools. ``retryable=False`` marks business failures that
    retrying cannot fix (bad input, 4xx from the backend).
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class TurnCancelledError(ConvoflowError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"turn for session {session_id} was cancelled by the caller")
        self.session_id = session_id


class ErrorResponse(BaseModel):
    """
    Standard error payload used by the HTTP ingress adapter.

    {
        "error": "conflict",
        "message": "another turn is in progress",
        "code": 409,
        "details": {...}
    }
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    Helper to create an HTTPException with a standardised error body.
    """
    payload = ErrorResponse(
        error=error,
        message=message,
        code=status_code,
        details=details,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump())


def not_found(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_404_NOT_FOUND, error="not_found", message=message, details=details
    )


def service_unavailable(
    message: str, *, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    return http_error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        error="service_unavailable",
        message=message,
        details=details,
    )


__all__ = [
    "ConcurrentTurnError",
    "ConflictError",
    "ConvoflowError",
    "ErrorResponse",
    "FatalError",
    "InferenceRejected",
    "InferenceUnavailable",
    "PolicyRejection",
    "StateError",
    "StoreUnavailableError",
    "ToolExecutionError",
    "TransientError",
    "TurnCancelledError",
    "http_error",
    "not_found",
    "service_unavailable",
]
