"""Shared route dependencies and engine-error translation."""

from fastapi import HTTPException

from greia_platform.services.errors import (
    CommissionInvariantViolation,
    EngineError,
    IneligibleCandidateError,
    InvalidCommissionOverride,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StaleStateError,
)
from greia_platform.services.fanout_coordinator import FanoutCoordinator

ERROR_STATUS: dict[type[EngineError], int] = {
    NotFoundError: 404,
    PermissionDeniedError: 403,
    InvalidTransitionError: 409,
    StaleStateError: 409,
    InvalidCommissionOverride: 422,
    InvalidRequestError: 422,
    IneligibleCandidateError: 422,
    CommissionInvariantViolation: 500,
}

_fanout: FanoutCoordinator | None = None


def get_fanout() -> FanoutCoordinator:
    """Dependency: process-wide fan-out coordinator."""
    global _fanout
    if _fanout is None:
        _fanout = FanoutCoordinator()
    return _fanout


def http_error(exc: EngineError) -> HTTPException:
    """Translate an engine error into an HTTPException."""
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    detail = {"error": type(exc).__name__, "message": exc.message, "context": exc.context}
    if isinstance(exc, StaleStateError):
        detail["retryable"] = True
    return HTTPException(status_code=status_code, detail=detail)
