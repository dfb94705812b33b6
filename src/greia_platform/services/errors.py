"""Exception hierarchy for the matching and commission engine.

Authoritative-state errors (invalid transition, stale state, commission
invariant) propagate to the caller and block the operation. Downstream
fan-out failures are caught by the fan-out coordinator and never propagate.
"""

from typing import Any


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


class NotFoundError(EngineError):
    """A request, engagement or candidate does not exist."""


class PermissionDeniedError(EngineError):
    """The actor is not a party to the engagement or request."""


class InvalidTransitionError(EngineError):
    """Raised when an engagement state transition is not allowed."""

    def __init__(self, current_status, event, reason: str):
        self.current_status = current_status
        self.event = event
        self.reason = reason
        super().__init__(
            f"Invalid transition: {event.value} from {current_status.value}: {reason}",
            {"current_status": current_status.value, "event": event.value},
        )


class StaleStateError(EngineError):
    """Optimistic-concurrency conflict: persisted state moved under the caller.

    The caller should re-read current state before deciding whether to retry.
    """

    retryable = True

    def __init__(self, entity: str, entity_id: str, expected, actual=None):
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale {entity} state for {entity_id}: expected {expected}, found {actual}",
            {"entity": entity, "id": entity_id, "expected": expected, "actual": actual},
        )


class CommissionInvariantViolation(EngineError):
    """Shares do not reconcile to the effective fee. A programming defect."""


class InvalidCommissionOverride(EngineError, ValueError):
    """A caller-supplied override or final value fails validation."""


class IneligibleCandidateError(EngineError):
    """A provider fails the eligibility predicates for a request."""

    def __init__(self, candidate_id: str, failures: list[str]):
        self.candidate_id = candidate_id
        self.failures = failures
        super().__init__(
            f"Candidate {candidate_id} is not eligible: {', '.join(failures)}",
            {"candidate_id": candidate_id, "failures": failures},
        )


class DownstreamEffectFailure(EngineError):
    """A non-authoritative fan-out step failed after state persisted."""

    def __init__(self, kind: str, cause: Exception):
        self.kind = kind
        self.cause = cause
        super().__init__(f"Downstream effect {kind} failed: {cause}", {"kind": kind})


class InvalidRequestError(EngineError, ValueError):
    """A request payload is inconsistent with its request type or state."""
