"""Eligibility Filter: hard predicates a provider must pass for a request.

Pure-function module. NO database access.

Predicates (all must hold):
    - verified and active
    - region: served regions contain the request region, or a wildcard tag
      that subsumes it (e.g. "Dublin" covers "North Dublin")
    - specialization: contains the request category, when the request type
      requires it
    - type thresholds: minimum volume counter and minimum rating

An empty result is a valid outcome, never an error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from greia_platform.services.request_policies import RequestPolicy

# Predicate names reported for excluded candidates
NOT_VERIFIED = "not_verified"
INACTIVE = "inactive"
REGION = "region"
SPECIALIZATION = "specialization"
MIN_VOLUME = "min_volume"
MIN_RATING = "min_rating"
SELF_MATCH = "self_match"


def _normalize(values: Iterable[str] | None) -> set[str]:
    return {v.strip().lower() for v in (values or []) if v and v.strip()}


def covers_region(
    served_regions: Iterable[str] | None,
    region: str,
    wildcard_map: dict[str, set[str]] | None = None,
) -> bool:
    """True if the served regions cover the request region directly or via a wildcard."""
    served = _normalize(served_regions)
    target = region.strip().lower()
    if target in served:
        return True
    for tag in served:
        if target in (wildcard_map or {}).get(tag, ()):
            return True
    return False


@dataclass
class EligibilityResult:
    """Eligible candidates plus the failed predicates of every excluded one."""

    eligible: list = field(default_factory=list)
    excluded: dict[str, list[str]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.eligible


class EligibilityFilter:
    """Applies a request type's eligibility predicates to candidate profiles."""

    def __init__(self, policy: RequestPolicy, wildcard_map: dict[str, set[str]] | None = None):
        self.policy = policy
        self.wildcard_map = wildcard_map or {}

    def failures(self, request, candidate) -> list[str]:
        """Return the names of every predicate the candidate fails (empty = eligible)."""
        failed: list[str] = []
        if candidate.id == request.requester_id:
            failed.append(SELF_MATCH)
        if not candidate.verified:
            failed.append(NOT_VERIFIED)
        if not candidate.active:
            failed.append(INACTIVE)
        if not covers_region(candidate.regions, request.region, self.wildcard_map):
            failed.append(REGION)
        if self.policy.requires_specialization:
            if request.category.strip().lower() not in _normalize(candidate.specializations):
                failed.append(SPECIALIZATION)
        if self.policy.min_volume:
            volume = getattr(candidate, self.policy.volume_counter, 0) or 0
            if volume < self.policy.min_volume:
                failed.append(MIN_VOLUME)
        if self.policy.min_rating:
            if (candidate.rating or 0.0) < self.policy.min_rating:
                failed.append(MIN_RATING)
        return failed

    def evaluate(self, request, candidates: Iterable) -> EligibilityResult:
        result = EligibilityResult()
        for candidate in candidates:
            failed = self.failures(request, candidate)
            if failed:
                result.excluded[candidate.id] = failed
            else:
                result.eligible.append(candidate)
        return result

    def filter(self, request, candidates: Iterable) -> list:
        """Return the subset of candidates that satisfy every predicate."""
        return self.evaluate(request, candidates).eligible
