"""Candidate Ranker: deterministic ordering of eligible providers.

Pure-function module. NO database access.

Comparator:
    1. rating              descending
    2. volume counter      descending (deals, valuations or bookings)
    3. candidate id        ascending (full determinism)

The advisory match score (0-100) is recorded on each engagement for
display; it never affects ordering.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from greia_platform.services.eligibility_filter import covers_region

# ── Advisory score weights ───────────────────────────────────────────────────

SPECIALIZATION_POINTS = 30
REGION_POINTS = 30
EXPERIENCE_CAP = 20
QUALITY_CAP = 20


@dataclass(frozen=True)
class RankedCandidate:
    """A candidate with its 1-based rank and advisory match score."""

    candidate: object
    rank: int
    match_score: float


def _volume(candidate, volume_counter: str) -> int:
    return getattr(candidate, volume_counter, 0) or 0


def sort_key(candidate, volume_counter: str) -> tuple:
    return (-(candidate.rating or 0.0), -_volume(candidate, volume_counter), candidate.id)


def rank(candidates: Iterable, volume_counter: str = "total_deals") -> list:
    """Order candidates by rating desc, volume desc, id asc."""
    return sorted(candidates, key=lambda c: sort_key(c, volume_counter))


def take(ordered: Sequence, n: int) -> list:
    """Truncate an ordered candidate list to its top ``n``."""
    if n < 0:
        raise ValueError(f"top-N must be non-negative, got {n}")
    return list(ordered[:n])


def match_score(
    candidate,
    request,
    volume_counter: str,
    wildcard_map: dict[str, set[str]] | None = None,
) -> float:
    """Advisory 0-100 score: specialization + region + experience + quality."""
    score = 0.0
    specializations = {s.strip().lower() for s in (candidate.specializations or [])}
    if request.category.strip().lower() in specializations:
        score += SPECIALIZATION_POINTS
    if covers_region(candidate.regions, request.region, wildcard_map):
        score += REGION_POINTS
    score += min(EXPERIENCE_CAP, _volume(candidate, volume_counter) / 10)
    score += min(QUALITY_CAP, (candidate.rating or 0.0) * 4)
    return round(min(100.0, score), 2)


def rank_and_take(
    candidates: Iterable,
    request,
    volume_counter: str,
    n: int,
    wildcard_map: dict[str, set[str]] | None = None,
) -> list[RankedCandidate]:
    """Rank, truncate to top-N, and attach rank and advisory score."""
    top = take(rank(candidates, volume_counter), n)
    return [
        RankedCandidate(
            candidate=c,
            rank=i + 1,
            match_score=match_score(c, request, volume_counter, wildcard_map),
        )
        for i, c in enumerate(top)
    ]
