"""Persistence collaborator for requests, engagements and candidate profiles.

Every state write is conditional: ``UPDATE ... WHERE status = :expected AND
version = :version``. Zero affected rows means another unit of work moved
the row first, reported as ``StaleStateError``. Reads use
``populate_existing`` so a session never serves a stale identity-map copy.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.domain.enums import EngagementStatus, RequestStatus
from greia_platform.domain.models import (
    ActivityRecord,
    CandidateProfile,
    Engagement,
    MarketRequest,
)
from greia_platform.services.errors import NotFoundError, StaleStateError

logger = logging.getLogger(__name__)

# Counters that may be incremented on completion
COUNTER_COLUMNS = frozenset({
    "completed_count",
    "total_deals",
    "total_valuations",
    "total_referrals",
    "total_bookings",
})

NON_TERMINAL_ENGAGEMENT_STATUSES = (
    EngagementStatus.CREATED.value,
    EngagementStatus.PENDING.value,
    EngagementStatus.ACCEPTED.value,
)


def _value(status) -> str:
    return status.value if hasattr(status, "value") else status


class EngagementRepository:
    """Transactional reads and guarded writes over one ``AsyncSession``.

    The repository never commits; the calling service owns the transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def read_request(self, request_id: str) -> MarketRequest:
        result = await self.db.execute(
            select(MarketRequest)
            .where(MarketRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        market_request = result.scalar_one_or_none()
        if market_request is None:
            raise NotFoundError(f"Request {request_id} not found", {"request_id": request_id})
        return market_request

    async def add_request(self, market_request: MarketRequest) -> MarketRequest:
        if not market_request.id:
            market_request.id = str(uuid.uuid4())
        self.db.add(market_request)
        await self.db.flush()
        return market_request

    async def write_request(
        self,
        request_id: str,
        status: RequestStatus,
        expected_version: int,
        expected_status: RequestStatus = RequestStatus.PENDING,
        fields: Optional[dict[str, Any]] = None,
    ) -> MarketRequest:
        """Move a request to ``status`` if it is still at the expected status and version."""
        stmt = (
            update(MarketRequest)
            .where(
                MarketRequest.id == request_id,
                MarketRequest.status == _value(expected_status),
                MarketRequest.version == expected_version,
            )
            .values(
                status=_value(status),
                version=MarketRequest.version + 1,
                updated_at=datetime.now(timezone.utc),
                **(fields or {}),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            current = await self.read_request(request_id)
            raise StaleStateError(
                "request",
                request_id,
                f"{_value(expected_status)}@v{expected_version}",
                f"{current.status}@v{current.version}",
            )
        return await self.read_request(request_id)

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    async def read_candidate(self, candidate_id: str) -> CandidateProfile:
        result = await self.db.execute(
            select(CandidateProfile)
            .where(CandidateProfile.id == candidate_id)
            .execution_options(populate_existing=True)
        )
        candidate = result.scalar_one_or_none()
        if candidate is None:
            raise NotFoundError(
                f"Candidate {candidate_id} not found", {"candidate_id": candidate_id}
            )
        return candidate

    async def list_matchable_candidates(self) -> list[CandidateProfile]:
        """Verified, active profiles; region and specialization are checked in Python."""
        result = await self.db.execute(
            select(CandidateProfile)
            .where(CandidateProfile.verified.is_(True), CandidateProfile.active.is_(True))
            .order_by(CandidateProfile.id)
        )
        return list(result.scalars().all())

    async def atomic_increment_candidate_counters(
        self,
        candidate_id: str,
        deltas: dict[str, int],
        review_score: Optional[float] = None,
    ) -> CandidateProfile:
        """Increment counters and fold a review into the rating in one UPDATE.

        Every right-hand side reads the row's pre-update values, so the
        rating uses the old ``completed_count`` exactly as the incremental
        mean requires.
        """
        unknown = set(deltas) - COUNTER_COLUMNS
        if unknown:
            raise ValueError(f"Unknown candidate counters: {sorted(unknown)}")

        values: dict[str, Any] = {
            name: getattr(CandidateProfile, name) + delta for name, delta in deltas.items()
        }
        if review_score is not None:
            values["rating"] = CandidateProfile.rating + (
                float(review_score) - CandidateProfile.rating
            ) / (CandidateProfile.completed_count + 1)
        values["updated_at"] = datetime.now(timezone.utc)

        result = await self.db.execute(
            update(CandidateProfile)
            .where(CandidateProfile.id == candidate_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError(
                f"Candidate {candidate_id} not found", {"candidate_id": candidate_id}
            )
        return await self.read_candidate(candidate_id)

    # ------------------------------------------------------------------
    # Engagements
    # ------------------------------------------------------------------

    async def read_engagement(
        self,
        engagement_id: str,
        expected_status: Optional[EngagementStatus] = None,
    ) -> Engagement:
        """Load an engagement; raise StaleStateError if it is not at ``expected_status``."""
        result = await self.db.execute(
            select(Engagement)
            .where(Engagement.id == engagement_id)
            .execution_options(populate_existing=True)
        )
        engagement = result.scalar_one_or_none()
        if engagement is None:
            raise NotFoundError(
                f"Engagement {engagement_id} not found", {"engagement_id": engagement_id}
            )
        if expected_status is not None and engagement.status != _value(expected_status):
            raise StaleStateError(
                "engagement", engagement_id, _value(expected_status), engagement.status
            )
        return engagement

    async def add_engagement(self, engagement: Engagement) -> Engagement:
        if not engagement.id:
            engagement.id = str(uuid.uuid4())
        self.db.add(engagement)
        await self.db.flush()
        return engagement

    async def write_engagement(
        self,
        engagement_id: str,
        new_status: EngagementStatus,
        fields: Optional[dict[str, Any]],
        expected_prior_status: EngagementStatus,
        expected_version: int,
    ) -> Engagement:
        """Conditionally write a transition. Exactly one concurrent writer wins."""
        stmt = (
            update(Engagement)
            .where(
                Engagement.id == engagement_id,
                Engagement.status == _value(expected_prior_status),
                Engagement.version == expected_version,
            )
            .values(
                status=_value(new_status),
                version=Engagement.version + 1,
                updated_at=datetime.now(timezone.utc),
                **(fields or {}),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            current = await self.read_engagement(engagement_id)
            logger.warning(
                "Stale write on engagement %s: expected %s@v%d, found %s@v%d",
                engagement_id,
                _value(expected_prior_status),
                expected_version,
                current.status,
                current.version,
            )
            raise StaleStateError(
                "engagement",
                engagement_id,
                f"{_value(expected_prior_status)}@v{expected_version}",
                f"{current.status}@v{current.version}",
            )
        return await self.read_engagement(engagement_id)

    async def list_engagements_for_request(self, request_id: str) -> list[Engagement]:
        result = await self.db.execute(
            select(Engagement)
            .where(Engagement.request_id == request_id)
            .order_by(Engagement.match_rank.is_(None), Engagement.match_rank, Engagement.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_engagements_for_party(self, user_id: str) -> list[Engagement]:
        """Engagements where the user is the provider, the introducer or the requester."""
        result = await self.db.execute(
            select(Engagement)
            .join(MarketRequest, Engagement.request_id == MarketRequest.id)
            .where(
                (Engagement.candidate_id == user_id)
                | (Engagement.introducer_id == user_id)
                | (MarketRequest.requester_id == user_id)
            )
            .order_by(Engagement.created_at.desc())
        )
        return list(result.scalars().all())

    async def find_open_engagement(
        self, request_id: str, candidate_id: str
    ) -> Optional[Engagement]:
        result = await self.db.execute(
            select(Engagement).where(
                Engagement.request_id == request_id,
                Engagement.candidate_id == candidate_id,
                Engagement.status.in_(NON_TERMINAL_ENGAGEMENT_STATUSES),
            )
        )
        return result.scalars().first()

    # ------------------------------------------------------------------
    # Audit trail (append-only)
    # ------------------------------------------------------------------

    async def add_activity(
        self,
        request_id: str,
        event: str,
        actor: str,
        actor_id: Optional[str] = None,
        engagement_id: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> ActivityRecord:
        record = ActivityRecord(
            id=str(uuid.uuid4()),
            request_id=request_id,
            engagement_id=engagement_id,
            event=_value(event),
            actor=_value(actor),
            actor_id=actor_id,
            from_status=_value(from_status) if from_status is not None else None,
            to_status=_value(to_status) if to_status is not None else None,
            data=data,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def list_activities(
        self,
        request_id: Optional[str] = None,
        engagement_id: Optional[str] = None,
    ) -> list[ActivityRecord]:
        query = select(ActivityRecord)
        if request_id is not None:
            query = query.where(ActivityRecord.request_id == request_id)
        if engagement_id is not None:
            query = query.where(ActivityRecord.engagement_id == engagement_id)
        result = await self.db.execute(query.order_by(ActivityRecord.created_at, ActivityRecord.id))
        return list(result.scalars().all())
