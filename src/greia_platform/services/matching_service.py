"""Matching service: request creation and provider fan-out.

Pipeline, run synchronously when a request is created:

    load candidates -> eligibility filter -> rank -> top-N ->
    one engagement per candidate (CREATED, dispatched to PENDING) ->
    commit -> fan-out

Referrals skip discovery: the designated provider is checked against the
same filter and must pass it. Zero matches is a successful result.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.config import Settings, get_settings
from greia_platform.domain.enums import (
    EngagementActor,
    EngagementOrigin,
    RequestEvent,
    RequestStatus,
    RequestType,
)
from greia_platform.domain.models import Engagement, MarketRequest
from greia_platform.domain.schemas import Actor
from greia_platform.infra.repository import EngagementRepository
from greia_platform.services.candidate_ranker import match_score, rank_and_take
from greia_platform.services.commission_calculator import validate_positive_value
from greia_platform.services.eligibility_filter import EligibilityFilter
from greia_platform.services.engagement_service import EngagementService, PendingFanout
from greia_platform.services.errors import (
    IneligibleCandidateError,
    InvalidRequestError,
    InvalidTransitionError,
)
from greia_platform.services.fanout_coordinator import FanoutCoordinator, FanoutResult
from greia_platform.services.request_policies import get_policy

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    """Request created plus the engagements dispatched for it."""

    request: MarketRequest
    engagements: list[Engagement] = field(default_factory=list)
    excluded: dict[str, list[str]] = field(default_factory=dict)
    fanout: list[FanoutResult] = field(default_factory=list)

    @property
    def matched(self) -> int:
        return len(self.engagements)


class MatchingService:
    """Creates requests and matches them to ranked, eligible providers."""

    def __init__(
        self,
        db: AsyncSession,
        fanout: Optional[FanoutCoordinator] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.repo = EngagementRepository(db)
        self.fanout = fanout or FanoutCoordinator(settings=self.settings)
        self.engagements = EngagementService(db, fanout=self.fanout, settings=self.settings)

    async def _fan_out(self, request: MarketRequest, pending: list[PendingFanout]) -> list[FanoutResult]:
        results = []
        for item in pending:
            results.append(await self.fanout.apply(
                item.plan, item.engagement, request, item.actor_id, item.candidate_name
            ))
        return results

    async def create_request(
        self,
        requester: Actor,
        request_type: RequestType | str,
        category: str,
        region: str,
        base_value=None,
        currency: Optional[str] = None,
        title: Optional[str] = None,
        details: Optional[dict] = None,
        target_candidate_id: Optional[str] = None,
    ) -> MatchResult:
        """Persist a request and dispatch engagements to its matched providers."""
        request_type = RequestType(request_type)
        policy = get_policy(request_type, self.settings)
        eligibility = EligibilityFilter(policy, self.settings.wildcard_region_map)

        if request_type == RequestType.REFERRAL and not target_candidate_id:
            raise InvalidRequestError(
                "A referral must designate its target provider", {"request_type": request_type.value}
            )

        pending: list[PendingFanout] = []
        try:
            request = await self.repo.add_request(MarketRequest(
                requester_id=requester.id,
                request_type=request_type.value,
                category=category,
                region=region,
                title=title,
                base_value=validate_positive_value(base_value, "base_value"),
                currency=(currency or self.settings.default_currency).upper(),
                details=details,
                target_candidate_id=target_candidate_id,
                status=RequestStatus.PENDING.value,
                version=1,
            ))
            await self.repo.add_activity(
                request_id=request.id,
                event=RequestEvent.CREATE,
                actor=EngagementActor.REQUESTER,
                actor_id=requester.id,
                to_status=RequestStatus.PENDING,
                data={"request_type": request_type.value, "category": category, "region": region},
            )

            if request_type == RequestType.REFERRAL:
                candidates = [await self.repo.read_candidate(target_candidate_id)]
            else:
                candidates = await self.repo.list_matchable_candidates()

            evaluation = eligibility.evaluate(request, candidates)
            if request_type == RequestType.REFERRAL and evaluation.is_empty:
                raise IneligibleCandidateError(
                    target_candidate_id, evaluation.excluded.get(target_candidate_id, [])
                )

            ranked = rank_and_take(
                evaluation.eligible,
                request,
                policy.volume_counter,
                policy.top_n,
                self.settings.wildcard_region_map,
            )
            origin = (
                EngagementOrigin.REFERRAL
                if request_type == RequestType.REFERRAL
                else EngagementOrigin.MATCHED
            )
            for item in ranked:
                pending.append(await self.engagements.open_engagement(
                    request,
                    item.candidate,
                    origin,
                    actor_id=requester.id,
                    match_score=item.match_score,
                    match_rank=item.rank,
                ))

            await self.repo.add_activity(
                request_id=request.id,
                event=RequestEvent.MATCH,
                actor=EngagementActor.SYSTEM,
                data={
                    "matched": [p.engagement.candidate_id for p in pending],
                    "considered": len(candidates),
                    "excluded": evaluation.excluded,
                },
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Request %s (%s, %s/%s) matched %d of %d candidates",
            request.id, request_type.value, category, region, len(pending), len(candidates),
        )
        if not pending:
            logger.info("Request %s has no eligible providers yet", request.id)

        result = MatchResult(
            request=request,
            engagements=[p.engagement for p in pending],
            excluded=evaluation.excluded,
        )
        result.fanout = await self._fan_out(request, pending)
        return result

    async def express_interest(
        self,
        request_id: str,
        provider: Actor,
        terms: Optional[dict] = None,
        notes: Optional[str] = None,
    ) -> tuple[Engagement, FanoutResult]:
        """A provider volunteers for a pending request (bid / interest)."""
        try:
            request = await self.repo.read_request(request_id)
            policy = get_policy(request.request_type, self.settings)
            if not policy.allows_interest:
                raise InvalidRequestError(
                    f"{policy.label} requests do not accept provider interest",
                    {"request_id": request_id},
                )
            if request.status != RequestStatus.PENDING.value:
                raise InvalidTransitionError(
                    RequestStatus(request.status),
                    RequestEvent.INTEREST,
                    f"request is already {request.status}",
                )

            candidate = await self.repo.read_candidate(provider.id)
            failures = EligibilityFilter(policy, self.settings.wildcard_region_map).failures(
                request, candidate
            )
            if failures:
                raise IneligibleCandidateError(candidate.id, failures)
            if await self.repo.find_open_engagement(request_id, candidate.id):
                raise InvalidRequestError(
                    f"Provider {candidate.id} already has an open engagement on {request_id}",
                    {"request_id": request_id, "candidate_id": candidate.id},
                )

            pending = await self.engagements.open_engagement(
                request,
                candidate,
                EngagementOrigin.INTEREST,
                actor_id=provider.id,
                match_score=match_score(
                    candidate, request, policy.volume_counter, self.settings.wildcard_region_map
                ),
                terms=terms,
                notes=notes,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Provider %s expressed interest in request %s", provider.id, request_id)
        fanout = await self.fanout.apply(
            pending.plan, pending.engagement, request, provider.id, pending.candidate_name
        )
        return pending.engagement, fanout

    async def get_request(self, request_id: str) -> MarketRequest:
        return await self.repo.read_request(request_id)

    async def list_engagements(self, request_id: str) -> list[Engagement]:
        await self.repo.read_request(request_id)
        return await self.repo.list_engagements_for_request(request_id)
