"""Engagement service: runs state machine transitions as units of work.

Each public operation is one transaction:

    read (with expected-status check) -> validate via state machine ->
    commission / counters / rating -> conditional write -> audit -> commit

and only after the commit, the fan-out coordinator propagates the change
downstream. Anything raised before the commit rolls the whole unit back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.config import Settings, get_settings
from greia_platform.domain.enums import (
    EngagementActor,
    EngagementEvent,
    EngagementOrigin,
    EngagementStatus,
    RequestEvent,
    RequestStatus,
    SideEffect,
)
from greia_platform.domain.models import CandidateProfile, Engagement, MarketRequest
from greia_platform.domain.schemas import Actor
from greia_platform.infra.repository import EngagementRepository
from greia_platform.services.commission_calculator import (
    CommissionSplit,
    compute_commission,
    validate_override,
    validate_positive_value,
    validate_review_score,
)
from greia_platform.services.engagement_state_machine import (
    TERMINAL_STATES,
    TransitionPlan,
)
from greia_platform.services.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StaleStateError,
)
from greia_platform.services.fanout_coordinator import FanoutCoordinator, FanoutResult
from greia_platform.services.request_policies import RequestPolicy, get_policy

logger = logging.getLogger(__name__)

S = EngagementStatus
E = EngagementEvent
A = EngagementActor

# Timestamp column stamped by each event
EVENT_TIMESTAMPS: dict[EngagementEvent, str] = {
    E.DISPATCH: "dispatched_at",
    E.UPDATE_TERMS: "terms_updated_at",
    E.ACCEPT: "accepted_at",
    E.COMPLETE: "completed_at",
    E.REJECT: "rejected_at",
    E.WITHDRAW: "withdrawn_at",
    E.CANCEL: "cancelled_at",
}

# Events that need the request still open; siblings of a settled request may
# only be rejected, withdrawn or cancelled
OPEN_REQUEST_EVENTS = frozenset({E.UPDATE_TERMS, E.ACCEPT, E.COMPLETE})


@dataclass
class TransitionOutcome:
    """A committed transition and the result of its downstream fan-out."""

    engagement: Engagement
    request: MarketRequest
    plan: TransitionPlan
    fanout: Optional[FanoutResult] = None


@dataclass
class PendingFanout:
    """A committed plan waiting for fan-out."""

    plan: TransitionPlan
    engagement: Engagement
    actor_id: Optional[str]
    candidate_name: Optional[str] = None


@dataclass
class CloseOutcome:
    request: MarketRequest
    cancelled: list[Engagement] = field(default_factory=list)
    fanout: list[FanoutResult] = field(default_factory=list)


def resolve_role(actor: Actor, engagement: Engagement, request: MarketRequest) -> EngagementActor:
    """Map the caller onto their role in this engagement."""
    if actor.is_admin:
        return A.ADMIN
    if actor.id == engagement.candidate_id:
        return A.PROVIDER
    if actor.id in (request.requester_id, engagement.introducer_id):
        return A.REQUESTER
    raise PermissionDeniedError(
        f"User {actor.id} is not a party to engagement {engagement.id}",
        {"actor_id": actor.id, "engagement_id": engagement.id},
    )


class EngagementService:
    """Drives engagements through the state machine for every request type."""

    def __init__(
        self,
        db: AsyncSession,
        fanout: Optional[FanoutCoordinator] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.repo = EngagementRepository(db)
        self.settings = settings or get_settings()
        self.fanout = fanout or FanoutCoordinator(settings=self.settings)

    def policy_for(self, request: MarketRequest) -> RequestPolicy:
        return get_policy(request.request_type, self.settings)

    # ------------------------------------------------------------------
    # Commission
    # ------------------------------------------------------------------

    def commission_for(self, value, override=None) -> CommissionSplit:
        """Commission split using the configured standard rate and split."""
        return compute_commission(
            value,
            standard_rate_pct=self.settings.standard_fee_rate_pct,
            split_rate_pct=self.settings.introducer_split_pct,
            override=override,
            max_override_rate_pct=self.settings.max_override_rate_pct,
        )

    # ------------------------------------------------------------------
    # Internal building blocks (no commit)
    # ------------------------------------------------------------------

    async def _write_transition(
        self,
        engagement: Engagement,
        plan: TransitionPlan,
        actor_id: Optional[str],
        fields: Optional[dict] = None,
        audit_data: Optional[dict] = None,
    ) -> Engagement:
        """Conditional state write plus its audit record."""
        now = datetime.now(timezone.utc)
        values = dict(fields or {})
        stamp = EVENT_TIMESTAMPS.get(plan.event)
        if stamp:
            values[stamp] = now

        updated = await self.repo.write_engagement(
            engagement.id,
            plan.to_status,
            values,
            expected_prior_status=plan.from_status,
            expected_version=engagement.version,
        )
        if plan.requires(SideEffect.AUDIT):
            await self.repo.add_activity(
                request_id=updated.request_id,
                engagement_id=updated.id,
                event=plan.event,
                actor=plan.actor,
                actor_id=actor_id,
                from_status=plan.from_status,
                to_status=plan.to_status,
                data=audit_data,
            )
        logger.info(
            "Engagement %s: %s -> %s (event=%s, actor=%s, user=%s)",
            updated.id,
            plan.from_status.value,
            plan.to_status.value,
            plan.event.value,
            plan.actor.value,
            actor_id,
        )
        return updated

    async def open_engagement(
        self,
        request: MarketRequest,
        candidate: CandidateProfile,
        origin: EngagementOrigin,
        actor_id: Optional[str],
        match_score: Optional[float] = None,
        match_rank: Optional[int] = None,
        terms: Optional[dict] = None,
        notes: Optional[str] = None,
    ) -> PendingFanout:
        """Create an engagement in CREATED and dispatch it to PENDING.

        Runs inside the caller's transaction; the caller commits and then
        hands the returned plan to the fan-out coordinator.
        """
        policy = self.policy_for(request)
        machine = policy.state_machine()
        creation = machine.creation_plan(A.SYSTEM)

        engagement = await self.repo.add_engagement(Engagement(
            request_id=request.id,
            candidate_id=candidate.id,
            introducer_id=request.requester_id if policy.introducer_is_requester else None,
            origin=origin.value,
            status=creation.to_status.value,
            version=1,
            match_score=match_score,
            match_rank=match_rank,
            base_value=request.base_value,
            currency=request.currency,
            terms=terms,
            notes=notes,
        ))
        await self.repo.add_activity(
            request_id=request.id,
            engagement_id=engagement.id,
            event=creation.event,
            actor=creation.actor,
            actor_id=actor_id,
            from_status=None,
            to_status=creation.to_status,
            data={"origin": origin.value, "match_score": match_score, "match_rank": match_rank},
        )

        dispatch = machine.plan(S(engagement.status), E.DISPATCH, A.SYSTEM)
        engagement = await self._write_transition(engagement, dispatch, actor_id)
        return PendingFanout(dispatch, engagement, actor_id, candidate.name)

    async def _complete_request(self, request: MarketRequest, engagement: Engagement, actor_id):
        """Single-winner guard: version-checked move of the request to COMPLETED."""
        now = datetime.now(timezone.utc)
        updated = await self.repo.write_request(
            request.id,
            RequestStatus.COMPLETED,
            expected_version=request.version,
            expected_status=RequestStatus.PENDING,
            fields={"completed_engagement_id": engagement.id, "completed_at": now},
        )
        await self.repo.add_activity(
            request_id=request.id,
            engagement_id=engagement.id,
            event=RequestEvent.COMPLETE,
            actor=A.SYSTEM,
            actor_id=actor_id,
            from_status=RequestStatus.PENDING,
            to_status=RequestStatus.COMPLETED,
        )
        return updated

    async def _increment_counters(
        self,
        policy: RequestPolicy,
        engagement: Engagement,
        review_score: Optional[float],
    ) -> None:
        await self.repo.atomic_increment_candidate_counters(
            engagement.candidate_id,
            {"completed_count": 1, policy.volume_counter: 1},
            review_score=review_score,
        )
        if engagement.introducer_id and engagement.introducer_id != engagement.candidate_id:
            try:
                await self.repo.atomic_increment_candidate_counters(
                    engagement.introducer_id, {"total_referrals": 1}
                )
            except NotFoundError:
                logger.info(
                    "Introducer %s has no candidate profile; referral counter not kept",
                    engagement.introducer_id,
                )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get_engagement(self, engagement_id: str, actor: Actor) -> tuple[Engagement, EngagementActor]:
        engagement = await self.repo.read_engagement(engagement_id)
        request = await self.repo.read_request(engagement.request_id)
        return engagement, resolve_role(actor, engagement, request)

    async def allowed_events(self, engagement_id: str, actor: Actor) -> list[EngagementEvent]:
        """Events the caller may fire on the engagement right now."""
        engagement = await self.repo.read_engagement(engagement_id)
        request = await self.repo.read_request(engagement.request_id)
        role = resolve_role(actor, engagement, request)
        machine = self.policy_for(request).state_machine()
        events = machine.get_allowed_events(S(engagement.status), role)
        if request.status != RequestStatus.PENDING.value:
            events = [e for e in events if e not in OPEN_REQUEST_EVENTS]
        return events

    async def timeline(self, engagement_id: str, actor: Actor):
        engagement, _ = await self.get_engagement(engagement_id, actor)
        return await self.repo.list_activities(engagement_id=engagement.id)

    async def transition(
        self,
        engagement_id: str,
        event: EngagementEvent,
        actor: Actor,
        expected_status: Optional[EngagementStatus] = None,
        expected_version: Optional[int] = None,
        notes: Optional[str] = None,
        terms: Optional[dict] = None,
        base_value=None,
        fee_override=None,
        final_value=None,
        review_score: Optional[float] = None,
    ) -> TransitionOutcome:
        """Validate and commit one engagement transition, then fan it out.

        Raises:
            StaleStateError: persisted status/version differs from the caller's
                expectation, or a concurrent writer won.
            InvalidTransitionError: undefined event, terminal state, disallowed
                actor, or accept, terms or completion on an already settled request.
            InvalidCommissionOverride: override, value or review score invalid.
        """
        try:
            engagement = await self.repo.read_engagement(engagement_id, expected_status)
            if expected_version is not None and engagement.version != expected_version:
                raise StaleStateError(
                    "engagement", engagement_id, f"v{expected_version}", f"v{engagement.version}"
                )
            request = await self.repo.read_request(engagement.request_id)
            role = resolve_role(actor, engagement, request)
            policy = self.policy_for(request)
            plan = policy.state_machine().plan(S(engagement.status), event, role)
            if plan.event in OPEN_REQUEST_EVENTS and request.status != RequestStatus.PENDING.value:
                raise InvalidTransitionError(
                    S(engagement.status),
                    event,
                    f"request {request.id} is already {request.status}",
                )

            fields: dict = {}
            audit: dict = {}
            if notes is not None:
                fields["notes"] = notes

            if plan.event == E.UPDATE_TERMS:
                if terms is not None:
                    fields["terms"] = terms
                    audit["terms"] = terms
                proposed = validate_positive_value(base_value, "base_value")
                if proposed is not None:
                    fields["base_value"] = proposed
                    audit["base_value"] = str(proposed)
                if fee_override is not None:
                    value = proposed if proposed is not None else engagement.base_value
                    checked = validate_override(
                        fee_override, value, self.settings.max_override_rate_pct
                    )
                    fields["override_fee"] = checked
                    audit["override_fee"] = str(checked) if checked is not None else None

            if plan.requires(SideEffect.COMMISSION):
                override = fee_override if fee_override is not None else engagement.override_fee
                if engagement.base_value is not None:
                    split = self.commission_for(engagement.base_value, override)
                    fields.update(split.as_fields())
                    audit["commission"] = {k: str(v) for k, v in split.as_fields().items()}

            review: Optional[float] = None
            if plan.requires(SideEffect.FINALIZE_COMMISSION):
                final = validate_positive_value(final_value, "final_value")
                review = validate_review_score(review_score)
                value = final or engagement.final_value or engagement.base_value
                override = fee_override if fee_override is not None else engagement.override_fee
                if final is not None:
                    fields["final_value"] = final
                if review is not None:
                    fields["review_score"] = review
                if value is not None:
                    split = self.commission_for(value, override)
                    fields.update(split.as_fields())
                    audit["commission"] = {k: str(v) for k, v in split.as_fields().items()}
                if review is not None:
                    audit["review_score"] = review

            engagement = await self._write_transition(
                engagement, plan, actor.id, fields, audit or None
            )

            if plan.to_status == S.COMPLETED:
                request = await self._complete_request(request, engagement, actor.id)
            if plan.requires(SideEffect.COUNTERS):
                await self._increment_counters(
                    policy, engagement, review if plan.requires(SideEffect.RATING) else None
                )

            candidate = await self.repo.read_candidate(engagement.candidate_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        fanout = await self.fanout.apply(plan, engagement, request, actor.id, candidate.name)
        return TransitionOutcome(engagement, request, plan, fanout)

    async def close_request(
        self,
        request_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> CloseOutcome:
        """Requester closes a pending request; open engagements are cancelled."""
        pending: list[PendingFanout] = []
        try:
            request = await self.repo.read_request(request_id)
            if not actor.is_admin and actor.id != request.requester_id:
                raise PermissionDeniedError(
                    f"Only the requester may close request {request_id}",
                    {"actor_id": actor.id, "request_id": request_id},
                )
            if expected_version is not None and request.version != expected_version:
                raise StaleStateError(
                    "request", request_id, f"v{expected_version}", f"v{request.version}"
                )
            if request.status != RequestStatus.PENDING.value:
                raise InvalidTransitionError(
                    RequestStatus(request.status),
                    RequestEvent.CLOSE,
                    f"request is already {request.status}",
                )

            role = A.ADMIN if actor.is_admin else A.REQUESTER
            machine = self.policy_for(request).state_machine()
            for engagement in await self.repo.list_engagements_for_request(request_id):
                status = S(engagement.status)
                if status in TERMINAL_STATES:
                    continue
                plan = machine.plan(status, E.CANCEL, role)
                updated = await self._write_transition(
                    engagement, plan, actor.id, audit_data={"reason": reason or "request_closed"}
                )
                pending.append(PendingFanout(plan, updated, actor.id))

            request = await self.repo.write_request(
                request_id,
                RequestStatus.CLOSED,
                expected_version=request.version,
                fields={"closed_at": datetime.now(timezone.utc)},
            )
            await self.repo.add_activity(
                request_id=request_id,
                event=RequestEvent.CLOSE,
                actor=role,
                actor_id=actor.id,
                from_status=RequestStatus.PENDING,
                to_status=RequestStatus.CLOSED,
                data={"reason": reason, "cancelled": [p.engagement.id for p in pending]},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Request %s closed (%d engagements cancelled)", request_id, len(pending))
        outcome = CloseOutcome(request=request, cancelled=[p.engagement for p in pending])
        for item in pending:
            outcome.fanout.append(
                await self.fanout.apply(item.plan, item.engagement, request, item.actor_id)
            )
        return outcome

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    async def accept(self, engagement_id: str, actor: Actor, **kwargs) -> TransitionOutcome:
        return await self.transition(engagement_id, E.ACCEPT, actor, **kwargs)

    async def reject(self, engagement_id: str, actor: Actor, **kwargs) -> TransitionOutcome:
        return await self.transition(engagement_id, E.REJECT, actor, **kwargs)

    async def withdraw(self, engagement_id: str, actor: Actor, **kwargs) -> TransitionOutcome:
        return await self.transition(engagement_id, E.WITHDRAW, actor, **kwargs)

    async def cancel(self, engagement_id: str, actor: Actor, **kwargs) -> TransitionOutcome:
        return await self.transition(engagement_id, E.CANCEL, actor, **kwargs)

    async def complete(self, engagement_id: str, actor: Actor, **kwargs) -> TransitionOutcome:
        return await self.transition(engagement_id, E.COMPLETE, actor, **kwargs)

    async def update_terms(self, engagement_id: str, actor: Actor, **kwargs) -> TransitionOutcome:
        return await self.transition(engagement_id, E.UPDATE_TERMS, actor, **kwargs)
