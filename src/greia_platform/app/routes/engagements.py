"""Engagement routes: inspect and drive engagements through their lifecycle."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.auth import get_current_actor
from greia_platform.app.dependencies import get_fanout, http_error
from greia_platform.domain.enums import EngagementEvent
from greia_platform.domain.models import Engagement
from greia_platform.domain.schemas import (
    AcceptBody,
    ActivityResponse,
    Actor,
    AllowedEventsResponse,
    CompleteBody,
    EngagementResponse,
    TermsBody,
    TransitionBody,
)
from greia_platform.infra.database import get_db
from greia_platform.infra.repository import EngagementRepository
from greia_platform.services.engagement_service import EngagementService
from greia_platform.services.errors import EngineError
from greia_platform.services.fanout_coordinator import FanoutCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/engagements", tags=["engagements"])

E = EngagementEvent


def serialize_engagement(
    engagement: Engagement, allowed_events: Optional[list[EngagementEvent]] = None
) -> EngagementResponse:
    response = EngagementResponse.model_validate(engagement)
    if allowed_events is not None:
        response.allowed_events = [e.value for e in allowed_events]
    return response


async def _run(
    service: EngagementService,
    engagement_id: str,
    event: EngagementEvent,
    actor: Actor,
    **kwargs,
) -> EngagementResponse:
    try:
        outcome = await service.transition(engagement_id, event, actor, **kwargs)
    except EngineError as e:
        raise http_error(e)

    # The transition is committed; a failed lookup here only drops the hint
    try:
        allowed = await service.allowed_events(engagement_id, actor)
    except Exception as e:
        logger.warning(
            "Allowed events unavailable for engagement %s after %s: %s",
            engagement_id, event.value, e,
        )
        allowed = None
    return serialize_engagement(outcome.engagement, allowed)


@router.get("", response_model=list[EngagementResponse])
async def list_my_engagements(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Engagements where the caller is requester, provider or introducer."""
    engagements = await EngagementRepository(db).list_engagements_for_party(actor.id)
    return [serialize_engagement(e) for e in engagements]


@router.get("/{engagement_id}", response_model=EngagementResponse)
async def get_engagement(
    engagement_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    service = EngagementService(db, fanout=fanout)
    try:
        engagement, _ = await service.get_engagement(engagement_id, actor)
        allowed = await service.allowed_events(engagement_id, actor)
    except EngineError as e:
        raise http_error(e)
    return serialize_engagement(engagement, allowed)


@router.get("/{engagement_id}/timeline", response_model=list[ActivityResponse])
async def engagement_timeline(
    engagement_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    """Chronological audit trail of one engagement."""
    service = EngagementService(db, fanout=fanout)
    try:
        records = await service.timeline(engagement_id, actor)
    except EngineError as e:
        raise http_error(e)
    return [ActivityResponse.model_validate(r) for r in records]


@router.get("/{engagement_id}/allowed-events", response_model=AllowedEventsResponse)
async def allowed_events(
    engagement_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    service = EngagementService(db, fanout=fanout)
    try:
        engagement, role = await service.get_engagement(engagement_id, actor)
        events = await service.allowed_events(engagement_id, actor)
    except EngineError as e:
        raise http_error(e)
    return AllowedEventsResponse(
        engagement_id=engagement.id,
        status=engagement.status,
        role=role.value,
        allowed_events=[e.value for e in events],
    )


@router.post("/{engagement_id}/accept", response_model=EngagementResponse)
async def accept_engagement(
    engagement_id: str,
    body: AcceptBody,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    return await _run(
        EngagementService(db, fanout=fanout),
        engagement_id,
        E.ACCEPT,
        actor,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
        notes=body.notes,
        fee_override=body.fee_override,
    )


@router.post("/{engagement_id}/reject", response_model=EngagementResponse)
async def reject_engagement(
    engagement_id: str,
    body: TransitionBody,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    return await _run(
        EngagementService(db, fanout=fanout),
        engagement_id,
        E.REJECT,
        actor,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
        notes=body.notes,
    )


@router.post("/{engagement_id}/withdraw", response_model=EngagementResponse)
async def withdraw_engagement(
    engagement_id: str,
    body: TransitionBody,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    return await _run(
        EngagementService(db, fanout=fanout),
        engagement_id,
        E.WITHDRAW,
        actor,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
        notes=body.notes,
    )


@router.post("/{engagement_id}/cancel", response_model=EngagementResponse)
async def cancel_engagement(
    engagement_id: str,
    body: TransitionBody,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    return await _run(
        EngagementService(db, fanout=fanout),
        engagement_id,
        E.CANCEL,
        actor,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
        notes=body.notes,
    )


@router.post("/{engagement_id}/complete", response_model=EngagementResponse)
async def complete_engagement(
    engagement_id: str,
    body: CompleteBody,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    return await _run(
        EngagementService(db, fanout=fanout),
        engagement_id,
        E.COMPLETE,
        actor,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
        notes=body.notes,
        final_value=body.final_value,
        fee_override=body.fee_override,
        review_score=body.review_score,
    )


@router.post("/{engagement_id}/terms", response_model=EngagementResponse)
async def update_terms(
    engagement_id: str,
    body: TermsBody,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    return await _run(
        EngagementService(db, fanout=fanout),
        engagement_id,
        E.UPDATE_TERMS,
        actor,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
        notes=body.notes,
        terms=body.terms,
        base_value=body.base_value,
        fee_override=body.fee_override,
    )
