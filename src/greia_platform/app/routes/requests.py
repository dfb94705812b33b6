"""Marketplace request routes: create + match, inspect, close, express interest."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.auth import get_current_actor
from greia_platform.app.dependencies import get_fanout, http_error
from greia_platform.app.routes.engagements import serialize_engagement
from greia_platform.domain.schemas import (
    ActivityResponse,
    Actor,
    CloseRequestBody,
    EngagementResponse,
    InterestBody,
    MatchResponse,
    RequestCreate,
    RequestResponse,
)
from greia_platform.infra.database import get_db
from greia_platform.infra.repository import EngagementRepository
from greia_platform.services.engagement_service import EngagementService
from greia_platform.services.errors import EngineError
from greia_platform.services.fanout_coordinator import FanoutCoordinator
from greia_platform.services.matching_service import MatchingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/requests", tags=["requests"])


def _require_requester(request, actor: Actor):
    if not actor.is_admin and actor.id != request.requester_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your request")


@router.post("", response_model=MatchResponse, status_code=status.HTTP_201_CREATED)
async def create_request(
    body: RequestCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    """Create a request and dispatch it to the matched providers."""
    service = MatchingService(db, fanout=fanout)
    try:
        result = await service.create_request(
            actor,
            body.request_type,
            body.category,
            body.region,
            base_value=body.base_value,
            currency=body.currency,
            title=body.title,
            details=body.details,
            target_candidate_id=body.target_candidate_id,
        )
    except EngineError as e:
        raise http_error(e)

    return MatchResponse(
        request=RequestResponse.model_validate(result.request),
        matched=result.matched,
        engagements=[serialize_engagement(e) for e in result.engagements],
        excluded=result.excluded,
    )


@router.get("/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    repo = EngagementRepository(db)
    try:
        market_request = await repo.read_request(request_id)
    except EngineError as e:
        raise http_error(e)
    if not actor.is_admin and actor.id != market_request.requester_id:
        if not await repo.find_open_engagement(request_id, actor.id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your request")
    return RequestResponse.model_validate(market_request)


@router.get("/{request_id}/engagements", response_model=list[EngagementResponse])
async def list_request_engagements(
    request_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """All engagements on a request, best-ranked first."""
    repo = EngagementRepository(db)
    try:
        market_request = await repo.read_request(request_id)
    except EngineError as e:
        raise http_error(e)
    _require_requester(market_request, actor)
    engagements = await repo.list_engagements_for_request(request_id)
    return [serialize_engagement(e) for e in engagements]


@router.get("/{request_id}/activity", response_model=list[ActivityResponse])
async def request_activity(
    request_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Audit trail for the request and all of its engagements."""
    repo = EngagementRepository(db)
    try:
        market_request = await repo.read_request(request_id)
    except EngineError as e:
        raise http_error(e)
    _require_requester(market_request, actor)
    records = await repo.list_activities(request_id=request_id)
    return [ActivityResponse.model_validate(r) for r in records]


@router.post("/{request_id}/close", response_model=RequestResponse)
async def close_request(
    request_id: str,
    body: CloseRequestBody,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    """Close a pending request; its open engagements are cancelled."""
    service = EngagementService(db, fanout=fanout)
    try:
        outcome = await service.close_request(
            request_id, actor, expected_version=body.expected_version, reason=body.reason
        )
    except EngineError as e:
        raise http_error(e)
    return RequestResponse.model_validate(outcome.request)


@router.post(
    "/{request_id}/interest",
    response_model=EngagementResponse,
    status_code=status.HTTP_201_CREATED,
)
async def express_interest(
    request_id: str,
    body: InterestBody,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    """A provider volunteers for a pending request."""
    service = MatchingService(db, fanout=fanout)
    try:
        engagement, _ = await service.express_interest(
            request_id, actor, terms=body.terms, notes=body.notes
        )
    except EngineError as e:
        raise http_error(e)
    return serialize_engagement(engagement)
