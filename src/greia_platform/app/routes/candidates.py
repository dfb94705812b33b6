"""Provider profile routes.

A provider's profile id is their user id. Verification and rating are set
by admins only; counters are never writable through the API.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.auth import get_current_actor
from greia_platform.app.dependencies import http_error
from greia_platform.domain.models import CandidateProfile
from greia_platform.domain.schemas import Actor, CandidateResponse, CandidateUpsert
from greia_platform.infra.database import get_db
from greia_platform.infra.repository import EngagementRepository
from greia_platform.services.errors import EngineError, NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/candidates", tags=["candidates"])


@router.put("", response_model=CandidateResponse)
async def upsert_candidate(
    body: CandidateUpsert,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Create or update a provider profile."""
    candidate_id = body.id or actor.id
    if not actor.is_admin and candidate_id != actor.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your profile")

    repo = EngagementRepository(db)
    try:
        candidate = await repo.read_candidate(candidate_id)
    except NotFoundError:
        candidate = CandidateProfile(id=candidate_id, verified=False, rating=0.0)
        db.add(candidate)

    candidate.name = body.name
    candidate.email = body.email
    candidate.active = body.active
    candidate.regions = body.regions
    candidate.specializations = body.specializations
    if actor.is_admin:
        candidate.verified = body.verified
        if body.rating is not None:
            candidate.rating = body.rating

    await db.commit()
    logger.info("Candidate profile %s saved by %s", candidate_id, actor.id)
    return CandidateResponse.model_validate(await repo.read_candidate(candidate_id))


@router.get("/{candidate_id}", response_model=CandidateResponse)
async def get_candidate(
    candidate_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    try:
        candidate = await EngagementRepository(db).read_candidate(candidate_id)
    except EngineError as e:
        raise http_error(e)
    return CandidateResponse.model_validate(candidate)
