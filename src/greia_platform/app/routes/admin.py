"""Admin routes for deferred downstream effects."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.auth import require_role
from greia_platform.app.dependencies import get_fanout
from greia_platform.domain.models import DeferredEffect
from greia_platform.domain.schemas import Actor, EffectRetryResponse
from greia_platform.infra.database import get_db
from greia_platform.services.fanout_coordinator import FanoutCoordinator

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/effects")
async def list_deferred_effects(
    status: Optional[str] = Query("pending", description="Filter by status"),
    actor: Actor = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    query = select(DeferredEffect).order_by(DeferredEffect.created_at)
    if status:
        query = query.where(DeferredEffect.status == status)
    result = await db.execute(query)
    return [
        {
            "id": e.id,
            "kind": e.kind,
            "engagement_id": e.engagement_id,
            "status": e.status,
            "attempts": e.attempts,
            "last_error": e.last_error,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in result.scalars().all()
    ]


@router.post("/effects/retry", response_model=EffectRetryResponse)
async def retry_deferred_effects(
    actor: Actor = Depends(require_role("admin")),
    fanout: FanoutCoordinator = Depends(get_fanout),
):
    """Retry pending deferred effects now instead of waiting for the loop."""
    return EffectRetryResponse(**await fanout.retry_deferred_effects())
