"""CRM lead service: one lead per (owner, engagement).

Each call runs in its own session and transaction, separate from the
engagement transition that triggered it.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from greia_platform.domain.enums import LeadStatus
from greia_platform.domain.models import Lead
from greia_platform.infra.database import async_session

logger = logging.getLogger(__name__)

# Pipeline position of each status; WON and LOST are final
LEAD_STATUS_RANK: dict[str, int] = {
    LeadStatus.NEW.value: 0,
    LeadStatus.QUALIFIED.value: 1,
    LeadStatus.WON.value: 2,
    LeadStatus.LOST.value: 2,
}


def is_regression(current: str, incoming: str) -> bool:
    """True when moving a lead from ``current`` to ``incoming`` would go backwards."""
    if current == incoming:
        return False
    return LEAD_STATUS_RANK[incoming] <= LEAD_STATUS_RANK[current]


class CRMService:
    """Create or update CRM leads for the parties of an engagement."""

    def __init__(self, session_factory=async_session):
        self.session_factory = session_factory

    async def upsert_lead(
        self,
        owner_id: str,
        title: str,
        status: LeadStatus | str,
        value=None,
        metadata: Optional[dict] = None,
        engagement_id: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Lead:
        """Insert the lead, or move an existing one forward along the pipeline.

        Status only advances (NEW -> QUALIFIED -> WON/LOST). An upsert that
        would move the lead backwards, or off a final status, leaves it as is.
        """
        status_value = status.value if isinstance(status, LeadStatus) else LeadStatus(status).value

        async with self.session_factory() as db:
            lead = await self._find(db, owner_id, engagement_id)
            if lead is None:
                lead = Lead(
                    id=str(uuid.uuid4()),
                    owner_id=owner_id,
                    engagement_id=engagement_id,
                    title=title,
                    status=status_value,
                    value=value,
                    source=source,
                    data=metadata,
                )
                db.add(lead)
                try:
                    await db.commit()
                    logger.info(
                        "CRM lead %s created for owner %s (status=%s)",
                        lead.id, owner_id, status_value,
                    )
                    return lead
                except IntegrityError:
                    # Concurrent insert for the same key; fall through to update
                    await db.rollback()
                    lead = await self._find(db, owner_id, engagement_id)

            if is_regression(lead.status, status_value):
                # A late or retried upsert never rolls a lead back
                logger.info(
                    "CRM lead %s kept at %s (stale upsert to %s ignored)",
                    lead.id, lead.status, status_value,
                )
                return lead

            lead.title = title
            lead.status = status_value
            if value is not None:
                lead.value = value
            if metadata:
                lead.data = {**(lead.data or {}), **metadata}
            await db.commit()
            logger.info(
                "CRM lead %s updated for owner %s (status=%s)", lead.id, owner_id, status_value
            )
            return lead

    async def _find(self, db, owner_id: str, engagement_id: Optional[str]) -> Optional[Lead]:
        if engagement_id is None:
            return None
        result = await db.execute(
            select(Lead).where(Lead.owner_id == owner_id, Lead.engagement_id == engagement_id)
        )
        return result.scalar_one_or_none()

    async def list_leads(self, owner_id: str) -> list[Lead]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Lead).where(Lead.owner_id == owner_id).order_by(Lead.created_at)
            )
            return list(result.scalars().all())
