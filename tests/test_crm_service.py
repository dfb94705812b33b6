"""Tests for CRM lead upserts: one lead per (owner, engagement), status only moves forward."""

from decimal import Decimal

import pytest

from greia_platform.domain.enums import LeadStatus
from greia_platform.services.crm_service import CRMService, is_regression

L = LeadStatus


@pytest.fixture
def crm(session_factory):
    return CRMService(session_factory)


async def _upsert(crm, status, **kwargs):
    return await crm.upsert_lead(
        owner_id="agent-a",
        title="Property lead - North Dublin",
        status=status,
        engagement_id="eng-1",
        **kwargs,
    )


class TestIsRegression:
    @pytest.mark.parametrize(
        "current, incoming",
        [
            ("NEW", "QUALIFIED"),
            ("QUALIFIED", "WON"),
            ("NEW", "LOST"),
            ("WON", "WON"),
        ],
    )
    def test_forward_or_same(self, current, incoming):
        assert not is_regression(current, incoming)

    @pytest.mark.parametrize(
        "current, incoming",
        [
            ("QUALIFIED", "NEW"),
            ("WON", "NEW"),
            ("WON", "LOST"),
            ("LOST", "QUALIFIED"),
        ],
    )
    def test_backwards_or_off_final(self, current, incoming):
        assert is_regression(current, incoming)


class TestUpsertLead:
    @pytest.mark.asyncio
    async def test_one_lead_per_engagement_advances(self, crm):
        await _upsert(crm, L.NEW)
        await _upsert(crm, L.QUALIFIED, value=Decimal("10000.00"))

        leads = await crm.list_leads("agent-a")
        assert [lead.status for lead in leads] == ["QUALIFIED"]
        assert leads[0].value == Decimal("10000.00")

    @pytest.mark.asyncio
    async def test_late_new_does_not_undo_qualified(self, crm):
        await _upsert(crm, L.QUALIFIED)
        lead = await _upsert(crm, L.NEW)

        assert lead.status == "QUALIFIED"
        assert [lead.status for lead in await crm.list_leads("agent-a")] == ["QUALIFIED"]

    @pytest.mark.asyncio
    async def test_final_status_is_kept(self, crm):
        await _upsert(crm, L.WON, metadata={"final": True})
        await _upsert(crm, L.LOST, metadata={"final": False})

        leads = await crm.list_leads("agent-a")
        assert [lead.status for lead in leads] == ["WON"]
        assert leads[0].data == {"final": True}
