"""Tests for downstream fan-out: effect enumeration, ordering and deferral."""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from greia_platform.app.config import Settings
from greia_platform.domain.enums import (
    EffectKind,
    EngagementActor,
    EngagementEvent,
    EngagementStatus,
    RequestType,
)
from greia_platform.domain.models import DeferredEffect
from greia_platform.services import fanout_coordinator
from greia_platform.services.fanout_coordinator import FanoutCoordinator, build_effects
from greia_platform.services.request_policies import get_policy

S = EngagementStatus
E = EngagementEvent
A = EngagementActor
K = EffectKind


def _request(request_type=RequestType.REFERRAL, requester_id="referrer", status="pending"):
    return SimpleNamespace(
        id="req-1",
        requester_id=requester_id,
        request_type=request_type.value,
        category="residential",
        region="South Dublin",
        status=status,
    )


def _engagement(candidate_id="target", introducer_id="referrer", base_value="200000.00"):
    return SimpleNamespace(
        id="eng-1",
        candidate_id=candidate_id,
        introducer_id=introducer_id,
        base_value=Decimal(base_value) if base_value else None,
        final_value=None,
        currency="EUR",
        effective_fee=Decimal("10000.00"),
        introducer_share=Decimal("2000.00"),
        fulfiller_share=Decimal("8000.00"),
    )


def _plan(request_type, status, event, actor):
    return get_policy(request_type, Settings(_env_file=None)).state_machine().plan(status, event, actor)


@pytest.fixture
def crm_mock():
    mock = MagicMock()
    mock.upsert_lead = AsyncMock()
    return mock


@pytest.fixture
def notifications_mock():
    mock = MagicMock()
    mock.create_notification = AsyncMock()
    return mock


@pytest.fixture
def coordinator(crm_mock, notifications_mock, realtime_mock, payment_gateway_mock, session_factory, settings):
    return FanoutCoordinator(
        crm=crm_mock,
        notifications=notifications_mock,
        realtime=realtime_mock,
        payments=payment_gateway_mock,
        session_factory=session_factory,
        settings=settings,
    )


async def _deferred(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(DeferredEffect))
        return list(result.scalars().all())


class TestBuildEffects:
    def test_referral_accept_effects_in_order(self):
        plan = _plan(RequestType.REFERRAL, S.PENDING, E.ACCEPT, A.PROVIDER)

        effects = build_effects(plan, _engagement(), _request(), "target", "Tara")

        assert [kind for kind, _ in effects] == [
            K.CRM_LEAD, K.CRM_LEAD, K.NOTIFICATION, K.REALTIME, K.REALTIME,
        ]
        leads = [payload for kind, payload in effects if kind == K.CRM_LEAD]
        assert [lead["owner_id"] for lead in leads] == ["target", "referrer"]
        assert leads[1]["title"] == "Referral - South Dublin (Tara)"
        assert leads[0]["status"] == "QUALIFIED"
        assert leads[0]["metadata"]["introducer_share"] == "2000.00"

    def test_actor_is_not_notified(self):
        plan = _plan(RequestType.REFERRAL, S.PENDING, E.ACCEPT, A.PROVIDER)

        effects = build_effects(plan, _engagement(), _request(), "target")

        recipients = [p["user_id"] for kind, p in effects if kind == K.NOTIFICATION]
        assert recipients == ["referrer"]
        channels = [p["channel"] for kind, p in effects if kind == K.REALTIME]
        assert channels == ["private-user-referrer", "private-user-target"]

    def test_submission_notifies_every_counterpart(self):
        plan = _plan(RequestType.PROPERTY_SUBMISSION, S.PENDING, E.CANCEL, A.ADMIN)
        request = _request(RequestType.PROPERTY_SUBMISSION, requester_id="seller-1")

        effects = build_effects(plan, _engagement(introducer_id=None), request, "admin-1")

        recipients = [p["user_id"] for kind, p in effects if kind == K.NOTIFICATION]
        assert recipients == ["seller-1", "target"]
        assert all(p["type"] == "PROPERTY_SUBMISSION_CANCEL" for kind, p in effects if kind == K.NOTIFICATION)

    def test_withdraw_has_no_lead_update(self):
        plan = _plan(RequestType.PROPERTY_SUBMISSION, S.PENDING, E.WITHDRAW, A.PROVIDER)
        request = _request(RequestType.PROPERTY_SUBMISSION, requester_id="seller-1")

        effects = build_effects(plan, _engagement(introducer_id=None), request, "target")

        assert K.CRM_LEAD not in [kind for kind, _ in effects]

    def test_booking_accept_ends_with_payment_intent(self):
        plan = _plan(RequestType.BOOKING, S.PENDING, E.ACCEPT, A.REQUESTER)
        request = _request(RequestType.BOOKING, requester_id="client-1")

        effects = build_effects(plan, _engagement(introducer_id=None, base_value="150.00"), request, "client-1")

        kind, payload = effects[-1]
        assert kind == K.PAYMENT_INTENT
        assert payload == {
            "engagement_id": "eng-1",
            "amount": "150.00",
            "currency": "EUR",
            "metadata": {"engagement_id": "eng-1", "request_id": "req-1"},
        }

    def test_booking_without_value_skips_payment(self):
        plan = _plan(RequestType.BOOKING, S.PENDING, E.ACCEPT, A.REQUESTER)
        request = _request(RequestType.BOOKING, requester_id="client-1")

        effects = build_effects(plan, _engagement(introducer_id=None, base_value=None), request, "client-1")

        assert K.PAYMENT_INTENT not in [kind for kind, _ in effects]

    def test_completion_announces_request_outcome(self):
        plan = _plan(RequestType.PROPERTY_SUBMISSION, S.ACCEPTED, E.COMPLETE, A.PROVIDER)
        request = _request(RequestType.PROPERTY_SUBMISSION, requester_id="seller-1", status="completed")

        effects = build_effects(plan, _engagement(introducer_id=None), request, "target")

        events = [(p["channel"], p["event"]) for kind, p in effects if kind == K.REALTIME]
        assert ("private-user-seller-1", "engagement-completed") in events
        assert events[-1] == ("private-user-seller-1", "request-completed")


class TestApply:
    @pytest.mark.asyncio
    async def test_all_effects_applied(self, coordinator, crm_mock, realtime_mock):
        plan = _plan(RequestType.REFERRAL, S.PENDING, E.ACCEPT, A.PROVIDER)

        result = await coordinator.apply(plan, _engagement(), _request(), "target", "Tara")

        assert result.ok
        assert result.applied == ["crm_lead", "crm_lead", "notification", "realtime", "realtime"]
        assert crm_mock.upsert_lead.await_count == 2
        assert crm_mock.upsert_lead.await_args_list[0].kwargs["value"] == Decimal("200000.00")
        assert [event for _, event, _ in realtime_mock.published] == ["engagement-accepted"] * 2

    @pytest.mark.asyncio
    async def test_policy_built_from_coordinator_settings(self, coordinator, settings, monkeypatch):
        seen = []

        def recording_get_policy(request_type, policy_settings=None):
            seen.append(policy_settings)
            return get_policy(request_type, policy_settings)

        monkeypatch.setattr(fanout_coordinator, "get_policy", recording_get_policy)
        plan = _plan(RequestType.REFERRAL, S.PENDING, E.ACCEPT, A.PROVIDER)

        await coordinator.apply(plan, _engagement(), _request(), "target", "Tara")

        assert seen and all(s is settings for s in seen)

    @pytest.mark.asyncio
    async def test_failure_is_deferred_and_later_steps_still_run(
        self, coordinator, notifications_mock, realtime_mock, session_factory
    ):
        notifications_mock.create_notification.side_effect = RuntimeError("smtp timeout")
        plan = _plan(RequestType.REFERRAL, S.PENDING, E.ACCEPT, A.PROVIDER)

        result = await coordinator.apply(plan, _engagement(), _request(), "target")

        assert not result.ok
        assert result.failed == ["notification"]
        assert result.applied == ["crm_lead", "crm_lead", "realtime", "realtime"]
        assert len(realtime_mock.published) == 2

        deferred = await _deferred(session_factory)
        assert len(deferred) == 1
        assert deferred[0].id == result.deferred_ids[0]
        assert deferred[0].kind == "notification"
        assert deferred[0].payload["user_id"] == "referrer"
        assert deferred[0].attempts == 1
        assert deferred[0].last_error == "smtp timeout"


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_succeeds_once_downstream_recovers(
        self, coordinator, notifications_mock, session_factory
    ):
        notifications_mock.create_notification.side_effect = RuntimeError("smtp timeout")
        plan = _plan(RequestType.REFERRAL, S.PENDING, E.ACCEPT, A.PROVIDER)
        await coordinator.apply(plan, _engagement(), _request(), "target")

        notifications_mock.create_notification.side_effect = None
        stats = await coordinator.retry_deferred_effects()

        assert stats == {"retried": 1, "succeeded": 1, "failed": 0, "abandoned": 0}
        assert notifications_mock.create_notification.await_args.kwargs["user_id"] == "referrer"
        deferred = await _deferred(session_factory)
        assert deferred[0].status == "done"

        # Nothing left to retry
        assert (await coordinator.retry_deferred_effects())["retried"] == 0

    @pytest.mark.asyncio
    async def test_retry_failure_counts_attempts(
        self, coordinator, notifications_mock, session_factory
    ):
        notifications_mock.create_notification.side_effect = RuntimeError("smtp timeout")
        plan = _plan(RequestType.REFERRAL, S.PENDING, E.ACCEPT, A.PROVIDER)
        await coordinator.apply(plan, _engagement(), _request(), "target")

        stats = await coordinator.retry_deferred_effects()

        assert stats == {"retried": 1, "succeeded": 0, "failed": 1, "abandoned": 0}
        deferred = await _deferred(session_factory)
        assert deferred[0].status == "pending"
        assert deferred[0].attempts == 2

    @pytest.mark.asyncio
    async def test_effect_abandoned_at_attempt_limit(
        self, crm_mock, notifications_mock, realtime_mock, payment_gateway_mock, session_factory
    ):
        coordinator = FanoutCoordinator(
            crm=crm_mock,
            notifications=notifications_mock,
            realtime=realtime_mock,
            payments=payment_gateway_mock,
            session_factory=session_factory,
            settings=Settings(_env_file=None, effect_max_attempts=2),
        )
        crm_mock.upsert_lead.side_effect = RuntimeError("crm down")
        plan = _plan(RequestType.PROPERTY_SUBMISSION, S.PENDING, E.REJECT, A.REQUESTER)
        request = _request(RequestType.PROPERTY_SUBMISSION, requester_id="seller-1")
        await coordinator.apply(plan, _engagement(introducer_id=None), request, "seller-1")

        stats = await coordinator.retry_deferred_effects()

        assert stats["abandoned"] == 1
        deferred = await _deferred(session_factory)
        assert [(d.status, d.attempts) for d in deferred] == [("abandoned", 2)]
        assert (await coordinator.retry_deferred_effects())["retried"] == 0
