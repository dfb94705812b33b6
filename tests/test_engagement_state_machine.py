"""Unit tests for the EngagementStateMachine and per-type policies."""

import pytest

from greia_platform.domain.enums import (
    EngagementActor,
    EngagementEvent,
    EngagementStatus,
    LeadStatus,
    RequestType,
    SideEffect,
)
from greia_platform.services.engagement_state_machine import (
    DEFAULT_EVENT_ACTORS,
    EVENT_EFFECTS,
    TERMINAL_STATES,
    TRANSITION_MAP,
    EngagementStateMachine,
    is_terminal,
)
from greia_platform.services.errors import InvalidTransitionError
from greia_platform.services.request_policies import get_policy

S = EngagementStatus
E = EngagementEvent
A = EngagementActor
FX = SideEffect


@pytest.fixture
def sm():
    return EngagementStateMachine()


# ---------------------------------------------------------------------------
# Test every valid transition in the transition map
# ---------------------------------------------------------------------------


class TestValidTransitions:
    """Every transition defined in TRANSITION_MAP should succeed for allowed actors."""

    @pytest.mark.parametrize(
        "from_status,event,to_status,actor",
        [
            (from_s, event, to_s, actor)
            for from_s, events in TRANSITION_MAP.items()
            for event, to_s in events.items()
            for actor in DEFAULT_EVENT_ACTORS[event]
        ],
    )
    def test_all_valid_transitions(self, sm, from_status, event, to_status, actor):
        assert sm.validate_transition(from_status, event, actor) == to_status

    def test_happy_path(self, sm):
        steps = [
            (S.CREATED, E.DISPATCH, A.SYSTEM, S.PENDING),
            (S.PENDING, E.UPDATE_TERMS, A.PROVIDER, S.PENDING),
            (S.PENDING, E.ACCEPT, A.REQUESTER, S.ACCEPTED),
            (S.ACCEPTED, E.COMPLETE, A.PROVIDER, S.COMPLETED),
        ]
        for from_s, event, actor, expected in steps:
            assert sm.validate_transition(from_s, event, actor) == expected


# ---------------------------------------------------------------------------
# Test invalid transitions
# ---------------------------------------------------------------------------


class TestInvalidTransitions:
    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES))
    @pytest.mark.parametrize("event", list(E))
    def test_terminal_states_accept_no_event(self, sm, terminal, event):
        with pytest.raises(InvalidTransitionError, match="terminal"):
            sm.validate_transition(terminal, event, A.ADMIN)

    def test_cannot_complete_before_accept(self, sm):
        with pytest.raises(InvalidTransitionError, match="not defined"):
            sm.validate_transition(S.PENDING, E.COMPLETE, A.REQUESTER)

    def test_cannot_accept_twice(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.ACCEPTED, E.ACCEPT, A.REQUESTER)

    def test_terms_frozen_after_accept(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.ACCEPTED, E.UPDATE_TERMS, A.PROVIDER)

    def test_created_only_dispatches(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.CREATED, E.ACCEPT, A.REQUESTER)

    def test_error_carries_context(self, sm):
        with pytest.raises(InvalidTransitionError) as exc_info:
            sm.validate_transition(S.COMPLETED, E.CANCEL, A.REQUESTER)
        assert exc_info.value.context == {"current_status": "completed", "event": "cancel"}


# ---------------------------------------------------------------------------
# Test wrong actor rejections
# ---------------------------------------------------------------------------


class TestWrongActor:
    def test_requester_cannot_withdraw(self, sm):
        with pytest.raises(InvalidTransitionError, match="not permitted"):
            sm.validate_transition(S.PENDING, E.WITHDRAW, A.REQUESTER)

    def test_provider_cannot_cancel(self, sm):
        with pytest.raises(InvalidTransitionError, match="not permitted"):
            sm.validate_transition(S.ACCEPTED, E.CANCEL, A.PROVIDER)

    def test_provider_cannot_accept_own_engagement(self, sm):
        with pytest.raises(InvalidTransitionError, match="not permitted"):
            sm.validate_transition(S.PENDING, E.ACCEPT, A.PROVIDER)

    def test_requester_cannot_dispatch(self, sm):
        with pytest.raises(InvalidTransitionError, match="not permitted"):
            sm.validate_transition(S.CREATED, E.DISPATCH, A.REQUESTER)


class TestAdminOverride:
    def test_admin_can_fire_any_defined_event(self, sm):
        assert sm.validate_transition(S.PENDING, E.WITHDRAW, A.ADMIN) == S.WITHDRAWN
        assert sm.validate_transition(S.ACCEPTED, E.COMPLETE, A.ADMIN) == S.COMPLETED

    def test_admin_cannot_fire_undefined_event(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.PENDING, E.COMPLETE, A.ADMIN)


# ---------------------------------------------------------------------------
# Side-effect plans
# ---------------------------------------------------------------------------


class TestPlans:
    def test_every_event_has_audit(self):
        for event, effects in EVENT_EFFECTS.items():
            assert FX.AUDIT in effects, event

    def test_accept_plan(self, sm):
        plan = sm.plan(S.PENDING, E.ACCEPT, A.REQUESTER)
        assert plan.to_status == S.ACCEPTED
        assert plan.requires(FX.COMMISSION)
        assert plan.lead_status == LeadStatus.QUALIFIED
        assert not plan.requires(FX.COUNTERS)

    def test_complete_plan(self, sm):
        plan = sm.plan(S.ACCEPTED, E.COMPLETE, A.PROVIDER)
        for effect in (FX.FINALIZE_COMMISSION, FX.COUNTERS, FX.RATING, FX.CRM_LEAD):
            assert plan.requires(effect)
        assert plan.lead_status == LeadStatus.WON

    def test_withdraw_has_no_lead_update(self, sm):
        plan = sm.plan(S.PENDING, E.WITHDRAW, A.PROVIDER)
        assert plan.lead_status is None
        assert not plan.requires(FX.CRM_LEAD)

    @pytest.mark.parametrize("event", [E.REJECT, E.CANCEL])
    def test_lost_leads(self, sm, event):
        assert sm.plan(S.PENDING, event, A.REQUESTER).lead_status == LeadStatus.LOST

    def test_creation_plan(self, sm):
        plan = sm.creation_plan()
        assert plan.from_status is None
        assert plan.to_status == S.CREATED
        assert plan.effects == frozenset({FX.AUDIT})


# ---------------------------------------------------------------------------
# Allowed events
# ---------------------------------------------------------------------------


class TestAllowedEvents:
    def test_pending_requester(self, sm):
        allowed = sm.get_allowed_events(S.PENDING, A.REQUESTER)
        assert set(allowed) == {E.UPDATE_TERMS, E.ACCEPT, E.REJECT, E.CANCEL}

    def test_pending_provider(self, sm):
        allowed = sm.get_allowed_events(S.PENDING, A.PROVIDER)
        assert set(allowed) == {E.UPDATE_TERMS, E.WITHDRAW}

    def test_accepted_provider_can_complete(self, sm):
        assert E.COMPLETE in sm.get_allowed_events(S.ACCEPTED, A.PROVIDER)

    def test_terminal_state_no_events(self, sm):
        for terminal in TERMINAL_STATES:
            assert sm.get_allowed_events(terminal, A.ADMIN) == []
            assert is_terminal(terminal)


# ---------------------------------------------------------------------------
# Per-type policies
# ---------------------------------------------------------------------------


class TestPolicies:
    def test_referral_provider_answers(self, settings):
        machine = get_policy(RequestType.REFERRAL, settings).state_machine()
        assert machine.validate_transition(S.PENDING, E.ACCEPT, A.PROVIDER) == S.ACCEPTED
        with pytest.raises(InvalidTransitionError, match="not permitted"):
            machine.validate_transition(S.PENDING, E.ACCEPT, A.REQUESTER)
        # The referring agent may still cancel
        assert machine.validate_transition(S.PENDING, E.CANCEL, A.REQUESTER) == S.CANCELLED

    def test_booking_accept_raises_payment_intent(self, settings):
        machine = get_policy(RequestType.BOOKING, settings).state_machine()
        assert machine.plan(S.PENDING, E.ACCEPT, A.REQUESTER).requires(FX.PAYMENT_INTENT)
        assert not machine.plan(S.ACCEPTED, E.COMPLETE, A.REQUESTER).requires(FX.PAYMENT_INTENT)

    def test_other_types_never_raise_payment_intent(self, settings):
        for request_type in (RequestType.VALUATION, RequestType.PROPERTY_SUBMISSION):
            machine = get_policy(request_type, settings).state_machine()
            assert not machine.plan(S.PENDING, E.ACCEPT, A.REQUESTER).requires(FX.PAYMENT_INTENT)

    def test_policy_accepts_stored_string(self, settings):
        policy = get_policy("valuation", settings)
        assert policy.volume_counter == "total_valuations"
        assert policy.top_n == 5
        assert policy.notification_type(E.DISPATCH) == "VALUATION_DISPATCH"

    def test_top_n_defaults(self, settings):
        assert get_policy(RequestType.PROPERTY_SUBMISSION, settings).top_n == 10
        assert get_policy(RequestType.REFERRAL, settings).top_n == 1
        assert get_policy(RequestType.BOOKING, settings).top_n == 1
