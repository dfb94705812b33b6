"""Engagement state machine: validates transitions and enumerates side effects.

One state machine serves every request type. The per-type differences
(who may accept, whether a payment intent is raised) are supplied by a
``RequestPolicy`` rather than by separate copies of the table.
"""

from dataclasses import dataclass
from typing import Optional

from greia_platform.domain.enums import (
    EngagementActor,
    EngagementEvent,
    EngagementStatus,
    LeadStatus,
    SideEffect,
)
from greia_platform.services.errors import InvalidTransitionError

# ---------------------------------------------------------------------------
# Transition map: from_status -> {event: to_status}
# ---------------------------------------------------------------------------

S = EngagementStatus
E = EngagementEvent
A = EngagementActor
FX = SideEffect

INITIAL_STATUS = S.CREATED

TRANSITION_MAP: dict[EngagementStatus, dict[EngagementEvent, EngagementStatus]] = {
    S.CREATED: {
        E.DISPATCH: S.PENDING,
    },
    S.PENDING: {
        E.UPDATE_TERMS: S.PENDING,
        E.ACCEPT: S.ACCEPTED,
        E.REJECT: S.REJECTED,
        E.WITHDRAW: S.WITHDRAWN,
        E.CANCEL: S.CANCELLED,
    },
    S.ACCEPTED: {
        E.COMPLETE: S.COMPLETED,
        E.REJECT: S.REJECTED,
        E.WITHDRAW: S.WITHDRAWN,
        E.CANCEL: S.CANCELLED,
    },
}

TERMINAL_STATES: frozenset[EngagementStatus] = frozenset({
    S.REJECTED,
    S.COMPLETED,
    S.WITHDRAWN,
    S.CANCELLED,
})

# Who may fire each event. Admin may fire any defined transition.
DEFAULT_EVENT_ACTORS: dict[EngagementEvent, frozenset[EngagementActor]] = {
    E.DISPATCH: frozenset({A.SYSTEM}),
    E.UPDATE_TERMS: frozenset({A.REQUESTER, A.PROVIDER}),
    E.ACCEPT: frozenset({A.REQUESTER}),
    E.REJECT: frozenset({A.REQUESTER}),
    E.WITHDRAW: frozenset({A.PROVIDER}),
    E.CANCEL: frozenset({A.REQUESTER}),
    E.COMPLETE: frozenset({A.REQUESTER, A.PROVIDER}),
}

# Required side effects per event
EVENT_EFFECTS: dict[EngagementEvent, frozenset[SideEffect]] = {
    E.CREATE: frozenset({FX.AUDIT}),
    E.DISPATCH: frozenset({FX.AUDIT, FX.NOTIFY, FX.CRM_LEAD, FX.REALTIME}),
    E.UPDATE_TERMS: frozenset({FX.AUDIT, FX.NOTIFY, FX.REALTIME}),
    E.ACCEPT: frozenset({FX.AUDIT, FX.COMMISSION, FX.NOTIFY, FX.CRM_LEAD, FX.REALTIME}),
    E.COMPLETE: frozenset({
        FX.AUDIT,
        FX.FINALIZE_COMMISSION,
        FX.COUNTERS,
        FX.RATING,
        FX.CRM_LEAD,
        FX.NOTIFY,
        FX.REALTIME,
    }),
    E.REJECT: frozenset({FX.AUDIT, FX.NOTIFY, FX.CRM_LEAD, FX.REALTIME}),
    E.WITHDRAW: frozenset({FX.AUDIT, FX.NOTIFY, FX.REALTIME}),
    E.CANCEL: frozenset({FX.AUDIT, FX.NOTIFY, FX.CRM_LEAD, FX.REALTIME}),
}

# CRM lead status each event moves the lead to
EVENT_LEAD_STATUS: dict[EngagementEvent, LeadStatus] = {
    E.DISPATCH: LeadStatus.NEW,
    E.ACCEPT: LeadStatus.QUALIFIED,
    E.COMPLETE: LeadStatus.WON,
    E.REJECT: LeadStatus.LOST,
    E.CANCEL: LeadStatus.LOST,
}


@dataclass(frozen=True)
class TransitionPlan:
    """A validated transition and the side effects it requires."""

    from_status: Optional[EngagementStatus]
    event: EngagementEvent
    to_status: EngagementStatus
    actor: EngagementActor
    effects: frozenset[SideEffect]
    lead_status: Optional[LeadStatus] = None

    def requires(self, effect: SideEffect) -> bool:
        return effect in self.effects


class EngagementStateMachine:
    """Validates engagement state transitions and enforces actor rules."""

    def __init__(
        self,
        actor_overrides: Optional[dict[EngagementEvent, frozenset[EngagementActor]]] = None,
        extra_effects: Optional[dict[EngagementEvent, frozenset[SideEffect]]] = None,
    ):
        self.event_actors = {**DEFAULT_EVENT_ACTORS, **(actor_overrides or {})}
        self.extra_effects = extra_effects or {}

    def effects_for(self, event: EngagementEvent) -> frozenset[SideEffect]:
        """Static side-effect set for an event, including per-type extras."""
        return EVENT_EFFECTS[event] | self.extra_effects.get(event, frozenset())

    def creation_plan(self, actor: EngagementActor = A.SYSTEM) -> TransitionPlan:
        """Plan for creating a new engagement in its initial state."""
        return TransitionPlan(
            from_status=None,
            event=E.CREATE,
            to_status=INITIAL_STATUS,
            actor=actor,
            effects=self.effects_for(E.CREATE),
        )

    def validate_transition(
        self,
        current_status: EngagementStatus,
        event: EngagementEvent,
        actor: EngagementActor,
    ) -> EngagementStatus:
        """Return the successor status. Raise InvalidTransitionError if not allowed.

        Checks:
        1. The current state is not terminal.
        2. The event is defined for the current state.
        3. The actor has permission for this event.
        """
        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                event,
                f"{current_status.value} is terminal; no transitions allowed",
            )

        allowed_events = TRANSITION_MAP.get(current_status, {})
        if event not in allowed_events:
            raise InvalidTransitionError(
                current_status,
                event,
                f"Event {event.value} is not defined from {current_status.value}",
            )

        if actor != A.ADMIN:
            allowed_actors = self.event_actors.get(event, frozenset())
            if actor not in allowed_actors:
                raise InvalidTransitionError(
                    current_status,
                    event,
                    f"Actor {actor.value} is not permitted for this transition "
                    f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
                )

        return allowed_events[event]

    def plan(
        self,
        current_status: EngagementStatus,
        event: EngagementEvent,
        actor: EngagementActor,
    ) -> TransitionPlan:
        """Validate a transition and return its plan of required side effects."""
        to_status = self.validate_transition(current_status, event, actor)
        return TransitionPlan(
            from_status=current_status,
            event=event,
            to_status=to_status,
            actor=actor,
            effects=self.effects_for(event),
            lead_status=EVENT_LEAD_STATUS.get(event),
        )

    def get_allowed_events(
        self,
        current_status: EngagementStatus,
        actor: EngagementActor,
    ) -> list[EngagementEvent]:
        """Return the events the given actor may fire from the current status."""
        if current_status in TERMINAL_STATES:
            return []
        results: list[EngagementEvent] = []
        for event in TRANSITION_MAP.get(current_status, {}):
            if actor == A.ADMIN or actor in self.event_actors.get(event, frozenset()):
                results.append(event)
        return results


def is_terminal(status: EngagementStatus) -> bool:
    return status in TERMINAL_STATES
