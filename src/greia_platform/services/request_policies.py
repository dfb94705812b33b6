"""Per-request-type policy table.

Referrals, property submissions, valuations and bookings share one
engagement state machine. What differs between them lives here: the
eligibility thresholds, the ranking volume counter, top-N, who answers
the request, lead/notification wording and whether a payment intent is
raised on acceptance.
"""

from dataclasses import dataclass, field
from typing import Optional

from greia_platform.app.config import Settings, get_settings
from greia_platform.domain.enums import (
    EngagementActor,
    EngagementEvent,
    RequestType,
    SideEffect,
)
from greia_platform.services.engagement_state_machine import EngagementStateMachine

A = EngagementActor
E = EngagementEvent


@dataclass(frozen=True)
class RequestPolicy:
    """Type-specific configuration for matching and engagement side effects."""

    request_type: RequestType
    label: str
    top_n: int
    volume_counter: str  # CandidateProfile counter used for ranking and completion
    requires_specialization: bool = False
    min_volume: int = 0
    min_rating: float = 0.0
    introducer_is_requester: bool = False  # referrals pay the referring agent
    allows_interest: bool = True  # providers may engage on their own initiative
    needs_payment_intent: bool = False
    lead_source: str = "MARKETPLACE"
    actor_overrides: dict[EngagementEvent, frozenset[EngagementActor]] = field(default_factory=dict)

    def state_machine(self) -> EngagementStateMachine:
        extra = {}
        if self.needs_payment_intent:
            extra[E.ACCEPT] = frozenset({SideEffect.PAYMENT_INTENT})
        return EngagementStateMachine(actor_overrides=self.actor_overrides, extra_effects=extra)

    def notification_type(self, event: EngagementEvent) -> str:
        """e.g. VALUATION_DISPATCH, REFERRAL_ACCEPT."""
        return f"{self.request_type.value.upper()}_{event.value.upper()}"

    def lead_title(self, region: str, counterpart_name: Optional[str] = None) -> str:
        if counterpart_name:
            return f"{self.label} - {region} ({counterpart_name})"
        return f"{self.label} - {region}"


def build_policies(settings: Settings) -> dict[RequestType, RequestPolicy]:
    """Build the policy table from configuration."""
    return {
        RequestType.REFERRAL: RequestPolicy(
            request_type=RequestType.REFERRAL,
            label="Referral",
            top_n=settings.top_n_referral,
            volume_counter="total_deals",
            requires_specialization=True,
            introducer_is_requester=True,
            allows_interest=False,
            lead_source="AGENT_REFERRAL",
            # The referred agent answers the referral; the referrer may cancel it
            actor_overrides={
                E.ACCEPT: frozenset({A.PROVIDER}),
                E.REJECT: frozenset({A.PROVIDER}),
            },
        ),
        RequestType.PROPERTY_SUBMISSION: RequestPolicy(
            request_type=RequestType.PROPERTY_SUBMISSION,
            label="Property Submission",
            top_n=settings.top_n_property_submission,
            volume_counter="total_deals",
            requires_specialization=True,
            lead_source="PROPERTY_SUBMISSION",
        ),
        RequestType.VALUATION: RequestPolicy(
            request_type=RequestType.VALUATION,
            label="Valuation",
            top_n=settings.top_n_valuation,
            volume_counter="total_valuations",
            min_volume=settings.valuation_min_count,
            min_rating=settings.valuation_min_rating,
            lead_source="VALUATION_REQUEST",
        ),
        RequestType.BOOKING: RequestPolicy(
            request_type=RequestType.BOOKING,
            label="Booking",
            top_n=settings.top_n_booking,
            volume_counter="total_bookings",
            needs_payment_intent=True,
            lead_source="BOOKING",
        ),
    }


def get_policy(request_type, settings: Optional[Settings] = None) -> RequestPolicy:
    """Return the policy for a request type (enum or stored string value)."""
    if isinstance(request_type, str):
        request_type = RequestType(request_type)
    return build_policies(settings or get_settings())[request_type]
