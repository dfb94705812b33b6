"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from greia_platform.domain.enums import EngagementStatus, RequestType


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class Actor(BaseModel):
    """Authenticated caller, taken from the identity provider's bearer token."""

    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


class CandidateUpsert(BaseModel):
    """Create or update a provider profile."""

    id: str | None = None
    name: str
    email: str | None = None
    verified: bool = False
    active: bool = True
    regions: list[str] = Field(default_factory=list)
    specializations: list[str] = Field(default_factory=list)
    rating: float | None = Field(None, ge=0, le=5)


class CandidateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str | None = None
    verified: bool
    active: bool
    regions: list[str]
    specializations: list[str]
    rating: float
    completed_count: int
    total_deals: int
    total_valuations: int
    total_referrals: int
    total_bookings: int


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class RequestCreate(BaseModel):
    """A new marketplace request; matching runs on creation."""

    request_type: RequestType
    category: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1)
    title: str | None = None
    base_value: Decimal | None = Field(None, gt=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    details: dict | None = None
    target_candidate_id: str | None = None

    @model_validator(mode="after")
    def _referral_needs_target(self):
        if self.request_type == RequestType.REFERRAL and not self.target_candidate_id:
            raise ValueError("A referral must name its target_candidate_id")
        return self


class RequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    requester_id: str
    request_type: str
    category: str
    region: str
    title: str | None = None
    base_value: Decimal | None = None
    currency: str
    status: str
    version: int
    target_candidate_id: str | None = None
    completed_engagement_id: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    closed_at: datetime | None = None


class CloseRequestBody(BaseModel):
    expected_version: int | None = None
    reason: str | None = None


class InterestBody(BaseModel):
    """A provider volunteering for a pending request."""

    terms: dict | None = None
    notes: str | None = None


# ---------------------------------------------------------------------------
# Engagements
# ---------------------------------------------------------------------------


class EngagementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    request_id: str
    candidate_id: str
    introducer_id: str | None = None
    origin: str
    status: str
    version: int
    match_score: float | None = None
    match_rank: int | None = None
    base_value: Decimal | None = None
    final_value: Decimal | None = None
    standard_fee: Decimal | None = None
    override_fee: Decimal | None = None
    effective_fee: Decimal | None = None
    introducer_share: Decimal | None = None
    fulfiller_share: Decimal | None = None
    split_rate_pct: float | None = None
    currency: str
    terms: dict | None = None
    notes: str | None = None
    review_score: float | None = None
    payment_intent_id: str | None = None
    dispatched_at: datetime | None = None
    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    rejected_at: datetime | None = None
    withdrawn_at: datetime | None = None
    cancelled_at: datetime | None = None
    allowed_events: list[str] = Field(default_factory=list)


class MatchResponse(BaseModel):
    request: RequestResponse
    matched: int
    engagements: list[EngagementResponse]
    excluded: dict[str, list[str]] = Field(default_factory=dict)


class TransitionBody(BaseModel):
    """Common guard fields: the state and version the caller last saw."""

    expected_status: EngagementStatus | None = None
    expected_version: int | None = None
    notes: str | None = None


class AcceptBody(TransitionBody):
    fee_override: Decimal | None = Field(None, ge=0)


class CompleteBody(TransitionBody):
    final_value: Decimal | None = Field(None, gt=0)
    fee_override: Decimal | None = Field(None, ge=0)
    review_score: float | None = Field(None, ge=0, le=5)


class TermsBody(TransitionBody):
    terms: dict | None = None
    base_value: Decimal | None = Field(None, gt=0)
    fee_override: Decimal | None = Field(None, ge=0)


class ActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    request_id: str
    engagement_id: str | None = None
    event: str
    actor: str
    actor_id: str | None = None
    from_status: str | None = None
    to_status: str | None = None
    data: dict | None = None
    created_at: datetime | None = None


class AllowedEventsResponse(BaseModel):
    engagement_id: str
    status: str
    role: str
    allowed_events: list[str]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class EffectRetryResponse(BaseModel):
    retried: int
    succeeded: int
    failed: int
    abandoned: int
