"""SQLAlchemy ORM models for the GREIA marketplace engine.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB, no ARRAY)
- DateTime for timestamps (no TIMESTAMPTZ)
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from greia_platform.infra.database import Base


# ---------------------------------------------------------------------------
# Provider Domain
# ---------------------------------------------------------------------------


class CandidateProfile(Base):
    """Provider/agent profile that can be matched to marketplace requests.

    Counters and rating are only ever changed through
    ``EngagementRepository.atomic_increment_candidate_counters``.
    """

    __tablename__ = "candidate_profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    verified = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    regions = Column(JSON, nullable=False, default=list)  # served regions
    specializations = Column(JSON, nullable=False, default=list)
    rating = Column(Float, nullable=False, default=0.0)  # 0-5, running mean of reviews

    # Cumulative counters
    completed_count = Column(Integer, nullable=False, default=0)
    total_deals = Column(Integer, nullable=False, default=0)
    total_valuations = Column(Integer, nullable=False, default=0)
    total_referrals = Column(Integer, nullable=False, default=0)
    total_bookings = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    engagements = relationship(
        "Engagement", back_populates="candidate", foreign_keys="Engagement.candidate_id"
    )


# ---------------------------------------------------------------------------
# Request Domain
# ---------------------------------------------------------------------------


class MarketRequest(Base):
    """Originating ask for a match: referral, property submission, valuation or booking."""

    __tablename__ = "market_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    requester_id = Column(String(36), nullable=False, index=True)
    request_type = Column(String(30), nullable=False, index=True)  # RequestType
    category = Column(String(100), nullable=False)
    region = Column(String(100), nullable=False)
    title = Column(String(255), nullable=True)
    base_value = Column(Numeric(14, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="EUR")
    details = Column(JSON, nullable=True)

    # Referral: the single designated provider
    target_candidate_id = Column(String(36), ForeignKey("candidate_profiles.id"), nullable=True)

    # Status (optimistic concurrency via version)
    status = Column(String(20), nullable=False, default="pending", index=True)  # RequestStatus
    version = Column(Integer, nullable=False, default=1)
    completed_engagement_id = Column(String(36), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    engagements = relationship("Engagement", back_populates="request")


# ---------------------------------------------------------------------------
# Engagement Lifecycle Domain
# ---------------------------------------------------------------------------


class Engagement(Base):
    """Stateful link between a request and a candidate profile."""

    __tablename__ = "engagements"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String(36), ForeignKey("market_requests.id"), nullable=False, index=True)
    candidate_id = Column(
        String(36), ForeignKey("candidate_profiles.id"), nullable=False, index=True
    )
    # Referral: the referring agent, paid the introducer share
    introducer_id = Column(String(36), nullable=True)
    origin = Column(String(20), nullable=False, default="matched")  # EngagementOrigin

    # Status (optimistic concurrency via version)
    status = Column(String(20), nullable=False, default="created", index=True)
    version = Column(Integer, nullable=False, default=1)

    # Matching
    match_score = Column(Float)
    match_rank = Column(Integer)

    # Commission
    base_value = Column(Numeric(14, 2), nullable=True)
    final_value = Column(Numeric(14, 2), nullable=True)
    standard_fee = Column(Numeric(14, 2), nullable=True)
    override_fee = Column(Numeric(14, 2), nullable=True)
    effective_fee = Column(Numeric(14, 2), nullable=True)
    introducer_share = Column(Numeric(14, 2), nullable=True)
    fulfiller_share = Column(Numeric(14, 2), nullable=True)
    split_rate_pct = Column(Float, nullable=True)
    currency = Column(String(3), nullable=False, default="EUR")

    # Terms / review
    terms = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    review_score = Column(Float, nullable=True)

    # Bookings: opaque handle returned by the payment collaborator
    payment_intent_id = Column(String(255), nullable=True)

    # Transition timestamps
    dispatched_at = Column(DateTime, nullable=True)
    terms_updated_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    withdrawn_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    request = relationship("MarketRequest", back_populates="engagements")
    candidate = relationship(
        "CandidateProfile", back_populates="engagements", foreign_keys=[candidate_id]
    )
    activities = relationship("ActivityRecord", back_populates="engagement")


class ActivityRecord(Base):
    """Immutable audit trail entry, written on every transition."""

    __tablename__ = "activity_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String(36), ForeignKey("market_requests.id"), nullable=False, index=True)
    engagement_id = Column(String(36), ForeignKey("engagements.id"), nullable=True, index=True)
    event = Column(String(50), nullable=False)  # EngagementEvent or request-level event
    actor = Column(String(20), nullable=False)  # EngagementActor
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    engagement = relationship("Engagement", back_populates="activities")


# ---------------------------------------------------------------------------
# Downstream Domain (CRM, notifications, deferred effects)
# ---------------------------------------------------------------------------


class Lead(Base):
    """CRM lead owned by one party of an engagement."""

    __tablename__ = "leads"
    __table_args__ = (UniqueConstraint("owner_id", "engagement_id", name="uq_lead_owner_engagement"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(36), nullable=False, index=True)
    engagement_id = Column(String(36), nullable=True)
    title = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="NEW")  # LeadStatus
    value = Column(Numeric(14, 2), nullable=True)
    source = Column(String(50), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class Notification(Base):
    """In-app notification record."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=func.now())


class DeferredEffect(Base):
    """A downstream effect that failed after its transition committed."""

    __tablename__ = "deferred_effects"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    kind = Column(String(30), nullable=False)  # EffectKind
    engagement_id = Column(String(36), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
