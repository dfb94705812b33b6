"""Domain enumerations for the GREIA marketplace engine.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class RequestType(str, Enum):
    """Kind of marketplace request a requester can raise."""

    REFERRAL = "referral"
    PROPERTY_SUBMISSION = "property_submission"
    VALUATION = "valuation"
    BOOKING = "booking"


class RequestStatus(str, Enum):
    """Status of a marketplace request."""

    PENDING = "pending"
    COMPLETED = "completed"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Engagement Lifecycle Enums
# ---------------------------------------------------------------------------


class EngagementStatus(str, Enum):
    """Status of an engagement through its lifecycle."""

    CREATED = "created"
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


class EngagementEvent(str, Enum):
    """Event that drives an engagement transition."""

    CREATE = "create"
    DISPATCH = "dispatch"
    UPDATE_TERMS = "update_terms"
    ACCEPT = "accept"
    COMPLETE = "complete"
    REJECT = "reject"
    WITHDRAW = "withdraw"
    CANCEL = "cancel"


class EngagementActor(str, Enum):
    """Role of the party performing an engagement action."""

    REQUESTER = "requester"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class EngagementOrigin(str, Enum):
    """How an engagement came to exist."""

    MATCHED = "matched"
    INTEREST = "interest"
    REFERRAL = "referral"


# ---------------------------------------------------------------------------
# Downstream (fan-out) Enums
# ---------------------------------------------------------------------------


class LeadStatus(str, Enum):
    """CRM lead status vocabulary mapped from engagement state."""

    NEW = "NEW"
    QUALIFIED = "QUALIFIED"
    WON = "WON"
    LOST = "LOST"


class EffectKind(str, Enum):
    """Kind of downstream side effect produced by a transition."""

    CRM_LEAD = "crm_lead"
    NOTIFICATION = "notification"
    REALTIME = "realtime"
    PAYMENT_INTENT = "payment_intent"


class DeferredEffectStatus(str, Enum):
    """Retry status of a downstream effect that failed after the state write."""

    PENDING = "pending"
    DONE = "done"
    ABANDONED = "abandoned"


class SideEffect(str, Enum):
    """Side effect a transition requires, enumerated statically per event."""

    AUDIT = "audit"
    COMMISSION = "commission"
    FINALIZE_COMMISSION = "finalize_commission"
    COUNTERS = "counters"
    RATING = "rating"
    CRM_LEAD = "crm_lead"
    NOTIFY = "notify"
    REALTIME = "realtime"
    PAYMENT_INTENT = "payment_intent"


class RequestEvent(str, Enum):
    """Request-level event recorded in the audit trail."""

    CREATE = "request_create"
    MATCH = "match"
    COMPLETE = "request_complete"
    CLOSE = "close"
    INTEREST = "interest"
