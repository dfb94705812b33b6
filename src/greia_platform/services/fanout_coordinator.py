"""Fan-out Coordinator: propagates a committed transition downstream.

Runs after the authoritative transaction has committed. Order:

    1. CRM lead upsert (provider, plus introducer for referrals)
    2. In-app notification for every counterpart of the actor
    3. Real-time event on each party's private channel
    4. Payment intent (bookings, on acceptance)

A failing step is logged and stored as a ``DeferredEffect`` for
``retry_deferred_effects``; it never raises to the caller and never undoes
the committed state or the steps that already succeeded.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update

from greia_platform.app.config import Settings, get_settings
from greia_platform.domain.enums import (
    DeferredEffectStatus,
    EffectKind,
    EngagementEvent,
    SideEffect,
)
from greia_platform.domain.models import DeferredEffect, Engagement, MarketRequest
from greia_platform.infra.database import async_session
from greia_platform.services.crm_service import CRMService
from greia_platform.services.engagement_state_machine import TransitionPlan
from greia_platform.services.errors import DownstreamEffectFailure
from greia_platform.services.notification_service import NotificationService
from greia_platform.services.payment_gateway import PaymentGateway
from greia_platform.services.realtime import ConnectionManager, manager, user_channel
from greia_platform.services.request_policies import get_policy

logger = logging.getLogger(__name__)

E = EngagementEvent

# (title, content) templates per event
EVENT_MESSAGES: dict[EngagementEvent, tuple[str, str]] = {
    E.DISPATCH: ("New {label} request", "You have a new {label_lower} request in {region}."),
    E.UPDATE_TERMS: ("{label} terms updated", "The terms of your {label_lower} in {region} were updated."),
    E.ACCEPT: ("{label} accepted", "Your {label_lower} in {region} was accepted."),
    E.COMPLETE: ("{label} completed", "Your {label_lower} in {region} is complete."),
    E.REJECT: ("{label} declined", "Your {label_lower} in {region} was declined."),
    E.WITHDRAW: ("{label} withdrawn", "The provider withdrew from your {label_lower} in {region}."),
    E.CANCEL: ("{label} cancelled", "The {label_lower} in {region} was cancelled by the requester."),
}

# Effect kinds in execution order
EFFECT_ORDER = (
    EffectKind.CRM_LEAD,
    EffectKind.NOTIFICATION,
    EffectKind.REALTIME,
    EffectKind.PAYMENT_INTENT,
)


@dataclass
class FanoutResult:
    """Outcome of one fan-out: effect kinds applied and failed (deferred)."""

    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deferred_ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def _money(value) -> Optional[str]:
    return str(value) if value is not None else None


def realtime_event_name(plan: TransitionPlan) -> str:
    if plan.event == E.DISPATCH:
        return "engagement-created"
    return f"engagement-{plan.to_status.value}"


def build_effects(
    plan: TransitionPlan,
    engagement: Engagement,
    request: MarketRequest,
    actor_id: Optional[str],
    candidate_name: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> list[tuple[EffectKind, dict[str, Any]]]:
    """Enumerate the downstream effects of a transition as JSON-safe payloads."""
    policy = get_policy(request.request_type, settings)
    parties = [p for p in (request.requester_id, engagement.candidate_id, engagement.introducer_id) if p]
    parties = list(dict.fromkeys(parties))
    counterparts = [p for p in parties if p != actor_id]
    value = engagement.final_value if engagement.final_value is not None else engagement.base_value
    base_meta = {
        "engagement_id": engagement.id,
        "request_id": request.id,
        "request_type": request.request_type,
        "status": plan.to_status.value,
    }

    effects: list[tuple[EffectKind, dict[str, Any]]] = []

    if plan.requires(SideEffect.CRM_LEAD) and plan.lead_status is not None:
        owners = [engagement.candidate_id]
        if engagement.introducer_id and engagement.introducer_id != engagement.candidate_id:
            owners.append(engagement.introducer_id)
        for owner in owners:
            counterpart = candidate_name if owner != engagement.candidate_id else None
            effects.append((EffectKind.CRM_LEAD, {
                "owner_id": owner,
                "engagement_id": engagement.id,
                "title": policy.lead_title(request.region, counterpart),
                "status": plan.lead_status.value,
                "value": _money(value),
                "source": policy.lead_source,
                "metadata": {
                    **base_meta,
                    "category": request.category,
                    "effective_fee": _money(engagement.effective_fee),
                    "introducer_share": _money(engagement.introducer_share),
                    "fulfiller_share": _money(engagement.fulfiller_share),
                },
            }))

    if plan.requires(SideEffect.NOTIFY):
        title_tpl, content_tpl = EVENT_MESSAGES[plan.event]
        fmt = {"label": policy.label, "label_lower": policy.label.lower(), "region": request.region}
        for user_id in counterparts:
            effects.append((EffectKind.NOTIFICATION, {
                "user_id": user_id,
                "type": policy.notification_type(plan.event),
                "title": title_tpl.format(**fmt),
                "content": content_tpl.format(**fmt),
                "metadata": base_meta,
            }))

    if plan.requires(SideEffect.REALTIME):
        payload = {**base_meta, "event": plan.event.value, "actor": plan.actor.value}
        for user_id in parties:
            effects.append((EffectKind.REALTIME, {
                "channel": user_channel(user_id),
                "event": realtime_event_name(plan),
                "payload": payload,
            }))
        if request.status != "pending" and plan.event == E.COMPLETE:
            effects.append((EffectKind.REALTIME, {
                "channel": user_channel(request.requester_id),
                "event": f"request-{request.status}",
                "payload": {"request_id": request.id, "engagement_id": engagement.id},
            }))

    if plan.requires(SideEffect.PAYMENT_INTENT):
        if value is None:
            logger.warning("Engagement %s has no value; payment intent skipped", engagement.id)
        else:
            effects.append((EffectKind.PAYMENT_INTENT, {
                "engagement_id": engagement.id,
                "amount": _money(value),
                "currency": engagement.currency,
                "metadata": {"engagement_id": engagement.id, "request_id": request.id},
            }))

    order = {kind: i for i, kind in enumerate(EFFECT_ORDER)}
    return sorted(effects, key=lambda item: order[item[0]])


class FanoutCoordinator:
    """Executes downstream effects with a log-and-defer failure policy."""

    def __init__(
        self,
        crm: Optional[CRMService] = None,
        notifications: Optional[NotificationService] = None,
        realtime: Optional[ConnectionManager] = None,
        payments: Optional[PaymentGateway] = None,
        session_factory=async_session,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.crm = crm or CRMService(session_factory)
        self.notifications = notifications or NotificationService(session_factory)
        self.realtime = realtime or manager
        self.payments = payments or PaymentGateway()
        self.settings = settings or get_settings()

    async def apply(
        self,
        plan: TransitionPlan,
        engagement: Engagement,
        request: MarketRequest,
        actor_id: Optional[str] = None,
        candidate_name: Optional[str] = None,
    ) -> FanoutResult:
        """Run every downstream effect of a committed transition."""
        result = FanoutResult()
        effects = build_effects(
            plan, engagement, request, actor_id, candidate_name, settings=self.settings
        )
        for kind, payload in effects:
            try:
                await self.execute(kind, payload)
                result.applied.append(kind.value)
            except Exception as exc:
                failure = DownstreamEffectFailure(kind.value, exc)
                logger.warning(
                    "Engagement %s %s: %s; deferring", engagement.id, plan.event.value, failure
                )
                result.failed.append(kind.value)
                deferred_id = await self._defer(kind, payload, engagement.id, failure)
                if deferred_id:
                    result.deferred_ids.append(deferred_id)
        if result.failed:
            logger.info(
                "Fan-out for engagement %s: %d applied, %d deferred",
                engagement.id, len(result.applied), len(result.failed),
            )
        return result

    async def execute(self, kind: EffectKind, payload: dict[str, Any]) -> None:
        """Perform one downstream effect from its stored payload."""
        kind = EffectKind(kind)
        if kind == EffectKind.CRM_LEAD:
            await self.crm.upsert_lead(
                owner_id=payload["owner_id"],
                title=payload["title"],
                status=payload["status"],
                value=Decimal(payload["value"]) if payload.get("value") else None,
                metadata=payload.get("metadata"),
                engagement_id=payload.get("engagement_id"),
                source=payload.get("source"),
            )
        elif kind == EffectKind.NOTIFICATION:
            await self.notifications.create_notification(
                user_id=payload["user_id"],
                type=payload["type"],
                title=payload["title"],
                content=payload["content"],
                metadata=payload.get("metadata"),
            )
        elif kind == EffectKind.REALTIME:
            await self.realtime.publish(payload["channel"], payload["event"], payload["payload"])
        elif kind == EffectKind.PAYMENT_INTENT:
            handle = await self.payments.create_payment_intent(
                Decimal(payload["amount"]), payload["currency"], payload.get("metadata")
            )
            if handle:
                async with self.session_factory() as db:
                    await db.execute(
                        update(Engagement)
                        .where(Engagement.id == payload["engagement_id"])
                        .values(payment_intent_id=handle)
                    )
                    await db.commit()

    async def _defer(
        self,
        kind: EffectKind,
        payload: dict[str, Any],
        engagement_id: Optional[str],
        failure: DownstreamEffectFailure,
    ) -> Optional[str]:
        try:
            async with self.session_factory() as db:
                effect = DeferredEffect(
                    id=str(uuid.uuid4()),
                    kind=kind.value,
                    engagement_id=engagement_id,
                    payload=payload,
                    status=DeferredEffectStatus.PENDING.value,
                    attempts=1,
                    last_error=str(failure.cause)[:2000],
                )
                db.add(effect)
                await db.commit()
                return effect.id
        except Exception:
            logger.exception("Could not record deferred %s effect for %s", kind.value, engagement_id)
            return None

    async def retry_deferred_effects(self, limit: int = 100) -> dict[str, int]:
        """Retry pending deferred effects; abandon those that hit the attempt limit."""
        stats = {"retried": 0, "succeeded": 0, "failed": 0, "abandoned": 0}
        async with self.session_factory() as db:
            result = await db.execute(
                select(DeferredEffect)
                .where(DeferredEffect.status == DeferredEffectStatus.PENDING.value)
                .order_by(DeferredEffect.created_at)
                .limit(limit)
            )
            pending = list(result.scalars().all())

            for effect in pending:
                stats["retried"] += 1
                try:
                    await self.execute(EffectKind(effect.kind), effect.payload)
                except Exception as exc:
                    effect.attempts += 1
                    effect.last_error = str(exc)[:2000]
                    if effect.attempts >= self.settings.effect_max_attempts:
                        effect.status = DeferredEffectStatus.ABANDONED.value
                        stats["abandoned"] += 1
                        logger.error(
                            "Deferred %s effect %s abandoned after %d attempts: %s",
                            effect.kind, effect.id, effect.attempts, exc,
                        )
                    else:
                        stats["failed"] += 1
                        logger.warning(
                            "Deferred %s effect %s failed (attempt %d): %s",
                            effect.kind, effect.id, effect.attempts, exc,
                        )
                else:
                    effect.status = DeferredEffectStatus.DONE.value
                    stats["succeeded"] += 1
                await db.commit()

        if stats["retried"]:
            logger.info("Deferred effect retry: %s", stats)
        return stats
