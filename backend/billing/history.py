from __future__ import annotations

from typing import Any

from django.utils import timezone

from .models import BillingAuditLog, Membership, MembershipHistoryEvent

STATUS_EVENT_TYPES = {
    Membership.Status.ACTIVE: {
        Membership.Status.PENDING: MembershipHistoryEvent.EventType.ACTIVATED,
        Membership.Status.FROZEN: MembershipHistoryEvent.EventType.UNFROZEN,
        Membership.Status.PAUSED: MembershipHistoryEvent.EventType.RESUMED,
    },
    Membership.Status.FROZEN: MembershipHistoryEvent.EventType.FROZEN,
    Membership.Status.PAUSED: MembershipHistoryEvent.EventType.PAUSED,
    Membership.Status.CANCELLED: MembershipHistoryEvent.EventType.CANCELLED,
    Membership.Status.EXPIRED: MembershipHistoryEvent.EventType.EXPIRED,
}


def _actor_or_none(actor):
    return actor if actor and getattr(actor, "is_authenticated", False) else None


def create_membership_history_event(
    membership: Membership,
    *,
    event_type: str,
    actor=None,
    reason: str = "",
    status_before: str = "",
    status_after: str = "",
    invoice=None,
    payment=None,
    metadata: dict[str, Any] | None = None,
    event_at=None,
) -> MembershipHistoryEvent:
    return MembershipHistoryEvent.objects.create(
        member_id=membership.member_id,
        membership=membership,
        invoice=invoice,
        payment=payment,
        actor=_actor_or_none(actor),
        event_type=event_type,
        event_at=event_at or timezone.now(),
        reason=reason,
        metadata=metadata or {},
        status_before=status_before,
        status_after=status_after or membership.status,
    )


def log_membership_created(
    membership: Membership,
    *,
    actor=None,
    invoice=None,
    payment=None,
    event_at=None,
) -> MembershipHistoryEvent:
    return create_membership_history_event(
        membership,
        event_type=MembershipHistoryEvent.EventType.CREATED,
        actor=actor,
        reason="Membership assigned.",
        status_after=membership.status,
        invoice=invoice,
        payment=payment,
        metadata={
            "plan_id": membership.plan_id,
            "pricing_tier_id": membership.pricing_tier_id,
            "prorated_amount": str(membership.prorated_amount),
        },
        event_at=event_at,
    )


def log_membership_status_change(
    membership: Membership,
    *,
    status_before: str,
    actor=None,
    reason: str = "",
    invoice=None,
    payment=None,
    metadata: dict[str, Any] | None = None,
    event_at=None,
) -> MembershipHistoryEvent | None:
    status_after = membership.status
    if status_before == status_after:
        return None

    event_type = STATUS_EVENT_TYPES.get(status_after)
    if isinstance(event_type, dict):
        event_type = event_type.get(status_before)
    if event_type is None:
        event_type = MembershipHistoryEvent.EventType.ACTIVATED

    return create_membership_history_event(
        membership,
        event_type=event_type,
        actor=actor,
        reason=reason or "Membership status changed.",
        status_before=status_before,
        status_after=status_after,
        invoice=invoice,
        payment=payment,
        metadata=metadata,
        event_at=event_at,
    )


def log_billing_action(
    action: str,
    *,
    message: str = "",
    actor=None,
    membership: Membership | None = None,
    invoice=None,
    member_id=None,
    metadata: dict[str, Any] | None = None,
) -> BillingAuditLog:
    if member_id is None and membership is not None:
        member_id = membership.member_id
    return BillingAuditLog.objects.create(
        action=action,
        message=message,
        metadata=metadata or {},
        actor=_actor_or_none(actor),
        member_id=member_id,
        membership=membership,
        invoice=invoice,
    )
