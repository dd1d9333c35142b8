"""Membership state machine.

All functions expect the caller to hold the membership row lock inside a
ledger transaction. Every applied transition keeps ``Member.is_active`` in
step with the membership and writes a history event.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum
from typing import Any

from django.db.models import Sum
from django.utils import timezone

from members.models import Member

from .calendar import Clock, system_clock
from .exceptions import DomainConflict
from .history import log_membership_status_change
from .models import Invoice, Membership, Payment

logger = logging.getLogger(__name__)

Status = Membership.Status


class Event(str, Enum):
    ACTIVATE = "activate"
    FREEZE = "freeze"
    UNFREEZE = "unfreeze"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    EXPIRE = "expire"


TRANSITIONS: dict[Event, tuple[tuple[str, ...], str]] = {
    Event.ACTIVATE: ((Status.PENDING,), Status.ACTIVE),
    Event.FREEZE: ((Status.ACTIVE,), Status.FROZEN),
    Event.UNFREEZE: ((Status.FROZEN,), Status.ACTIVE),
    Event.PAUSE: ((Status.ACTIVE,), Status.PAUSED),
    Event.RESUME: ((Status.PAUSED,), Status.ACTIVE),
    Event.CANCEL: (
        (Status.PENDING, Status.ACTIVE, Status.FROZEN, Status.PAUSED),
        Status.CANCELLED,
    ),
    Event.EXPIRE: ((Status.ACTIVE,), Status.EXPIRED),
}


def target_status(event: Event) -> str:
    return TRANSITIONS[event][1]


def sync_member_active(membership: Membership) -> None:
    Member.objects.filter(pk=membership.member_id).update(
        is_active=membership.status == Status.ACTIVE,
        updated_at=timezone.now(),
    )


def apply_transition(
    membership: Membership,
    event: Event,
    *,
    actor=None,
    reason: str = "",
    invoice=None,
    payment=None,
    metadata: dict[str, Any] | None = None,
    clock: Clock = system_clock,
) -> bool:
    """Move ``membership`` along ``event``.

    Returns False when the membership already sits in the target state.
    Raises DomainConflict when the event is not allowed from the current state.
    """
    allowed_from, to_status = TRANSITIONS[event]
    status_before = membership.status
    if status_before == to_status:
        return False
    if status_before not in allowed_from:
        raise DomainConflict(
            f"Cannot {event.value} a membership in status {status_before}.",
            code=DomainConflict.INVALID_TRANSITION,
        )

    membership.status = to_status
    membership.save(update_fields=["status", "updated_at"])
    sync_member_active(membership)
    log_membership_status_change(
        membership,
        status_before=status_before,
        actor=actor,
        reason=reason,
        invoice=invoice,
        payment=payment,
        metadata=metadata,
        event_at=clock.now(),
    )
    logger.info(
        "Membership %s moved %s -> %s (%s)", membership.pk, status_before, to_status, event.value
    )
    return True


def cancel_open_items(membership: Membership, *, clock: Clock = system_clock) -> tuple[int, int]:
    """Cancel every unpaid invoice and every outstanding payment of ``membership``."""
    now = clock.now()
    invoices_cancelled = (
        Invoice.objects.filter(membership=membership)
        .exclude(status__in=[Invoice.Status.PAID, Invoice.Status.CANCELLED])
        .update(status=Invoice.Status.CANCELLED, updated_at=now)
    )
    payments_cancelled = Payment.objects.filter(
        membership=membership,
        status__in=Payment.OUTSTANDING_STATUSES,
    ).update(status=Payment.Status.CANCELLED, updated_at=now)
    return invoices_cancelled, payments_cancelled


def refresh_invoice_status(invoice: Invoice, *, clock: Clock = system_clock) -> str:
    """Derive the invoice status from its payments.

    PAID requires every payment to be PAID and their sum to cover the total.
    """
    if invoice.status in [Invoice.Status.PAID, Invoice.Status.CANCELLED]:
        return invoice.status

    payments = list(invoice.payments.all())
    paid_total = sum(
        (payment.amount for payment in payments if payment.status == Payment.Status.PAID),
        Decimal("0"),
    )
    all_paid = bool(payments) and all(
        payment.status == Payment.Status.PAID for payment in payments
    )

    update_fields = []
    if all_paid and paid_total >= invoice.total:
        invoice.status = Invoice.Status.PAID
        invoice.paid_date = clock.now()
        update_fields = ["status", "paid_date"]
    elif paid_total > 0 and invoice.status in [Invoice.Status.DRAFT, Invoice.Status.ISSUED]:
        invoice.status = Invoice.Status.PARTIALLY_PAID
        update_fields = ["status"]

    if update_fields:
        update_fields.append("updated_at")
        invoice.save(update_fields=update_fields)
    return invoice.status


def has_overdue_invoices(membership: Membership) -> bool:
    return Invoice.objects.filter(membership=membership, status=Invoice.Status.OVERDUE).exists()


def unfreeze_if_clear(
    membership: Membership,
    *,
    actor=None,
    reason: str = "Overdue invoices settled.",
    invoice=None,
    payment=None,
    clock: Clock = system_clock,
) -> bool:
    """Return a FROZEN membership to ACTIVE once no OVERDUE invoice remains."""
    if membership.status != Status.FROZEN or has_overdue_invoices(membership):
        return False
    return apply_transition(
        membership,
        Event.UNFREEZE,
        actor=actor,
        reason=reason,
        invoice=invoice,
        payment=payment,
        clock=clock,
    )


def settle_after_payment(
    membership: Membership,
    *,
    actor=None,
    invoice=None,
    payment=None,
    clock: Clock = system_clock,
) -> bool:
    """Activate a PENDING membership or unfreeze a FROZEN one once its guard holds."""
    if membership.status == Status.PENDING:
        has_pending = Payment.objects.filter(
            membership=membership, status=Payment.Status.PENDING
        ).exists()
        if has_pending:
            return False
        return apply_transition(
            membership,
            Event.ACTIVATE,
            actor=actor,
            reason="All pending payments settled.",
            invoice=invoice,
            payment=payment,
            clock=clock,
        )

    return unfreeze_if_clear(
        membership, actor=actor, invoice=invoice, payment=payment, clock=clock
    )


def outstanding_amount(member_id) -> Decimal:
    unsettled = Invoice.objects.filter(
        member_id=member_id, status__in=Invoice.UNSETTLED_STATUSES
    )
    invoiced = unsettled.aggregate(value=Sum("total"))["value"] or Decimal("0")
    paid = (
        Payment.objects.filter(invoice__in=unsettled, status=Payment.Status.PAID).aggregate(
            value=Sum("amount")
        )["value"]
        or Decimal("0")
    )
    return max(invoiced - paid, Decimal("0.00"))
