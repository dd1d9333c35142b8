"""Periodic billing sweeps.

Both sweeps take a ``today`` value and are safe to repeat: each membership is
handled in its own transaction under its row lock, and its guards are
re-checked after the lock is taken. A failure on one membership is logged and
counted without aborting the batch.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from django.conf import settings
from django.db.models import Q

from catalog.services import get_pricing_tier

from .calendar import Clock, FixedClock, add_months, last_day_of_month, system_clock
from .history import create_membership_history_event, log_billing_action
from .invoicing import create_recurring_invoice
from .ledger import lock_membership, with_transaction
from .lifecycle import Event, apply_transition
from .models import Invoice, Membership, MembershipHistoryEvent

logger = logging.getLogger(__name__)


def _resolve_day(today: date | None, clock: Clock | None) -> tuple[date, Clock]:
    # A sweep run for a given day stamps its rows with that day.
    if clock is None:
        clock = FixedClock(today) if today else system_clock
    return today or clock.today(), clock


def _bill_membership(membership_id, today: date, clock: Clock) -> dict[str, int]:
    counts = {"created": 0, "renewed": 0, "expired": 0}
    membership = lock_membership(membership_id)
    tier = get_pricing_tier(membership.pricing_tier_id)
    required = tier.months

    while membership.status == Membership.Status.ACTIVE and membership.next_billing_date <= today:
        if membership.paid_months < required:
            create_recurring_invoice(membership, tier=tier, clock=clock)
            counts["created"] += 1
            continue

        if membership.auto_renew:
            end_date_before = membership.end_date
            membership.paid_months = 0
            membership.end_date = last_day_of_month(add_months(membership.end_date, required))
            membership.save(update_fields=["paid_months", "end_date", "updated_at"])
            create_membership_history_event(
                membership,
                event_type=MembershipHistoryEvent.EventType.RENEWED,
                reason="Commitment period renewed automatically.",
                status_before=membership.status,
                metadata={
                    "end_date_before": end_date_before.isoformat(),
                    "end_date_after": membership.end_date.isoformat(),
                },
                event_at=clock.now(),
            )
            counts["renewed"] += 1
            create_recurring_invoice(membership, tier=tier, clock=clock)
            counts["created"] += 1
            continue

        apply_transition(
            membership,
            Event.EXPIRE,
            reason="Commitment period completed without renewal.",
            metadata={"paid_months": membership.paid_months},
            clock=clock,
        )
        counts["expired"] += 1
    return counts


def tick_recurring(
    today: date | None = None,
    *,
    batch_size: int | None = None,
    clock: Clock | None = None,
) -> dict[str, int]:
    today, clock = _resolve_day(today, clock)
    batch_size = batch_size or settings.TICK_BATCH_SIZE
    summary = {"processed": 0, "created": 0, "renewed": 0, "expired": 0, "failed": 0}

    due_ids = list(
        Membership.objects.filter(
            status=Membership.Status.ACTIVE,
            next_billing_date__lte=today,
        )
        .order_by("next_billing_date", "created_at")
        .values_list("id", flat=True)[:batch_size]
    )
    for membership_id in due_ids:
        try:
            counts = with_transaction(_bill_membership, membership_id, today, clock)
        except Exception:
            logger.exception("Recurring billing failed for membership %s", membership_id)
            summary["failed"] += 1
            continue
        summary["processed"] += 1
        for key, value in counts.items():
            summary[key] += value

    log_billing_action(
        "tick.recurring",
        message=f"Recurring billing sweep for {today.isoformat()}.",
        metadata={"today": today.isoformat(), **summary},
    )
    logger.info("Recurring billing sweep for %s: %s", today, summary)
    return summary


def _sweep_overdue(membership_id, today: date, cutoff: date, clock: Clock) -> dict[str, int]:
    counts = {"marked_overdue": 0, "frozen": 0}
    membership = lock_membership(membership_id)
    invoices = list(
        Invoice.objects.select_for_update()
        .filter(
            membership=membership,
            status__in=Invoice.OPEN_STATUSES,
            due_date__lt=cutoff,
        )
        .order_by("period_start")
    )

    now = clock.now()
    for invoice in invoices:
        invoice.status = Invoice.Status.OVERDUE
        invoice.updated_at = now
        invoice.save(update_fields=["status", "updated_at"])
        counts["marked_overdue"] += 1

    if membership.status != Membership.Status.ACTIVE:
        return counts
    # Also catches invoices marked OVERDUE by hand or while the membership was paused.
    overdue = list(
        Invoice.objects.filter(
            membership=membership,
            status=Invoice.Status.OVERDUE,
            due_date__lt=cutoff,
        ).order_by("period_start")
    )
    if overdue:
        apply_transition(
            membership,
            Event.FREEZE,
            reason="Invoice overdue beyond grace period.",
            invoice=overdue[0],
            metadata={
                "invoice_numbers": [invoice.invoice_number for invoice in overdue],
                "cutoff": cutoff.isoformat(),
            },
            clock=clock,
        )
        counts["frozen"] += 1
    return counts


def tick_overdue(
    today: date | None = None,
    *,
    grace_days: int | None = None,
    batch_size: int | None = None,
    clock: Clock | None = None,
) -> dict[str, int]:
    today, clock = _resolve_day(today, clock)
    if grace_days is None:
        grace_days = settings.PAYMENT_GRACE_DAYS
    batch_size = batch_size or settings.TICK_BATCH_SIZE
    cutoff = today - timedelta(days=grace_days)
    summary = {"marked_overdue": 0, "frozen": 0, "failed": 0}

    membership_ids = list(
        Invoice.objects.filter(
            Q(status__in=Invoice.OPEN_STATUSES)
            | Q(status=Invoice.Status.OVERDUE, membership__status=Membership.Status.ACTIVE),
            due_date__lt=cutoff,
        )
        .order_by("membership_id")
        .values_list("membership_id", flat=True)
        .distinct()[:batch_size]
    )
    for membership_id in membership_ids:
        try:
            counts = with_transaction(_sweep_overdue, membership_id, today, cutoff, clock)
        except Exception:
            logger.exception("Overdue sweep failed for membership %s", membership_id)
            summary["failed"] += 1
            continue
        for key, value in counts.items():
            summary[key] += value

    log_billing_action(
        "tick.overdue",
        message=f"Overdue sweep for {today.isoformat()} (cutoff {cutoff.isoformat()}).",
        metadata={"today": today.isoformat(), "grace_days": grace_days, **summary},
    )
    logger.info("Overdue sweep for %s: %s", today, summary)
    return summary
