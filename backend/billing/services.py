"""Billing command surface.

Each command takes a typed request, runs inside a single ledger transaction
and returns a :class:`CommandResult`. Commands either succeed, report an
idempotent no-op through ``already_applied``, or raise a ``BillingError``
having left no partial state behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Generic, TypeVar

from catalog.services import get_plan, get_pricing_tier

from .calendar import Clock, add_months, first_day_of_next_month, last_day_of_month, system_clock
from .exceptions import BillingValidationError, DomainConflict
from .history import (
    create_membership_history_event,
    log_billing_action,
    log_membership_created,
)
from .invoicing import create_initial_invoice, initial_end_date
from .ledger import (
    get_invoice,
    live_membership_for,
    lock_invoice,
    lock_invoice_payments,
    lock_member,
    lock_membership,
    with_transaction,
)
from .lifecycle import (
    Event,
    apply_transition,
    cancel_open_items,
    has_overdue_invoices,
    refresh_invoice_status,
    settle_after_payment,
    sync_member_active,
    unfreeze_if_clear,
)
from .models import (
    Invoice,
    Membership,
    MembershipCancellation,
    MembershipHistoryEvent,
    Payment,
)
from .proration import prorated
from .scheduler import tick_overdue, tick_recurring

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = [
    "AssignMembershipRequest",
    "CancelMembershipRequest",
    "ChangePlanRequest",
    "ChangePricingTierRequest",
    "CommandResult",
    "InitialPayment",
    "MembershipActionRequest",
    "RecordPaymentOutcomeRequest",
    "assign_membership",
    "cancel_invoice",
    "cancel_membership",
    "change_plan",
    "change_pricing_tier",
    "mark_invoice_overdue",
    "pause_membership",
    "record_payment_outcome",
    "resume_membership",
    "tick_overdue",
    "tick_recurring",
]


@dataclass
class CommandResult(Generic[T]):
    value: T
    already_applied: bool = False


@dataclass
class InitialPayment:
    method: str
    transaction_id: str = ""


@dataclass
class AssignMembershipRequest:
    member_id: int
    plan_id: int
    tier_id: int
    start_date: date
    billing_start_date: date | None = None
    auto_renew: bool = True
    initial_status: str = Membership.Status.PENDING
    custom_fields: dict[str, Any] = field(default_factory=dict)
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    initial_payment: InitialPayment | None = None
    actor: Any = None


@dataclass
class CancelMembershipRequest:
    membership_id: Any
    effective_date: date
    reason: str
    actor: Any = None


@dataclass
class ChangePricingTierRequest:
    membership_id: Any
    tier_id: int
    actor: Any = None


@dataclass
class ChangePlanRequest:
    membership_id: Any
    plan_id: int
    tier_id: int
    actor: Any = None


@dataclass
class MembershipActionRequest:
    membership_id: Any
    reason: str = ""
    actor: Any = None


@dataclass
class RecordPaymentOutcomeRequest:
    invoice_id: int
    outcome: str
    method: str = ""
    transaction_id: str = ""
    actor: Any = None


PAYMENT_OUTCOMES = [Payment.Status.PAID, Payment.Status.FAILED, Payment.Status.CANCELLED]


def _require(errors: dict[str, list[str]], value, field_name: str) -> None:
    if value in (None, ""):
        errors.setdefault(field_name, []).append("This field is required.")


def assign_membership(
    request: AssignMembershipRequest, *, clock: Clock = system_clock
) -> CommandResult[Membership]:
    errors: dict[str, list[str]] = {}
    for field_name in ["member_id", "plan_id", "tier_id", "start_date"]:
        _require(errors, getattr(request, field_name), field_name)
    billing_start_date = request.billing_start_date or request.start_date
    if request.initial_status not in [Membership.Status.ACTIVE, Membership.Status.PENDING]:
        errors.setdefault("initial_status", []).append("Must be ACTIVE or PENDING.")
    if request.start_date and billing_start_date and billing_start_date < request.start_date:
        errors.setdefault("billing_start_date", []).append(
            "Billing cannot start before the membership starts."
        )
    if request.custom_fields is not None and not isinstance(request.custom_fields, dict):
        errors.setdefault("custom_fields", []).append("Must be an object.")
    if request.initial_payment is not None:
        if request.initial_status != Membership.Status.ACTIVE:
            errors.setdefault("initial_payment", []).append(
                "An initial payment can only be recorded for ACTIVE memberships."
            )
        if request.initial_payment.method not in Payment.Method.values:
            errors.setdefault("initial_payment", []).append("Unknown payment method.")
    if errors:
        raise BillingValidationError(errors)

    def _assign() -> Membership:
        member = lock_member(request.member_id)
        plan = get_plan(request.plan_id)
        tier = get_pricing_tier(request.tier_id)
        if tier.plan_id != plan.pk:
            raise DomainConflict(
                f"Pricing tier {tier.pk} does not belong to plan {plan.pk}.",
                code=DomainConflict.CATALOG_MISMATCH,
            )
        if not plan.is_active:
            raise BillingValidationError({"plan_id": ["Plan is not active."]})
        existing = live_membership_for(member.pk)
        if existing is not None:
            raise DomainConflict(
                f"Member {member.pk} already has live membership {existing.pk}.",
                code=DomainConflict.LIVE_MEMBERSHIP_EXISTS,
            )

        membership = Membership.objects.create(
            member=member,
            plan=plan,
            pricing_tier_id=tier.pk,
            start_date=request.start_date,
            end_date=initial_end_date(request.start_date, tier.duration),
            billing_start_date=billing_start_date,
            next_billing_date=first_day_of_next_month(billing_start_date),
            status=request.initial_status,
            auto_renew=request.auto_renew,
            paid_months=0,
            prorated_amount=prorated(tier.monthly_price, request.start_date),
            custom_fields=dict(request.custom_fields or {}),
        )
        invoice, payment = create_initial_invoice(
            membership,
            request.start_date,
            tier=tier,
            tax=request.tax,
            discount=request.discount,
            clock=clock,
        )
        log_membership_created(
            membership,
            actor=request.actor,
            invoice=invoice,
            payment=payment,
            event_at=clock.now(),
        )
        if request.initial_payment is not None:
            _apply_outcome(
                membership,
                invoice,
                payment,
                outcome=Payment.Status.PAID,
                method=request.initial_payment.method,
                transaction_id=request.initial_payment.transaction_id,
                actor=request.actor,
                clock=clock,
            )
        sync_member_active(membership)
        log_billing_action(
            "membership.assigned",
            message=f"Membership assigned with invoice {invoice.invoice_number}.",
            actor=request.actor,
            membership=membership,
            invoice=invoice,
            metadata={"status": membership.status, "total": str(invoice.total)},
        )
        return membership

    membership = with_transaction(_assign)
    logger.info("Assigned membership %s to member %s", membership.pk, membership.member_id)
    return CommandResult(membership)


def cancel_membership(
    request: CancelMembershipRequest, *, clock: Clock = system_clock
) -> CommandResult[Membership]:
    errors: dict[str, list[str]] = {}
    _require(errors, request.membership_id, "membership_id")
    _require(errors, request.effective_date, "effective_date")
    _require(errors, str(request.reason or "").strip(), "reason")
    if errors:
        raise BillingValidationError(errors)
    reason = request.reason.strip()

    def _cancel() -> CommandResult[Membership]:
        membership = lock_membership(request.membership_id)
        if membership.status == Membership.Status.CANCELLED:
            return CommandResult(membership, already_applied=True)

        now = clock.now()
        apply_transition(
            membership,
            Event.CANCEL,
            actor=request.actor,
            reason=reason,
            metadata={"effective_date": request.effective_date.isoformat()},
            clock=clock,
        )
        invoices_cancelled, payments_cancelled = cancel_open_items(membership, clock=clock)
        MembershipCancellation.objects.create(
            membership=membership,
            reason=reason,
            effective_date=request.effective_date,
            cancelled_at=now,
            actor=request.actor if request.actor and request.actor.is_authenticated else None,
        )
        membership.custom_fields = {
            **(membership.custom_fields or {}),
            "cancellation_reason": reason,
            "cancellation_date": now.isoformat(),
            "effective_date": request.effective_date.isoformat(),
        }
        membership.save(update_fields=["custom_fields", "updated_at"])
        log_billing_action(
            "membership.cancelled",
            message=reason,
            actor=request.actor,
            membership=membership,
            metadata={
                "invoices_cancelled": invoices_cancelled,
                "payments_cancelled": payments_cancelled,
            },
        )
        return CommandResult(membership)

    return with_transaction(_cancel)


def _change_tier(membership: Membership, tier, *, plan=None, actor=None, clock: Clock):
    if not membership.is_live:
        raise DomainConflict(
            f"Membership in status {membership.status} cannot be changed.",
            code=DomainConflict.INVALID_TRANSITION,
        )
    if not membership.auto_renew and membership.paid_months > tier.months:
        raise DomainConflict(
            f"{membership.paid_months} months are already billed, more than the new commitment.",
            code=DomainConflict.COMMITMENT_EXCEEDED,
        )

    metadata = {
        "pricing_tier_before": membership.pricing_tier_id,
        "pricing_tier_after": tier.pk,
        "end_date_before": membership.end_date.isoformat(),
    }
    update_fields = ["pricing_tier", "end_date", "updated_at"]
    event_type = MembershipHistoryEvent.EventType.TIER_CHANGED
    if plan is not None and plan.pk != membership.plan_id:
        metadata.update({"plan_before": membership.plan_id, "plan_after": plan.pk})
        membership.plan = plan
        update_fields.append("plan")
        event_type = MembershipHistoryEvent.EventType.PLAN_CHANGED

    membership.pricing_tier_id = tier.pk
    membership.end_date = last_day_of_month(add_months(membership.start_date, tier.months))
    membership.save(update_fields=update_fields)
    metadata["end_date_after"] = membership.end_date.isoformat()
    create_membership_history_event(
        membership,
        event_type=event_type,
        actor=actor,
        reason="Pricing changed by operator.",
        status_before=membership.status,
        metadata=metadata,
        event_at=clock.now(),
    )
    log_billing_action(
        f"membership.{event_type}",
        actor=actor,
        membership=membership,
        metadata=metadata,
    )
    return membership


def change_pricing_tier(
    request: ChangePricingTierRequest, *, clock: Clock = system_clock
) -> CommandResult[Membership]:
    errors: dict[str, list[str]] = {}
    _require(errors, request.membership_id, "membership_id")
    _require(errors, request.tier_id, "tier_id")
    if errors:
        raise BillingValidationError(errors)

    def _change() -> CommandResult[Membership]:
        membership = lock_membership(request.membership_id)
        tier = get_pricing_tier(request.tier_id)
        if tier.plan_id != membership.plan_id:
            raise DomainConflict(
                f"Pricing tier {tier.pk} does not belong to the membership's plan.",
                code=DomainConflict.CATALOG_MISMATCH,
            )
        if tier.pk == membership.pricing_tier_id:
            return CommandResult(membership, already_applied=True)
        return CommandResult(_change_tier(membership, tier, actor=request.actor, clock=clock))

    return with_transaction(_change)


def change_plan(request: ChangePlanRequest, *, clock: Clock = system_clock) -> CommandResult[Membership]:
    errors: dict[str, list[str]] = {}
    _require(errors, request.membership_id, "membership_id")
    _require(errors, request.plan_id, "plan_id")
    _require(errors, request.tier_id, "tier_id")
    if errors:
        raise BillingValidationError(errors)

    def _change() -> CommandResult[Membership]:
        membership = lock_membership(request.membership_id)
        plan = get_plan(request.plan_id)
        tier = get_pricing_tier(request.tier_id)
        if tier.plan_id != plan.pk:
            raise DomainConflict(
                f"Pricing tier {tier.pk} does not belong to plan {plan.pk}.",
                code=DomainConflict.CATALOG_MISMATCH,
            )
        if plan.pk == membership.plan_id and tier.pk == membership.pricing_tier_id:
            return CommandResult(membership, already_applied=True)
        return CommandResult(
            _change_tier(membership, tier, plan=plan, actor=request.actor, clock=clock)
        )

    return with_transaction(_change)


def _transition_command(
    request: MembershipActionRequest, event: Event, *, default_reason: str, clock: Clock
) -> CommandResult[Membership]:
    if request.membership_id in (None, ""):
        raise BillingValidationError({"membership_id": ["This field is required."]})

    def _apply() -> CommandResult[Membership]:
        membership = lock_membership(request.membership_id)
        changed = apply_transition(
            membership,
            event,
            actor=request.actor,
            reason=request.reason or default_reason,
            clock=clock,
        )
        if changed:
            log_billing_action(
                f"membership.{event.value}",
                message=request.reason or default_reason,
                actor=request.actor,
                membership=membership,
            )
        if changed and event == Event.RESUME and has_overdue_invoices(membership):
            # Invoices that went overdue while paused keep the member out.
            apply_transition(
                membership,
                Event.FREEZE,
                actor=request.actor,
                reason="Resumed with overdue invoices outstanding.",
                clock=clock,
            )
        return CommandResult(membership, already_applied=not changed)

    return with_transaction(_apply)


def pause_membership(
    request: MembershipActionRequest, *, clock: Clock = system_clock
) -> CommandResult[Membership]:
    return _transition_command(
        request, Event.PAUSE, default_reason="Paused by operator.", clock=clock
    )


def resume_membership(
    request: MembershipActionRequest, *, clock: Clock = system_clock
) -> CommandResult[Membership]:
    return _transition_command(
        request, Event.RESUME, default_reason="Resumed by operator.", clock=clock
    )


def _apply_outcome(
    membership: Membership,
    invoice: Invoice,
    payment: Payment,
    *,
    outcome: str,
    method: str,
    transaction_id: str,
    actor,
    clock: Clock,
) -> Payment:
    status_before = payment.status
    payment.status = outcome
    update_fields = ["status", "updated_at"]
    if method:
        payment.payment_method = method
        update_fields.append("payment_method")
    if transaction_id:
        payment.transaction_id = transaction_id
        update_fields.append("transaction_id")
    if outcome == Payment.Status.PAID:
        payment.paid_date = clock.now()
        update_fields.append("paid_date")
    payment.save(update_fields=update_fields)

    refresh_invoice_status(invoice, clock=clock)
    if outcome == Payment.Status.CANCELLED and invoice.status != Invoice.Status.PAID:
        has_paid = invoice.payments.filter(status=Payment.Status.PAID).exists()
        if not has_paid:
            invoice.status = Invoice.Status.CANCELLED
            invoice.save(update_fields=["status", "updated_at"])

    create_membership_history_event(
        membership,
        event_type=MembershipHistoryEvent.EventType.PAYMENT_RECORDED,
        actor=actor,
        reason=f"Payment {outcome.lower()}.",
        status_before=membership.status,
        invoice=invoice,
        payment=payment,
        metadata={
            "payment_status_before": status_before,
            "payment_status_after": payment.status,
            "invoice_status": invoice.status,
            "amount": str(payment.amount),
        },
        event_at=clock.now(),
    )
    if outcome == Payment.Status.PAID:
        settle_after_payment(
            membership, actor=actor, invoice=invoice, payment=payment, clock=clock
        )
    return payment


def record_payment_outcome(
    request: RecordPaymentOutcomeRequest, *, clock: Clock = system_clock
) -> CommandResult[Payment]:
    errors: dict[str, list[str]] = {}
    _require(errors, request.invoice_id, "invoice_id")
    if request.outcome not in PAYMENT_OUTCOMES:
        errors.setdefault("outcome", []).append("Must be PAID, FAILED or CANCELLED.")
    if request.method and request.method not in Payment.Method.values:
        errors.setdefault("method", []).append("Unknown payment method.")
    if request.outcome == Payment.Status.PAID and not request.method:
        errors.setdefault("method", []).append("A payment method is required for PAID.")
    if errors:
        raise BillingValidationError(errors)

    membership_id = get_invoice(request.invoice_id).membership_id

    def _record() -> CommandResult[Payment]:
        membership = lock_membership(membership_id)
        invoice = lock_invoice(request.invoice_id)
        if invoice.status == Invoice.Status.CANCELLED:
            raise DomainConflict(
                f"Invoice {invoice.invoice_number} is cancelled.",
                code=DomainConflict.INVOICE_CANCELLED,
            )
        payments = lock_invoice_payments(invoice)
        payment = next(
            (item for item in payments if item.status in Payment.OUTSTANDING_STATUSES),
            None,
        )
        if payment is None:
            if invoice.status == Invoice.Status.PAID and request.outcome == Payment.Status.PAID:
                settled = next(
                    (item for item in payments if item.status == Payment.Status.PAID), None
                )
                return CommandResult(settled, already_applied=True)
            raise DomainConflict(
                f"Invoice {invoice.invoice_number} has no outstanding payment.",
                code=DomainConflict.INVALID_TRANSITION,
            )

        payment = _apply_outcome(
            membership,
            invoice,
            payment,
            outcome=request.outcome,
            method=request.method,
            transaction_id=request.transaction_id,
            actor=request.actor,
            clock=clock,
        )
        log_billing_action(
            "payment.recorded",
            message=f"Payment {request.outcome} for {invoice.invoice_number}.",
            actor=request.actor,
            membership=membership,
            invoice=invoice,
            metadata={"outcome": request.outcome, "invoice_status": invoice.status},
        )
        return CommandResult(payment)

    return with_transaction(_record)


def cancel_invoice(
    invoice_id, reason: str, *, actor=None, clock: Clock = system_clock
) -> CommandResult[Invoice]:
    reason = str(reason or "").strip()
    if not reason:
        raise BillingValidationError({"reason": ["This field is required."]})
    membership_id = get_invoice(invoice_id).membership_id

    def _cancel() -> CommandResult[Invoice]:
        membership = lock_membership(membership_id)
        invoice = lock_invoice(invoice_id)
        if invoice.status == Invoice.Status.CANCELLED:
            return CommandResult(invoice, already_applied=True)
        if invoice.status == Invoice.Status.PAID:
            raise DomainConflict(
                f"Invoice {invoice.invoice_number} is already paid.",
                code=DomainConflict.INVOICE_PAID,
            )
        invoice.status = Invoice.Status.CANCELLED
        invoice.notes = f"{invoice.notes}\nCancelled: {reason}".strip()
        invoice.save(update_fields=["status", "notes", "updated_at"])
        invoice.payments.filter(status__in=Payment.OUTSTANDING_STATUSES).update(
            status=Payment.Status.CANCELLED, updated_at=clock.now()
        )
        unfreeze_if_clear(
            membership,
            actor=actor,
            reason="Overdue invoice cancelled.",
            invoice=invoice,
            clock=clock,
        )
        log_billing_action(
            "invoice.cancelled",
            message=reason,
            actor=actor,
            membership=membership,
            invoice=invoice,
        )
        return CommandResult(invoice)

    return with_transaction(_cancel)


def mark_invoice_overdue(
    invoice_id, *, actor=None, clock: Clock = system_clock
) -> CommandResult[Invoice]:
    membership_id = get_invoice(invoice_id).membership_id

    def _mark() -> CommandResult[Invoice]:
        membership = lock_membership(membership_id)
        invoice = lock_invoice(invoice_id)
        if invoice.status == Invoice.Status.OVERDUE:
            return CommandResult(invoice, already_applied=True)
        if invoice.status == Invoice.Status.PAID:
            raise DomainConflict(
                f"Invoice {invoice.invoice_number} is already paid.",
                code=DomainConflict.INVOICE_PAID,
            )
        if invoice.status == Invoice.Status.CANCELLED:
            raise DomainConflict(
                f"Invoice {invoice.invoice_number} is cancelled.",
                code=DomainConflict.INVOICE_CANCELLED,
            )
        invoice.status = Invoice.Status.OVERDUE
        invoice.save(update_fields=["status", "updated_at"])
        log_billing_action(
            "invoice.marked_overdue",
            actor=actor,
            membership=membership,
            invoice=invoice,
            metadata={"marked_on": clock.today().isoformat()},
        )
        return CommandResult(invoice)

    return with_transaction(_mark)
