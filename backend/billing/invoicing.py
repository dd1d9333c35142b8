"""Invoice builder.

Each invoice is created together with exactly one bound PENDING payment.
Callers must already hold the membership row lock.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal

from django.conf import settings

from catalog.models import PricingTier, months_for_duration

from .calendar import Clock, add_months, last_day_of_month, system_clock
from .exceptions import BillingValidationError, DomainConflict
from .models import Invoice, Membership, Payment
from .proration import prorated, quantize_money

logger = logging.getLogger(__name__)

INVOICE_PREFIX = "INV"
INVOICE_SUFFIX_SPACE = 10**6
MAX_NUMBER_PROBES = 50


def initial_end_date(start_date: date, duration: str) -> date:
    # The starting month counts as month one of the commitment.
    return last_day_of_month(add_months(start_date, months_for_duration(duration) - 1))


def generate_invoice_number(membership: Membership, *, clock: Clock = system_clock) -> str:
    millis = int(clock.now().timestamp() * 1000)
    membership_suffix = str(membership.pk)[:6]
    sequence = millis % INVOICE_SUFFIX_SPACE
    for _ in range(MAX_NUMBER_PROBES):
        candidate = f"{INVOICE_PREFIX}-{sequence:06d}-{membership_suffix}"
        if not Invoice.objects.filter(invoice_number=candidate).exists():
            return candidate
        sequence = (sequence + 1) % INVOICE_SUFFIX_SPACE
    raise DomainConflict(
        "Could not allocate a unique invoice number.", code=DomainConflict.DUPLICATE
    )


def _short_day(day: date) -> str:
    return f"{day:%b} {day.day}"


def recurring_invoice_notes(tier: PricingTier, period_start: date, period_end: date) -> str:
    return (
        f"Regular membership payment for {tier.plan.name} - "
        f"{_short_day(period_start)} to {_short_day(period_end)}, {period_end.year}"
    )


def _create_invoice_with_payment(
    membership: Membership,
    *,
    subtotal: Decimal,
    tax: Decimal,
    discount: Decimal,
    period_start: date,
    period_end: date,
    due_date: date,
    notes: str = "",
    clock: Clock,
) -> tuple[Invoice, Payment]:
    subtotal = quantize_money(subtotal)
    tax = quantize_money(tax)
    discount = quantize_money(discount)
    errors = {}
    if tax < 0:
        errors["tax"] = ["Tax cannot be negative."]
    if discount < 0:
        errors["discount"] = ["Discount cannot be negative."]
    total = subtotal + tax - discount
    if total < 0:
        errors["discount"] = ["Discount cannot exceed subtotal plus tax."]
    if errors:
        raise BillingValidationError(errors)

    if Invoice.objects.filter(membership=membership, period_start=period_start).exists():
        raise DomainConflict(
            f"Membership {membership.pk} is already invoiced for {period_start.isoformat()}.",
            code=DomainConflict.DUPLICATE,
        )

    currency = settings.BILLING_CURRENCY
    invoice = Invoice.objects.create(
        invoice_number=generate_invoice_number(membership, clock=clock),
        member_id=membership.member_id,
        membership=membership,
        subtotal=subtotal,
        tax=tax,
        discount=discount,
        total=total,
        currency=currency,
        issue_date=clock.today(),
        due_date=due_date,
        period_start=period_start,
        status=Invoice.Status.ISSUED,
        notes=notes,
    )
    payment = Payment.objects.create(
        member_id=membership.member_id,
        membership=membership,
        invoice=invoice,
        amount=total,
        currency=currency,
        status=Payment.Status.PENDING,
        period_start=period_start,
        period_end=period_end,
        due_date=due_date,
    )
    return invoice, payment


def create_initial_invoice(
    membership: Membership,
    start_date: date,
    *,
    tier: PricingTier,
    tax: Decimal = Decimal("0"),
    discount: Decimal = Decimal("0"),
    clock: Clock = system_clock,
) -> tuple[Invoice, Payment]:
    """Prorated invoice for the starting month.

    The bound payment covers ``[start_date, next_billing_date)`` so that the
    first recurring payment continues the timeline without a gap.
    """
    amount = prorated(tier.monthly_price, start_date)
    invoice, payment = _create_invoice_with_payment(
        membership,
        subtotal=amount,
        tax=tax,
        discount=discount,
        period_start=start_date,
        period_end=membership.next_billing_date,
        due_date=start_date + timedelta(days=1),
        notes="Initial membership payment",
        clock=clock,
    )
    logger.info(
        "Issued initial invoice %s for membership %s: %s",
        invoice.invoice_number,
        membership.pk,
        invoice.total,
    )
    return invoice, payment


def create_recurring_invoice(
    membership: Membership,
    *,
    tier: PricingTier,
    period_start: date | None = None,
    clock: Clock = system_clock,
) -> tuple[Invoice, Payment]:
    """Bill the month starting at ``next_billing_date`` and advance the membership."""
    period_start = period_start or membership.next_billing_date
    if period_start < membership.next_billing_date:
        raise DomainConflict(
            f"Period {period_start.isoformat()} was already billed for membership {membership.pk}.",
            code=DomainConflict.DUPLICATE,
        )
    period_end = add_months(period_start, 1)
    invoice, payment = _create_invoice_with_payment(
        membership,
        subtotal=tier.monthly_price,
        tax=Decimal("0"),
        discount=Decimal("0"),
        period_start=period_start,
        period_end=period_end,
        due_date=period_start,
        notes=recurring_invoice_notes(tier, period_start, period_end),
        clock=clock,
    )
    membership.next_billing_date = period_end
    membership.paid_months += 1
    membership.save(update_fields=["next_billing_date", "paid_months", "updated_at"])
    logger.info(
        "Issued recurring invoice %s for membership %s covering %s..%s",
        invoice.invoice_number,
        membership.pk,
        period_start,
        period_end,
    )
    return invoice, payment
