"""Factories shared by the billing, catalog and members test suites."""

from __future__ import annotations

import itertools
from datetime import date

from catalog.models import Duration, Plan, PricingTier
from catalog.services import create_plan_with_tiers
from members.models import Member

from .calendar import FixedClock
from .models import Invoice, Membership, Payment
from .services import AssignMembershipRequest, InitialPayment, assign_membership

_sequence = itertools.count(1)


def make_member(**overrides) -> Member:
    number = next(_sequence)
    values = {
        "name": f"member {number}",
        "email": f"member{number}@example.com",
        "id_number": f"ID{number:06d}",
    }
    values.update(overrides)
    return Member.objects.create(**values)


def make_plan(name: str | None = None, monthly_price: str = "100.00") -> Plan:
    return create_plan_with_tiers(
        name=name or f"Plan {next(_sequence)}",
        tiers={duration.value: {"monthly_price": monthly_price} for duration in Duration},
    )


def tier_for(plan: Plan, duration: str) -> PricingTier:
    return plan.tiers.get(duration=duration)


def assign(
    member: Member,
    plan: Plan,
    duration: str,
    start_date: date,
    *,
    clock: FixedClock | None = None,
    paid: bool = False,
    **overrides,
) -> Membership:
    values = {
        "member_id": member.pk,
        "plan_id": plan.pk,
        "tier_id": tier_for(plan, duration).pk,
        "start_date": start_date,
        "billing_start_date": start_date,
        "auto_renew": True,
        "initial_status": Membership.Status.ACTIVE,
    }
    if paid:
        values["initial_payment"] = InitialPayment(method=Payment.Method.CARD)
    values.update(overrides)
    result = assign_membership(
        AssignMembershipRequest(**values), clock=clock or FixedClock(start_date)
    )
    return result.value


def billing_state(membership: Membership):
    membership.refresh_from_db()
    return (
        (
            membership.status,
            membership.paid_months,
            membership.next_billing_date,
            membership.end_date,
        ),
        sorted(
            Invoice.objects.filter(membership=membership).values_list(
                "period_start", "status", "total"
            )
        ),
        sorted(
            Payment.objects.filter(membership=membership).values_list(
                "period_start", "period_end", "status"
            )
        ),
    )
