from __future__ import annotations

import logging
from typing import Any

from django.db.models import Count

from billing.exceptions import BillingValidationError, DomainConflict
from billing.ledger import live_membership_for, lock_member, with_transaction
from billing.lifecycle import outstanding_amount
from billing.models import Invoice, Payment

from .models import Member

logger = logging.getLogger(__name__)

PROFILE_FIELDS = [
    "phone",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "postal_code",
    "country",
]


def _uniqueness_errors(*, email: str, id_number: str, exclude_id=None) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    queryset = Member.objects.all()
    if exclude_id is not None:
        queryset = queryset.exclude(pk=exclude_id)
    if email and queryset.filter(email__iexact=email.strip()).exists():
        errors["email"] = ["A member with this email already exists."]
    if id_number and queryset.filter(id_number__iexact=id_number.strip()).exists():
        errors["id_number"] = ["A member with this ID number already exists."]
    return errors


def register_member(*, name: str, email: str, id_number: str, **profile: Any) -> Member:
    errors: dict[str, list[str]] = {}
    for field_name, value in [("name", name), ("email", email), ("id_number", id_number)]:
        if not str(value or "").strip():
            errors[field_name] = ["This field is required."]
    unknown = sorted(set(profile) - set(PROFILE_FIELDS))
    if unknown:
        errors["non_field_errors"] = [f"Unknown fields: {', '.join(unknown)}."]
    errors.update(_uniqueness_errors(email=str(email or ""), id_number=str(id_number or "")))
    if errors:
        raise BillingValidationError(errors)

    member = with_transaction(
        Member.objects.create,
        name=name,
        email=email,
        id_number=id_number,
        **profile,
    )
    logger.info("Registered member %s", member.pk)
    return member


def update_member(member: Member, **changes: Any) -> Member:
    errors = _uniqueness_errors(
        email=str(changes.get("email") or ""),
        id_number=str(changes.get("id_number") or ""),
        exclude_id=member.pk,
    )
    if errors:
        raise BillingValidationError(errors)
    for field_name, value in changes.items():
        setattr(member, field_name, value)
    with_transaction(member.save)
    return member


def delete_member(member_id) -> None:
    """Delete a member and its membership history.

    Refused while any invoice other than a cancelled one exists.
    """

    def _delete():
        member = lock_member(member_id)
        blocking = Invoice.objects.filter(member=member).exclude(status=Invoice.Status.CANCELLED)
        if blocking.exists():
            raise DomainConflict(
                f"Member {member.pk} has {blocking.count()} invoice(s) that are not cancelled.",
                code=DomainConflict.MEMBER_HAS_INVOICES,
            )
        member.delete()

    with_transaction(_delete)
    logger.info("Deleted member %s", member_id)


def member_billing_summary(member: Member) -> dict[str, Any]:
    membership = live_membership_for(member.pk)
    next_payment = (
        Payment.objects.filter(member=member, status=Payment.Status.PENDING)
        .select_related("invoice")
        .order_by("due_date", "id")
        .first()
    )
    invoice_counts = {
        row["status"]: row["count"]
        for row in Invoice.objects.filter(member=member)
        .values("status")
        .annotate(count=Count("id"))
        .order_by()
    }
    return {
        "member_id": member.pk,
        "is_active": member.is_active,
        "membership": (
            {
                "id": str(membership.pk),
                "status": membership.status,
                "plan_id": membership.plan_id,
                "pricing_tier_id": membership.pricing_tier_id,
                "next_billing_date": membership.next_billing_date.isoformat(),
                "end_date": membership.end_date.isoformat(),
                "paid_months": membership.paid_months,
            }
            if membership
            else None
        ),
        "outstanding_amount": f"{outstanding_amount(member.pk):.2f}",
        "next_due_payment": (
            {
                "id": next_payment.pk,
                "invoice_number": next_payment.invoice.invoice_number if next_payment.invoice else "",
                "amount": f"{next_payment.amount:.2f}",
                "due_date": next_payment.due_date.isoformat(),
            }
            if next_payment
            else None
        ),
        "invoice_counts": invoice_counts,
    }
