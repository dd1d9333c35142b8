"""Transactional access to billing rows.

Every multi-row billing mutation runs through :func:`with_transaction`, and
every membership-scoped mutation takes the membership row lock first, then
the invoice locks. Database errors leave this module as billing exceptions.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from django.core.exceptions import ValidationError
from django.db import DatabaseError, IntegrityError, OperationalError, transaction

from members.models import Member

from .exceptions import DomainConflict, FatalError, NotFound, TransientError
from .models import Invoice, Membership, Payment

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_RETRIES = 1


def with_transaction(fn: Callable[..., T], *args, **kwargs) -> T:
    attempt = 0
    while True:
        try:
            with transaction.atomic():
                return fn(*args, **kwargs)
        except IntegrityError as exc:
            logger.info("Integrity violation in %s: %s", getattr(fn, "__name__", fn), exc)
            raise DomainConflict(
                "The change conflicts with an existing record.", code=DomainConflict.DUPLICATE
            ) from exc
        except OperationalError as exc:
            if attempt >= TRANSIENT_RETRIES:
                logger.error("Transient storage error persisted after retry: %s", exc)
                raise TransientError("Storage is temporarily unavailable.") from exc
            attempt += 1
            logger.warning("Transient storage error, retrying once: %s", exc)
        except DatabaseError as exc:
            logger.exception("Unexpected storage failure in %s", getattr(fn, "__name__", fn))
            raise FatalError("Storage reported an unexpected failure.") from exc


def get_membership(membership_id) -> Membership:
    try:
        return Membership.objects.get(pk=membership_id)
    except (Membership.DoesNotExist, ValidationError, ValueError, TypeError):
        raise NotFound(f"Membership {membership_id} does not exist.")


def lock_membership(membership_id) -> Membership:
    try:
        return Membership.objects.select_for_update().get(pk=membership_id)
    except (Membership.DoesNotExist, ValidationError, ValueError, TypeError):
        raise NotFound(f"Membership {membership_id} does not exist.")


def lock_member(member_id) -> Member:
    try:
        return Member.objects.select_for_update().get(pk=member_id)
    except (Member.DoesNotExist, ValueError, TypeError):
        raise NotFound(f"Member {member_id} does not exist.")


def get_invoice(invoice_id) -> Invoice:
    try:
        return Invoice.objects.get(pk=invoice_id)
    except (Invoice.DoesNotExist, ValueError, TypeError):
        raise NotFound(f"Invoice {invoice_id} does not exist.")


def lock_invoice(invoice_id) -> Invoice:
    try:
        return Invoice.objects.select_for_update().get(pk=invoice_id)
    except (Invoice.DoesNotExist, ValueError, TypeError):
        raise NotFound(f"Invoice {invoice_id} does not exist.")


def lock_invoice_payments(invoice: Invoice) -> list[Payment]:
    return list(invoice.payments.select_for_update().order_by("created_at", "id"))


def live_membership_for(member_id) -> Membership | None:
    return (
        Membership.objects.filter(member_id=member_id, status__in=Membership.LIVE_STATUSES)
        .order_by("-created_at")
        .first()
    )
