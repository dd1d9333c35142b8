from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from unittest.mock import patch

from django.core.exceptions import ValidationError
from django.db import DatabaseError, IntegrityError, OperationalError, connection, transaction
from django.test import TestCase

from catalog.models import Duration

from .calendar import (
    FixedClock,
    add_months,
    days_in_month,
    first_day_of_next_month,
    last_day_of_month,
)
from .exceptions import (
    BillingValidationError,
    DomainConflict,
    FatalError,
    NotFound,
    TransientError,
)
from .history import create_membership_history_event
from .ledger import with_transaction
from .models import Invoice, Membership, MembershipCancellation, MembershipHistoryEvent, Payment
from .proration import prorated
from .scheduler import tick_overdue, tick_recurring
from .services import (
    AssignMembershipRequest,
    CancelMembershipRequest,
    ChangePlanRequest,
    ChangePricingTierRequest,
    MembershipActionRequest,
    RecordPaymentOutcomeRequest,
    assign_membership,
    cancel_invoice,
    cancel_membership,
    change_plan,
    change_pricing_tier,
    mark_invoice_overdue,
    pause_membership,
    record_payment_outcome,
    resume_membership,
)
from .testing import assign, make_member, make_plan, tier_for


class CalendarTests(TestCase):
    def test_add_months_clamps_to_month_length(self):
        self.assertEqual(add_months(date(2025, 1, 31), 1), date(2025, 2, 28))
        self.assertEqual(add_months(date(2024, 1, 31), 1), date(2024, 2, 29))
        self.assertEqual(add_months(date(2025, 11, 15), 3), date(2026, 2, 15))
        self.assertEqual(add_months(date(2025, 3, 31), -1), date(2025, 2, 28))

    def test_month_boundaries(self):
        self.assertEqual(days_in_month(date(2025, 2, 10)), 28)
        self.assertEqual(last_day_of_month(date(2025, 4, 2)), date(2025, 4, 30))
        self.assertEqual(first_day_of_next_month(date(2025, 12, 31)), date(2026, 1, 1))

    def test_fixed_clock_is_deterministic(self):
        clock = FixedClock(date(2025, 1, 16))
        self.assertEqual(clock.today(), date(2025, 1, 16))
        clock.advance(days=16)
        self.assertEqual(clock.today(), date(2025, 2, 1))


class ProrationTests(TestCase):
    def test_first_of_month_charges_full_price(self):
        price = Decimal("87.35")
        for year in [2023, 2024, 2025]:
            for month in range(1, 13):
                with self.subTest(year=year, month=month):
                    self.assertEqual(prorated(price, date(year, month, 1)), price)

    def test_last_day_of_thirty_day_month_charges_one_day(self):
        for price in [Decimal("30.00"), Decimal("100.00"), Decimal("49.99"), Decimal("0.00")]:
            for month in [4, 6, 9, 11]:
                with self.subTest(price=price, month=month):
                    expected = (price / 30).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
                    self.assertEqual(prorated(price, date(2025, month, 30)), expected)

    def test_mid_month_start(self):
        self.assertEqual(prorated(Decimal("100.00"), date(2025, 1, 16)), Decimal("51.61"))
        self.assertEqual(prorated(Decimal("100.00"), date(2024, 2, 15)), Decimal("51.72"))

    def test_rounds_half_away_from_zero(self):
        # 0.03 * 15 / 30 = 0.015
        self.assertEqual(prorated(Decimal("0.03"), date(2025, 4, 16)), Decimal("0.02"))


class LedgerTests(TestCase):
    def test_transient_error_is_retried_once(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("deadlock detected")
            return "ok"

        self.assertEqual(with_transaction(flaky), "ok")
        self.assertEqual(len(calls), 2)

    def test_transient_error_surfaces_after_retry(self):
        def always_locked():
            raise OperationalError("database is locked")

        with self.assertRaises(TransientError):
            with_transaction(always_locked)

    def test_integrity_error_becomes_domain_conflict(self):
        def duplicate():
            raise IntegrityError("unique constraint")

        with self.assertRaises(DomainConflict) as ctx:
            with_transaction(duplicate)
        self.assertEqual(ctx.exception.code, DomainConflict.DUPLICATE)

    def test_other_database_errors_are_fatal(self):
        def corrupt():
            raise DatabaseError("disk image is malformed")

        with self.assertRaises(FatalError):
            with_transaction(corrupt)


class AssignMembershipTests(TestCase):
    def setUp(self):
        self.member = make_member()
        self.plan = make_plan("Gold")

    def test_prorated_start_mid_month(self):
        clock = FixedClock(date(2025, 1, 16))
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16), clock=clock)

        invoice = Invoice.objects.get(membership=membership)
        payment = Payment.objects.get(invoice=invoice)
        self.assertEqual(invoice.total, Decimal("51.61"))
        self.assertEqual(invoice.subtotal, Decimal("51.61"))
        self.assertEqual(invoice.due_date, date(2025, 1, 17))
        self.assertEqual(invoice.issue_date, date(2025, 1, 16))
        self.assertEqual(invoice.status, Invoice.Status.ISSUED)
        self.assertTrue(invoice.invoice_number.startswith("INV-"))
        self.assertTrue(invoice.invoice_number.endswith(str(membership.pk)[:6]))
        self.assertEqual(membership.next_billing_date, date(2025, 2, 1))
        self.assertEqual(membership.end_date, date(2025, 1, 31))
        self.assertEqual(membership.prorated_amount, Decimal("51.61"))
        self.assertEqual(payment.status, Payment.Status.PENDING)
        self.assertEqual(payment.amount, Decimal("51.61"))
        self.assertEqual(payment.period_start, date(2025, 1, 16))
        self.assertEqual(payment.period_end, date(2025, 2, 1))

        result = record_payment_outcome(
            RecordPaymentOutcomeRequest(
                invoice_id=invoice.pk, outcome=Payment.Status.PAID, method=Payment.Method.CARD
            ),
            clock=clock,
        )
        membership.refresh_from_db()
        self.member.refresh_from_db()
        invoice.refresh_from_db()
        self.assertEqual(result.value.status, Payment.Status.PAID)
        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertIsNotNone(invoice.paid_date)
        self.assertEqual(membership.status, Membership.Status.ACTIVE)
        self.assertTrue(self.member.is_active)

    def test_end_date_counts_start_month_as_month_one(self):
        expectations = {
            Duration.MONTHLY: date(2025, 1, 31),
            Duration.THREE_MONTH: date(2025, 3, 31),
            Duration.SIX_MONTH: date(2025, 6, 30),
            Duration.ANNUAL: date(2025, 12, 31),
        }
        for duration, expected in expectations.items():
            with self.subTest(duration=duration):
                member = make_member()
                membership = assign(member, self.plan, duration, date(2025, 1, 16))
                self.assertEqual(membership.end_date, expected)

    def test_pending_membership_activates_when_initial_invoice_paid(self):
        membership = assign(
            self.member,
            self.plan,
            Duration.MONTHLY,
            date(2025, 1, 10),
            initial_status=Membership.Status.PENDING,
        )
        self.member.refresh_from_db()
        self.assertFalse(self.member.is_active)

        invoice = membership.invoices.get()
        record_payment_outcome(
            RecordPaymentOutcomeRequest(
                invoice_id=invoice.pk, outcome=Payment.Status.PAID, method=Payment.Method.CASH
            ),
            clock=FixedClock(date(2025, 1, 10)),
        )
        membership.refresh_from_db()
        self.member.refresh_from_db()
        self.assertEqual(membership.status, Membership.Status.ACTIVE)
        self.assertTrue(self.member.is_active)
        self.assertTrue(
            membership.history_events.filter(
                event_type=MembershipHistoryEvent.EventType.ACTIVATED
            ).exists()
        )

    def test_initial_payment_is_recorded_atomically(self):
        membership = assign(
            self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16), paid=True
        )
        invoice = membership.invoices.get()
        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(invoice.payments.get().status, Payment.Status.PAID)
        self.assertEqual(membership.status, Membership.Status.ACTIVE)

    def test_tax_and_discount_flow_into_total(self):
        cases = [
            ("0", "0"),
            ("5.00", "0"),
            ("0", "10.00"),
            ("7.25", "3.10"),
            ("0", "51.61"),
        ]
        for tax, discount in cases:
            with self.subTest(tax=tax, discount=discount):
                member = make_member()
                membership = assign(
                    member,
                    self.plan,
                    Duration.MONTHLY,
                    date(2025, 1, 16),
                    tax=Decimal(tax),
                    discount=Decimal(discount),
                )
                invoice = membership.invoices.get()
                self.assertEqual(invoice.total, invoice.subtotal + invoice.tax - invoice.discount)
                self.assertGreaterEqual(invoice.total, 0)
                self.assertEqual(invoice.payments.get().amount, invoice.total)

    def test_negative_total_is_rejected_without_partial_state(self):
        with self.assertRaises(BillingValidationError) as ctx:
            assign(
                self.member,
                self.plan,
                Duration.MONTHLY,
                date(2025, 1, 16),
                discount=Decimal("60.00"),
            )
        self.assertIn("discount", ctx.exception.field_errors)
        self.assertFalse(Membership.objects.filter(member=self.member).exists())
        self.assertFalse(Invoice.objects.exists())

    def test_second_live_membership_is_rejected(self):
        assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        with self.assertRaises(DomainConflict) as ctx:
            assign(self.member, self.plan, Duration.ANNUAL, date(2025, 1, 20))
        self.assertEqual(ctx.exception.code, DomainConflict.LIVE_MEMBERSHIP_EXISTS)
        self.assertEqual(Membership.objects.filter(member=self.member).count(), 1)

    def test_database_rejects_second_live_membership(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Membership.objects.create(
                    member=self.member,
                    plan=self.plan,
                    pricing_tier=membership.pricing_tier,
                    start_date=date(2025, 2, 1),
                    end_date=date(2025, 2, 28),
                    billing_start_date=date(2025, 2, 1),
                    next_billing_date=date(2025, 3, 1),
                    status=Membership.Status.PAUSED,
                )

    def test_new_membership_allowed_after_cancellation(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        cancel_membership(
            CancelMembershipRequest(
                membership_id=membership.pk, effective_date=date(2025, 1, 20), reason="Moving"
            )
        )
        second = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 3, 1))
        self.assertEqual(
            Membership.objects.filter(
                member=self.member, status__in=Membership.LIVE_STATUSES
            ).get(),
            second,
        )

    def test_tier_from_other_plan_is_catalog_mismatch(self):
        other_plan = make_plan("Silver")
        with self.assertRaises(DomainConflict) as ctx:
            assign_membership(
                AssignMembershipRequest(
                    member_id=self.member.pk,
                    plan_id=self.plan.pk,
                    tier_id=tier_for(other_plan, Duration.MONTHLY).pk,
                    start_date=date(2025, 1, 16),
                )
            )
        self.assertEqual(ctx.exception.code, DomainConflict.CATALOG_MISMATCH)

    def test_unknown_member_is_not_found(self):
        with self.assertRaises(NotFound):
            assign_membership(
                AssignMembershipRequest(
                    member_id=999999,
                    plan_id=self.plan.pk,
                    tier_id=tier_for(self.plan, Duration.MONTHLY).pk,
                    start_date=date(2025, 1, 16),
                )
            )

    def test_billing_cannot_start_before_membership(self):
        with self.assertRaises(BillingValidationError) as ctx:
            assign(
                self.member,
                self.plan,
                Duration.MONTHLY,
                date(2025, 1, 16),
                billing_start_date=date(2025, 1, 10),
            )
        self.assertIn("billing_start_date", ctx.exception.field_errors)

    def test_next_billing_date_follows_billing_start(self):
        membership = assign(
            self.member,
            self.plan,
            Duration.THREE_MONTH,
            date(2025, 1, 16),
            billing_start_date=date(2025, 2, 14),
        )
        self.assertEqual(membership.next_billing_date, date(2025, 3, 1))
        self.assertGreater(membership.next_billing_date, membership.billing_start_date)
        self.assertEqual(membership.next_billing_date.day, 1)


class CancelMembershipTests(TestCase):
    def setUp(self):
        self.member = make_member()
        self.plan = make_plan()

    def test_cancel_is_idempotent(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        request = CancelMembershipRequest(
            membership_id=membership.pk, effective_date=date(2025, 1, 31), reason="Relocating"
        )
        result = cancel_membership(request, clock=FixedClock(date(2025, 1, 20)))
        self.assertFalse(result.already_applied)

        membership.refresh_from_db()
        invoice = membership.invoices.get()
        self.assertEqual(membership.status, Membership.Status.CANCELLED)
        self.assertEqual(invoice.status, Invoice.Status.CANCELLED)
        self.assertEqual(invoice.payments.get().status, Payment.Status.CANCELLED)
        self.assertEqual(membership.custom_fields["cancellation_reason"], "Relocating")
        self.assertEqual(membership.custom_fields["effective_date"], "2025-01-31")
        cancellation = MembershipCancellation.objects.get(membership=membership)
        self.assertEqual(cancellation.effective_date, date(2025, 1, 31))
        self.member.refresh_from_db()
        self.assertFalse(self.member.is_active)

        updated_at = membership.updated_at
        history_count = membership.history_events.count()
        second = cancel_membership(
            CancelMembershipRequest(
                membership_id=membership.pk, effective_date=date(2025, 2, 28), reason="Other"
            )
        )
        membership.refresh_from_db()
        self.assertTrue(second.already_applied)
        self.assertEqual(membership.updated_at, updated_at)
        self.assertEqual(membership.custom_fields["cancellation_reason"], "Relocating")
        self.assertEqual(membership.history_events.count(), history_count)

    def test_cancel_settles_every_invoice_and_payment(self):
        membership = assign(
            self.member, self.plan, Duration.THREE_MONTH, date(2025, 1, 16), paid=True
        )
        for today in [date(2025, 2, 1), date(2025, 3, 1)]:
            tick_recurring(today, clock=FixedClock(today))
        tick_overdue(date(2025, 2, 10), clock=FixedClock(date(2025, 2, 10)))
        membership.refresh_from_db()
        self.assertEqual(membership.status, Membership.Status.FROZEN)

        cancel_membership(
            CancelMembershipRequest(
                membership_id=membership.pk, effective_date=date(2025, 3, 5), reason="Unpaid"
            )
        )
        self.assertEqual(
            set(membership.invoices.values_list("status", flat=True)),
            {Invoice.Status.PAID, Invoice.Status.CANCELLED},
        )
        self.assertTrue(
            set(membership.payments.values_list("status", flat=True))
            <= {Payment.Status.PAID, Payment.Status.CANCELLED, Payment.Status.REFUNDED}
        )

    def test_cancel_requires_reason(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        with self.assertRaises(BillingValidationError) as ctx:
            cancel_membership(
                CancelMembershipRequest(
                    membership_id=membership.pk, effective_date=date(2025, 1, 31), reason="  "
                )
            )
        self.assertIn("reason", ctx.exception.field_errors)

    def test_cancel_expired_membership_is_conflict(self):
        membership = assign(
            self.member, self.plan, Duration.MONTHLY, date(2025, 1, 1), auto_renew=False
        )
        for today in [date(2025, 2, 1), date(2025, 3, 1)]:
            tick_recurring(today, clock=FixedClock(today))
        membership.refresh_from_db()
        self.assertEqual(membership.status, Membership.Status.EXPIRED)
        with self.assertRaises(DomainConflict) as ctx:
            cancel_membership(
                CancelMembershipRequest(
                    membership_id=membership.pk, effective_date=date(2025, 3, 5), reason="Late"
                )
            )
        self.assertEqual(ctx.exception.code, DomainConflict.INVALID_TRANSITION)


class ChangeTierAndPlanTests(TestCase):
    def setUp(self):
        self.member = make_member()
        self.plan = make_plan("Gold")

    def test_change_tier_recomputes_end_date(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        result = change_pricing_tier(
            ChangePricingTierRequest(
                membership_id=membership.pk,
                tier_id=tier_for(self.plan, Duration.SIX_MONTH).pk,
            )
        )
        membership = result.value
        self.assertEqual(membership.pricing_tier.duration, Duration.SIX_MONTH)
        self.assertEqual(membership.end_date, date(2025, 7, 31))
        self.assertEqual(membership.invoices.count(), 1)
        self.assertTrue(
            membership.history_events.filter(
                event_type=MembershipHistoryEvent.EventType.TIER_CHANGED
            ).exists()
        )

    def test_change_tier_to_current_tier_is_already_applied(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        result = change_pricing_tier(
            ChangePricingTierRequest(
                membership_id=membership.pk,
                tier_id=membership.pricing_tier_id,
            )
        )
        self.assertTrue(result.already_applied)

    def test_change_tier_rejects_other_plan(self):
        other_plan = make_plan("Silver")
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        with self.assertRaises(DomainConflict) as ctx:
            change_pricing_tier(
                ChangePricingTierRequest(
                    membership_id=membership.pk,
                    tier_id=tier_for(other_plan, Duration.MONTHLY).pk,
                )
            )
        self.assertEqual(ctx.exception.code, DomainConflict.CATALOG_MISMATCH)

    def test_shorter_commitment_cannot_undercut_billed_months(self):
        membership = assign(
            self.member, self.plan, Duration.SIX_MONTH, date(2025, 1, 1), auto_renew=False
        )
        for today in [date(2025, 2, 1), date(2025, 3, 1), date(2025, 4, 1)]:
            tick_recurring(today, clock=FixedClock(today))
        with self.assertRaises(DomainConflict) as ctx:
            change_pricing_tier(
                ChangePricingTierRequest(
                    membership_id=membership.pk,
                    tier_id=tier_for(self.plan, Duration.MONTHLY).pk,
                )
            )
        self.assertEqual(ctx.exception.code, DomainConflict.COMMITMENT_EXCEEDED)

    def test_change_plan_switches_plan_and_tier(self):
        other_plan = make_plan("Platinum", monthly_price="150.00")
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        result = change_plan(
            ChangePlanRequest(
                membership_id=membership.pk,
                plan_id=other_plan.pk,
                tier_id=tier_for(other_plan, Duration.THREE_MONTH).pk,
            )
        )
        membership = result.value
        self.assertEqual(membership.plan, other_plan)
        self.assertEqual(membership.end_date, date(2025, 4, 30))
        self.assertTrue(
            membership.history_events.filter(
                event_type=MembershipHistoryEvent.EventType.PLAN_CHANGED
            ).exists()
        )

    def test_change_plan_with_foreign_tier_is_catalog_mismatch(self):
        other_plan = make_plan("Platinum")
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        with self.assertRaises(DomainConflict) as ctx:
            change_plan(
                ChangePlanRequest(
                    membership_id=membership.pk,
                    plan_id=other_plan.pk,
                    tier_id=tier_for(self.plan, Duration.THREE_MONTH).pk,
                )
            )
        self.assertEqual(ctx.exception.code, DomainConflict.CATALOG_MISMATCH)
        membership.refresh_from_db()
        self.assertEqual(membership.plan, self.plan)


class PauseResumeTests(TestCase):
    def test_pause_and_resume(self):
        member = make_member()
        membership = assign(member, make_plan(), Duration.MONTHLY, date(2025, 1, 16))

        result = pause_membership(MembershipActionRequest(membership_id=membership.pk))
        self.assertEqual(result.value.status, Membership.Status.PAUSED)
        member.refresh_from_db()
        self.assertFalse(member.is_active)

        again = pause_membership(MembershipActionRequest(membership_id=membership.pk))
        self.assertTrue(again.already_applied)

        resumed = resume_membership(MembershipActionRequest(membership_id=membership.pk))
        self.assertEqual(resumed.value.status, Membership.Status.ACTIVE)
        member.refresh_from_db()
        self.assertTrue(member.is_active)

    def test_frozen_membership_cannot_be_paused(self):
        member = make_member()
        membership = assign(member, make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        tick_overdue(date(2025, 1, 25), clock=FixedClock(date(2025, 1, 25)))
        with self.assertRaises(DomainConflict) as ctx:
            pause_membership(MembershipActionRequest(membership_id=membership.pk))
        self.assertEqual(ctx.exception.code, DomainConflict.INVALID_TRANSITION)

    def test_unknown_membership_is_not_found(self):
        with self.assertRaises(NotFound):
            pause_membership(MembershipActionRequest(membership_id="not-a-uuid"))


class RecordPaymentOutcomeTests(TestCase):
    def setUp(self):
        self.member = make_member()
        self.membership = assign(self.member, make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        self.invoice = self.membership.invoices.get()

    def _record(self, outcome, method=Payment.Method.CARD, **kwargs):
        return record_payment_outcome(
            RecordPaymentOutcomeRequest(
                invoice_id=self.invoice.pk, outcome=outcome, method=method, **kwargs
            ),
            clock=FixedClock(date(2025, 1, 17)),
        )

    def test_paid_twice_is_already_applied(self):
        first = self._record(Payment.Status.PAID, transaction_id="txn_123")
        second = self._record(Payment.Status.PAID)
        self.assertFalse(first.already_applied)
        self.assertTrue(second.already_applied)
        self.assertEqual(second.value.pk, first.value.pk)

    def test_failed_then_paid(self):
        self._record(Payment.Status.FAILED)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, Invoice.Status.ISSUED)

        self._record(Payment.Status.PAID)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, Invoice.Status.PAID)

    def test_cancelled_outcome_cancels_unpaid_invoice(self):
        self._record(Payment.Status.CANCELLED, method="")
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, Invoice.Status.CANCELLED)

        with self.assertRaises(DomainConflict) as ctx:
            self._record(Payment.Status.PAID)
        self.assertEqual(ctx.exception.code, DomainConflict.INVOICE_CANCELLED)

    def test_outcome_on_cancelled_invoice_is_conflict(self):
        cancel_invoice(self.invoice.pk, "Issued by mistake")
        with self.assertRaises(DomainConflict) as ctx:
            self._record(Payment.Status.PAID)
        self.assertEqual(ctx.exception.code, DomainConflict.INVOICE_CANCELLED)

    def test_invalid_outcome_is_validation_error(self):
        with self.assertRaises(BillingValidationError) as ctx:
            self._record("REFUNDED")
        self.assertIn("outcome", ctx.exception.field_errors)

    def test_paid_requires_method(self):
        with self.assertRaises(BillingValidationError) as ctx:
            self._record(Payment.Status.PAID, method="")
        self.assertIn("method", ctx.exception.field_errors)

    def test_unknown_invoice_is_not_found(self):
        with self.assertRaises(NotFound):
            record_payment_outcome(
                RecordPaymentOutcomeRequest(
                    invoice_id=999999, outcome=Payment.Status.PAID, method=Payment.Method.CASH
                )
            )

    def test_transaction_id_is_encrypted_at_rest(self):
        payment = self._record(Payment.Status.PAID, transaction_id="txn_secret_42").value
        with connection.cursor() as cursor:
            cursor.execute("SELECT transaction_id FROM billing_payment WHERE id = %s", [payment.pk])
            stored_value = cursor.fetchone()[0]
        self.assertNotEqual(stored_value, "txn_secret_42")
        payment.refresh_from_db()
        self.assertEqual(payment.transaction_id, "txn_secret_42")


class InvoiceOperatorActionTests(TestCase):
    def setUp(self):
        self.membership = assign(make_member(), make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        self.invoice = self.membership.invoices.get()

    def test_cancel_invoice_appends_reason(self):
        result = cancel_invoice(self.invoice.pk, "Duplicate charge")
        self.assertEqual(result.value.status, Invoice.Status.CANCELLED)
        self.assertIn("Duplicate charge", result.value.notes)
        self.assertEqual(self.invoice.payments.get().status, Payment.Status.CANCELLED)
        self.assertTrue(cancel_invoice(self.invoice.pk, "Again").already_applied)

    def test_paid_invoice_cannot_be_cancelled_or_marked_overdue(self):
        record_payment_outcome(
            RecordPaymentOutcomeRequest(
                invoice_id=self.invoice.pk, outcome=Payment.Status.PAID, method=Payment.Method.CASH
            )
        )
        for command in [
            lambda: cancel_invoice(self.invoice.pk, "Refund"),
            lambda: mark_invoice_overdue(self.invoice.pk),
        ]:
            with self.assertRaises(DomainConflict) as ctx:
                command()
            self.assertEqual(ctx.exception.code, DomainConflict.INVOICE_PAID)

    def test_mark_overdue(self):
        result = mark_invoice_overdue(self.invoice.pk)
        self.assertEqual(result.value.status, Invoice.Status.OVERDUE)
        self.assertTrue(mark_invoice_overdue(self.invoice.pk).already_applied)


class InvoiceModelTests(TestCase):
    def test_clean_enforces_total_equation(self):
        membership = assign(make_member(), make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        invoice = membership.invoices.get()
        invoice.total = invoice.subtotal + Decimal("1.00")
        with self.assertRaises(ValidationError):
            invoice.clean()

    def test_duplicate_period_is_rejected_by_database(self):
        membership = assign(make_member(), make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        invoice = membership.invoices.get()
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Invoice.objects.create(
                    invoice_number="INV-000000-dupe01",
                    member=membership.member,
                    membership=membership,
                    subtotal=Decimal("1.00"),
                    total=Decimal("1.00"),
                    issue_date=invoice.issue_date,
                    due_date=invoice.due_date,
                    period_start=invoice.period_start,
                )


class MembershipHistoryEventTests(TestCase):
    def test_history_event_is_immutable(self):
        membership = assign(make_member(), make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        event = create_membership_history_event(
            membership,
            event_type=MembershipHistoryEvent.EventType.PAUSED,
            reason="Holiday",
        )
        event.reason = "updated"
        with self.assertRaises(ValidationError):
            event.save()
        with self.assertRaises(ValidationError):
            event.delete()

    def test_assignment_writes_created_event(self):
        membership = assign(make_member(), make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        event = membership.history_events.get(event_type=MembershipHistoryEvent.EventType.CREATED)
        self.assertEqual(event.status_after, Membership.Status.ACTIVE)
        self.assertEqual(event.metadata["prorated_amount"], "51.61")
