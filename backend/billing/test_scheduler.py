from datetime import date
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase

from catalog.models import DURATION_MONTHS, Duration

from .calendar import FixedClock, add_months
from .invoicing import create_recurring_invoice
from .lifecycle import apply_transition
from .models import BillingAuditLog, Invoice, Membership, Payment
from .scheduler import tick_overdue, tick_recurring
from .services import (
    MembershipActionRequest,
    RecordPaymentOutcomeRequest,
    cancel_invoice,
    mark_invoice_overdue,
    pause_membership,
    record_payment_outcome,
    resume_membership,
)
from .tasks import process_overdue_invoices, process_recurring_billing
from .testing import assign, billing_state, make_member, make_plan


def run_recurring(today):
    return tick_recurring(today, clock=FixedClock(today))


class RecurringBillingTests(TestCase):
    def setUp(self):
        self.member = make_member()
        self.plan = make_plan("Gold")

    def test_monthly_recurring_invoice(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))

        summary = run_recurring(date(2025, 2, 1))
        self.assertEqual(summary["processed"], 1)
        self.assertEqual(summary["created"], 1)
        self.assertEqual(summary["failed"], 0)

        membership.refresh_from_db()
        invoice = membership.invoices.get(period_start=date(2025, 2, 1))
        payment = invoice.payments.get()
        self.assertEqual(invoice.total, Decimal("100.00"))
        self.assertEqual(invoice.due_date, date(2025, 2, 1))
        self.assertEqual(payment.period_end, date(2025, 3, 1))
        self.assertEqual(payment.status, Payment.Status.PENDING)
        self.assertEqual(membership.next_billing_date, date(2025, 3, 1))
        self.assertEqual(membership.paid_months, 1)

        summary = run_recurring(date(2025, 2, 1))
        self.assertEqual(summary["processed"], 0)
        self.assertEqual(membership.invoices.count(), 2)

    def test_sweep_without_clock_stamps_the_given_day(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        tick_recurring(date(2025, 2, 1))
        invoice = membership.invoices.get(period_start=date(2025, 2, 1))
        self.assertEqual(invoice.issue_date, date(2025, 2, 1))

    def test_invoice_notes(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        run_recurring(date(2025, 2, 1))
        self.assertEqual(
            membership.invoices.get(period_start=date(2025, 1, 16)).notes,
            "Initial membership payment",
        )
        self.assertEqual(
            membership.invoices.get(period_start=date(2025, 2, 1)).notes,
            "Regular membership payment for Gold - Feb 1 to Mar 1, 2025",
        )

    def test_fixed_commitment_expires(self):
        membership = assign(
            self.member, self.plan, Duration.THREE_MONTH, date(2025, 1, 1), auto_renew=False
        )
        self.assertEqual(membership.end_date, date(2025, 3, 31))
        for today in [date(2025, 2, 1), date(2025, 3, 1), date(2025, 4, 1)]:
            run_recurring(today)
        membership.refresh_from_db()
        self.assertEqual(membership.paid_months, 3)
        self.assertEqual(membership.status, Membership.Status.ACTIVE)

        summary = run_recurring(date(2025, 5, 1))
        membership.refresh_from_db()
        self.member.refresh_from_db()
        self.assertEqual(summary["expired"], 1)
        self.assertEqual(summary["created"], 0)
        self.assertEqual(membership.status, Membership.Status.EXPIRED)
        self.assertFalse(self.member.is_active)
        self.assertFalse(membership.invoices.filter(period_start=date(2025, 5, 1)).exists())

    def test_auto_renew_extends_commitment(self):
        membership = assign(self.member, self.plan, Duration.THREE_MONTH, date(2025, 1, 1))
        for today in [date(2025, 2, 1), date(2025, 3, 1), date(2025, 4, 1)]:
            run_recurring(today)

        summary = run_recurring(date(2025, 5, 1))
        membership.refresh_from_db()
        self.assertEqual(summary["renewed"], 1)
        self.assertEqual(summary["created"], 1)
        self.assertEqual(membership.status, Membership.Status.ACTIVE)
        self.assertEqual(membership.end_date, date(2025, 6, 30))
        self.assertEqual(membership.paid_months, 1)
        self.assertEqual(membership.next_billing_date, date(2025, 6, 1))
        payment = membership.payments.get(period_start=date(2025, 5, 1))
        self.assertEqual(payment.period_end, date(2025, 6, 1))

    def test_catch_up_bills_every_missed_month(self):
        membership = assign(self.member, self.plan, Duration.ANNUAL, date(2025, 1, 16))
        summary = run_recurring(date(2025, 5, 3))
        membership.refresh_from_db()
        self.assertEqual(summary["processed"], 1)
        self.assertEqual(summary["created"], 4)
        self.assertEqual(membership.next_billing_date, date(2025, 6, 1))
        self.assertEqual(membership.paid_months, 4)

    def test_only_active_memberships_are_billed(self):
        pending = assign(
            make_member(),
            self.plan,
            Duration.MONTHLY,
            date(2025, 1, 16),
            initial_status=Membership.Status.PENDING,
        )
        paused = assign(make_member(), self.plan, Duration.MONTHLY, date(2025, 1, 16))
        pause_membership(MembershipActionRequest(membership_id=paused.pk))

        summary = run_recurring(date(2025, 2, 1))
        self.assertEqual(summary["processed"], 0)
        self.assertEqual(pending.invoices.count(), 1)
        self.assertEqual(paused.invoices.count(), 1)

    def test_paid_months_never_exceed_commitment_without_renewal(self):
        for duration in Duration:
            with self.subTest(duration=duration):
                months = DURATION_MONTHS[duration]
                membership = assign(
                    make_member(), self.plan, duration, date(2025, 1, 1), auto_renew=False
                )
                for step in range(months + 3):
                    run_recurring(add_months(date(2025, 2, 1), step))
                    membership.refresh_from_db()
                    self.assertLessEqual(membership.paid_months, months)
                self.assertEqual(membership.status, Membership.Status.EXPIRED)
                self.assertEqual(membership.invoices.count(), months + 1)

    def test_payment_periods_are_contiguous(self):
        stepwise = assign(make_member(), self.plan, Duration.THREE_MONTH, date(2025, 1, 16))
        for step in range(8):
            run_recurring(add_months(date(2025, 2, 1), step))
        caught_up = assign(make_member(), self.plan, Duration.THREE_MONTH, date(2025, 1, 16))
        run_recurring(date(2025, 9, 1))

        for membership in [stepwise, caught_up]:
            periods = list(
                membership.payments.order_by("period_start").values_list(
                    "period_start", "period_end"
                )
            )
            self.assertEqual(len(periods), 9)
            self.assertEqual(periods[0][0], date(2025, 1, 16))
            for (_, period_end), (next_start, _) in zip(periods, periods[1:]):
                self.assertEqual(period_end, next_start)

    def test_ticks_are_idempotent(self):
        memberships = [
            assign(make_member(), self.plan, Duration.MONTHLY, date(2025, 1, 16), paid=True),
            assign(
                make_member(),
                self.plan,
                Duration.MONTHLY,
                date(2025, 1, 1),
                auto_renew=False,
                paid=True,
            ),
            assign(make_member(), self.plan, Duration.SIX_MONTH, date(2025, 1, 20), paid=True),
        ]
        for today in [date(2025, 2, 1), date(2025, 3, 1), date(2025, 3, 20)]:
            with self.subTest(today=today):
                run_recurring(today)
                tick_overdue(today, clock=FixedClock(today))
                before = [billing_state(membership) for membership in memberships]
                run_recurring(today)
                tick_overdue(today, clock=FixedClock(today))
                after = [billing_state(membership) for membership in memberships]
                self.assertEqual(before, after)

    def test_failure_is_isolated_per_membership(self):
        broken = assign(make_member(), self.plan, Duration.MONTHLY, date(2025, 1, 16))
        healthy = assign(make_member(), self.plan, Duration.MONTHLY, date(2025, 1, 16))

        def fail_for_broken(membership, **kwargs):
            if membership.pk == broken.pk:
                raise RuntimeError("gateway unavailable")
            return create_recurring_invoice(membership, **kwargs)

        with patch(
            "billing.scheduler.create_recurring_invoice", side_effect=fail_for_broken
        ), self.assertLogs("billing.scheduler", level="ERROR") as logs:
            summary = run_recurring(date(2025, 2, 1))

        self.assertEqual(summary["processed"], 1)
        self.assertEqual(summary["failed"], 1)
        self.assertIn(str(broken.pk), logs.output[0])
        broken.refresh_from_db()
        healthy.refresh_from_db()
        self.assertEqual(broken.next_billing_date, date(2025, 2, 1))
        self.assertEqual(broken.invoices.count(), 1)
        self.assertEqual(healthy.next_billing_date, date(2025, 3, 1))

    def test_batch_size_limits_memberships_per_run(self):
        for _ in range(3):
            assign(make_member(), self.plan, Duration.MONTHLY, date(2025, 1, 16))
        summary = tick_recurring(
            date(2025, 2, 1), batch_size=2, clock=FixedClock(date(2025, 2, 1))
        )
        self.assertEqual(summary["processed"], 2)
        summary = run_recurring(date(2025, 2, 1))
        self.assertEqual(summary["processed"], 1)

    def test_each_run_is_audited(self):
        run_recurring(date(2025, 2, 1))
        log = BillingAuditLog.objects.get(action="tick.recurring")
        self.assertEqual(log.metadata["today"], "2025-02-01")
        self.assertEqual(log.metadata["processed"], 0)


class OverdueSweepTests(TestCase):
    def setUp(self):
        self.member = make_member()
        self.plan = make_plan("Gold")

    def test_overdue_invoice_freezes_and_payment_unfreezes(self):
        membership = assign(
            self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16), paid=True
        )
        run_recurring(date(2025, 2, 1))
        invoice = membership.invoices.get(period_start=date(2025, 2, 1))

        summary = tick_overdue(date(2025, 2, 5), grace_days=5, clock=FixedClock(date(2025, 2, 5)))
        self.assertEqual(summary["marked_overdue"], 0)

        summary = tick_overdue(date(2025, 2, 7), grace_days=5, clock=FixedClock(date(2025, 2, 7)))
        self.assertEqual(summary, {"marked_overdue": 1, "frozen": 1, "failed": 0})
        invoice.refresh_from_db()
        membership.refresh_from_db()
        self.member.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.OVERDUE)
        self.assertEqual(membership.status, Membership.Status.FROZEN)
        self.assertFalse(self.member.is_active)

        record_payment_outcome(
            RecordPaymentOutcomeRequest(
                invoice_id=invoice.pk, outcome=Payment.Status.PAID, method=Payment.Method.CARD
            ),
            clock=FixedClock(date(2025, 2, 8)),
        )
        invoice.refresh_from_db()
        membership.refresh_from_db()
        self.member.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(membership.status, Membership.Status.ACTIVE)
        self.assertTrue(self.member.is_active)

    def test_frozen_membership_skips_recurring_billing(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        tick_overdue(date(2025, 1, 30), clock=FixedClock(date(2025, 1, 30)))
        summary = run_recurring(date(2025, 2, 1))
        self.assertEqual(summary["processed"], 0)
        membership.refresh_from_db()
        self.assertEqual(membership.status, Membership.Status.FROZEN)

    def test_pending_membership_is_marked_but_not_frozen(self):
        membership = assign(
            self.member,
            self.plan,
            Duration.MONTHLY,
            date(2025, 1, 16),
            initial_status=Membership.Status.PENDING,
        )
        summary = tick_overdue(date(2025, 1, 30), clock=FixedClock(date(2025, 1, 30)))
        membership.refresh_from_db()
        self.assertEqual(summary["marked_overdue"], 1)
        self.assertEqual(summary["frozen"], 0)
        self.assertEqual(membership.status, Membership.Status.PENDING)

    def test_overdue_failure_is_isolated(self):
        broken = assign(make_member(), self.plan, Duration.MONTHLY, date(2025, 1, 16))
        healthy = assign(make_member(), self.plan, Duration.MONTHLY, date(2025, 1, 16))

        def fail_for_broken(membership, event, **kwargs):
            if membership.pk == broken.pk:
                raise RuntimeError("lock timeout")
            return apply_transition(membership, event, **kwargs)

        with patch("billing.scheduler.apply_transition", side_effect=fail_for_broken), \
                self.assertLogs("billing.scheduler", level="ERROR"):
            summary = tick_overdue(date(2025, 1, 30), clock=FixedClock(date(2025, 1, 30)))

        self.assertEqual(summary["failed"], 1)
        self.assertEqual(summary["frozen"], 1)
        self.assertEqual(broken.invoices.get().status, Invoice.Status.ISSUED)
        self.assertEqual(healthy.invoices.get().status, Invoice.Status.OVERDUE)

    def test_resume_with_invoice_overdue_during_pause_refreezes(self):
        membership = assign(
            self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16), paid=True
        )
        run_recurring(date(2025, 2, 1))
        pause_membership(MembershipActionRequest(membership_id=membership.pk))

        summary = tick_overdue(date(2025, 2, 7), grace_days=5, clock=FixedClock(date(2025, 2, 7)))
        self.assertEqual(summary, {"marked_overdue": 1, "frozen": 0, "failed": 0})

        result = resume_membership(MembershipActionRequest(membership_id=membership.pk))
        self.assertEqual(result.value.status, Membership.Status.FROZEN)
        self.member.refresh_from_db()
        self.assertFalse(self.member.is_active)

        tick_overdue(date(2025, 3, 20), grace_days=5, clock=FixedClock(date(2025, 3, 20)))
        membership.refresh_from_db()
        self.assertEqual(membership.status, Membership.Status.FROZEN)

    def test_invoice_marked_overdue_by_hand_freezes_after_grace(self):
        membership = assign(
            self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16), paid=True
        )
        run_recurring(date(2025, 2, 1))
        invoice = membership.invoices.get(period_start=date(2025, 2, 1))
        mark_invoice_overdue(invoice.pk)
        membership.refresh_from_db()
        self.assertEqual(membership.status, Membership.Status.ACTIVE)

        summary = tick_overdue(date(2025, 2, 7), grace_days=5, clock=FixedClock(date(2025, 2, 7)))
        self.assertEqual(summary, {"marked_overdue": 0, "frozen": 1, "failed": 0})
        membership.refresh_from_db()
        self.assertEqual(membership.status, Membership.Status.FROZEN)

    def test_cancelling_the_overdue_invoice_unfreezes(self):
        membership = assign(
            self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16), paid=True
        )
        run_recurring(date(2025, 2, 1))
        invoice = membership.invoices.get(period_start=date(2025, 2, 1))
        tick_overdue(date(2025, 2, 7), grace_days=5, clock=FixedClock(date(2025, 2, 7)))
        membership.refresh_from_db()
        self.assertEqual(membership.status, Membership.Status.FROZEN)

        cancel_invoice(invoice.pk, "Waived by manager")
        membership.refresh_from_db()
        self.member.refresh_from_db()
        self.assertEqual(membership.status, Membership.Status.ACTIVE)
        self.assertTrue(self.member.is_active)


class BillingTaskTests(TestCase):
    def test_recurring_task_parses_today(self):
        membership = assign(make_member(), make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        summary = process_recurring_billing("2025-02-01")
        self.assertEqual(summary["created"], 1)
        self.assertTrue(membership.invoices.filter(period_start=date(2025, 2, 1)).exists())

    def test_overdue_task_parses_today(self):
        assign(make_member(), make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        summary = process_overdue_invoices("2025-01-30")
        self.assertEqual(summary["marked_overdue"], 1)


class RunBillingTickCommandTests(TestCase):
    def test_runs_both_sweeps(self):
        assign(make_member(), make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        out = StringIO()
        call_command("run_billing_tick", "--today", "2025-02-10", stdout=out)
        output = out.getvalue()
        self.assertIn("created=1", output)
        self.assertIn("marked_overdue=2", output)

    def test_only_recurring(self):
        out = StringIO()
        call_command("run_billing_tick", "--today", "2025-02-01", "--only", "recurring", stdout=out)
        self.assertIn("processed=0", out.getvalue())
        self.assertNotIn("marked_overdue", out.getvalue())

    def test_invalid_date_raises_command_error(self):
        with self.assertRaises(CommandError):
            call_command("run_billing_tick", "--today", "01/02/2025", stdout=StringIO())
