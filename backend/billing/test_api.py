from datetime import date
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from catalog.models import Duration

from .exceptions import DomainConflict
from .models import Invoice, Membership, Payment
from .testing import assign, make_member, make_plan, tier_for


class BillingApiTestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.operator = get_user_model().objects.create_user(
            username="frontdesk", password="pass12345", is_staff=True
        )
        self.client.force_authenticate(user=self.operator)
        self.member = make_member()
        self.plan = make_plan("Gold")


class MembershipApiTests(BillingApiTestCase):
    def _assign_payload(self, **overrides):
        payload = {
            "member_id": self.member.pk,
            "plan_id": self.plan.pk,
            "tier_id": tier_for(self.plan, Duration.MONTHLY).pk,
            "start_date": "2025-01-16",
            "initial_status": "ACTIVE",
        }
        payload.update(overrides)
        return payload

    def test_assign_membership_returns_created(self):
        response = self.client.post("/api/memberships/", self._assign_payload(), format="json")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["status"], Membership.Status.ACTIVE)
        self.assertEqual(response.data["next_billing_date"], "2025-02-01")
        self.assertEqual(response.data["prorated_amount"], "51.61")
        self.assertFalse(response.data["already_applied"])
        membership = Membership.objects.get(pk=response.data["id"])
        self.assertEqual(membership.history_events.get().actor, self.operator)

    def test_assign_with_initial_payment(self):
        response = self.client.post(
            "/api/memberships/",
            self._assign_payload(initial_payment={"method": "CASH"}),
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        invoice = Invoice.objects.get(membership_id=response.data["id"])
        self.assertEqual(invoice.status, Invoice.Status.PAID)

    def test_assign_conflicts_are_reported_with_code(self):
        self.client.post("/api/memberships/", self._assign_payload(), format="json")
        response = self.client.post("/api/memberships/", self._assign_payload(), format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], DomainConflict.LIVE_MEMBERSHIP_EXISTS)

    def test_assign_with_foreign_tier_is_catalog_mismatch(self):
        other_plan = make_plan("Silver")
        response = self.client.post(
            "/api/memberships/",
            self._assign_payload(tier_id=tier_for(other_plan, Duration.MONTHLY).pk),
            format="json",
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], DomainConflict.CATALOG_MISMATCH)

    def test_assign_unknown_member_is_not_found(self):
        response = self.client.post(
            "/api/memberships/", self._assign_payload(member_id=999999), format="json"
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "NOT_FOUND")

    def test_assign_negative_total_is_bad_request(self):
        response = self.client.post(
            "/api/memberships/", self._assign_payload(discount="80.00"), format="json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("discount", response.data)
        self.assertFalse(Membership.objects.exists())

    def test_assign_requires_start_date(self):
        payload = self._assign_payload()
        payload.pop("start_date")
        response = self.client.post("/api/memberships/", payload, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("start_date", response.data)

    def test_cancel_twice_reports_already_applied(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        url = f"/api/memberships/{membership.pk}/cancel/"
        payload = {"effective_date": "2025-01-31", "reason": "Moving away"}

        first = self.client.post(url, payload, format="json")
        second = self.client.post(url, payload, format="json")
        self.assertEqual(first.status_code, 200)
        self.assertFalse(first.data["already_applied"])
        self.assertEqual(first.data["status"], Membership.Status.CANCELLED)
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.data["already_applied"])

    def test_change_tier_endpoint(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        response = self.client.post(
            f"/api/memberships/{membership.pk}/change-tier/",
            {"tier_id": tier_for(self.plan, Duration.ANNUAL).pk},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["duration"], Duration.ANNUAL)
        self.assertEqual(response.data["end_date"], "2026-01-31")

    def test_change_plan_with_mismatched_tier(self):
        other_plan = make_plan("Platinum")
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        response = self.client.post(
            f"/api/memberships/{membership.pk}/change-plan/",
            {"plan_id": other_plan.pk, "tier_id": tier_for(self.plan, Duration.MONTHLY).pk},
            format="json",
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], DomainConflict.CATALOG_MISMATCH)

    def test_pause_resume_and_history(self):
        membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        pause = self.client.post(
            f"/api/memberships/{membership.pk}/pause/", {"reason": "Injury"}, format="json"
        )
        resume = self.client.post(f"/api/memberships/{membership.pk}/resume/", {}, format="json")
        self.assertEqual(pause.data["status"], Membership.Status.PAUSED)
        self.assertEqual(resume.data["status"], Membership.Status.ACTIVE)

        history = self.client.get(f"/api/memberships/{membership.pk}/history/")
        self.assertEqual(history.status_code, 200)
        event_types = [event["event_type"] for event in history.data]
        self.assertIn("paused", event_types)
        self.assertIn("resumed", event_types)

    def test_unknown_membership_action_is_not_found(self):
        response = self.client.post(
            "/api/memberships/00000000-0000-0000-0000-000000000000/pause/", {}, format="json"
        )
        self.assertEqual(response.status_code, 404)

    def test_list_filters_by_status(self):
        assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        assign(
            make_member(),
            self.plan,
            Duration.MONTHLY,
            date(2025, 1, 16),
            initial_status=Membership.Status.PENDING,
        )
        response = self.client.get("/api/memberships/", {"status": "PENDING"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)

        paged = self.client.get("/api/memberships/", {"page_size": 1})
        self.assertEqual(paged.data["count"], 2)
        self.assertEqual(len(paged.data["results"]), 1)

    def test_non_staff_user_is_forbidden(self):
        user = get_user_model().objects.create_user(username="member", password="pass12345")
        client = APIClient()
        client.force_authenticate(user=user)
        response = client.get("/api/memberships/")
        self.assertEqual(response.status_code, 403)


class InvoiceApiTests(BillingApiTestCase):
    def setUp(self):
        super().setUp()
        self.membership = assign(self.member, self.plan, Duration.MONTHLY, date(2025, 1, 16))
        self.invoice = self.membership.invoices.get()

    def test_record_payment(self):
        response = self.client.post(
            f"/api/invoices/{self.invoice.pk}/record-payment/",
            {"outcome": "PAID", "method": "CARD", "transaction_id": "ch_1"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], Payment.Status.PAID)
        self.assertEqual(response.data["transaction_id"], "ch_1")
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, Invoice.Status.PAID)

        repeat = self.client.post(
            f"/api/invoices/{self.invoice.pk}/record-payment/",
            {"outcome": "PAID", "method": "CARD"},
            format="json",
        )
        self.assertTrue(repeat.data["already_applied"])

    def test_record_payment_requires_method_for_paid(self):
        response = self.client.post(
            f"/api/invoices/{self.invoice.pk}/record-payment/", {"outcome": "PAID"}, format="json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("method", response.data)

    def test_record_payment_on_cancelled_invoice(self):
        self.client.post(
            f"/api/invoices/{self.invoice.pk}/cancel/", {"reason": "Duplicate"}, format="json"
        )
        response = self.client.post(
            f"/api/invoices/{self.invoice.pk}/record-payment/",
            {"outcome": "PAID", "method": "CASH"},
            format="json",
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], DomainConflict.INVOICE_CANCELLED)

    def test_mark_overdue_endpoint(self):
        response = self.client.post(f"/api/invoices/{self.invoice.pk}/mark-overdue/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], Invoice.Status.OVERDUE)

    def test_invoice_filters(self):
        other = assign(make_member(), self.plan, Duration.MONTHLY, date(2025, 3, 1))
        by_member = self.client.get("/api/invoices/", {"member_id": self.member.pk})
        self.assertEqual([row["id"] for row in by_member.data], [self.invoice.pk])

        by_date = self.client.get("/api/invoices/", {"date_from": "2025-02-01"})
        self.assertEqual([row["id"] for row in by_date.data], [other.invoices.get().pk])

        overdue = self.client.get("/api/invoices/", {"is_overdue": "true"})
        self.assertEqual(len(overdue.data), 2)

        by_number = self.client.get("/api/invoices/", {"q": self.invoice.invoice_number})
        self.assertEqual(len(by_number.data), 1)

    def test_payment_list_filters(self):
        response = self.client.get("/api/payments/", {"invoice_id": self.invoice.pk})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["status"], Payment.Status.PENDING)

        response = self.client.get("/api/payments/", {"status": "PAID"})
        self.assertEqual(response.data, [])

    def test_audit_log_lists_actions(self):
        response = self.client.get("/api/billing-audit-logs/", {"action": "membership.assigned"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)


class CronApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()

    @override_settings(CRON_SECRET="s3cret")
    def test_cron_requires_bearer_secret(self):
        response = self.client.get("/api/cron/recurring-billing/")
        self.assertIn(response.status_code, (401, 403))

        response = self.client.get(
            "/api/cron/recurring-billing/", HTTP_AUTHORIZATION="Bearer wrong"
        )
        self.assertIn(response.status_code, (401, 403))

        response = self.client.get(
            "/api/cron/recurring-billing/", HTTP_AUTHORIZATION="Bearer s3cret"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["failed"], 0)

    @override_settings(CRON_SECRET="s3cret")
    def test_overdue_cron_returns_summary(self):
        response = self.client.get(
            "/api/cron/overdue-invoices/", HTTP_AUTHORIZATION="Bearer s3cret"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(set(response.data), {"marked_overdue", "frozen", "failed"})

    @override_settings(CRON_SECRET="")
    def test_cron_without_secret_requires_staff(self):
        response = self.client.get("/api/cron/overdue-invoices/")
        self.assertIn(response.status_code, (401, 403))

        staff = get_user_model().objects.create_user(
            username="ops", password="pass12345", is_staff=True
        )
        self.client.force_authenticate(user=staff)
        response = self.client.get("/api/cron/overdue-invoices/")
        self.assertEqual(response.status_code, 200)

    @override_settings(CRON_SECRET="s3cret")
    def test_cron_failure_returns_server_error(self):
        with patch("billing.views.tick_recurring", side_effect=RuntimeError("boom")), \
                self.assertLogs("billing.views", level="ERROR"):
            response = self.client.get(
                "/api/cron/recurring-billing/", HTTP_AUTHORIZATION="Bearer s3cret"
            )
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["detail"], "Recurring billing failed.")


class HealthCheckTests(TestCase):
    def test_health_check(self):
        response = self.client.get("/api/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})
