from datetime import date

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APIClient

from billing.calendar import FixedClock
from billing.exceptions import BillingValidationError, DomainConflict
from billing.models import BillingAuditLog, Membership, MembershipHistoryEvent
from billing.services import CancelMembershipRequest, cancel_membership
from billing.testing import assign, make_member, make_plan
from catalog.models import Duration

from .models import Member
from .services import delete_member, member_billing_summary, register_member, update_member


class MemberServiceTests(TestCase):
    def test_register_normalizes_fields(self):
        member = register_member(
            name="ana maria lopez",
            email="  Ana@Example.COM ",
            id_number="ab-123",
            city="Lima",
        )
        self.assertEqual(member.name, "Ana Maria Lopez")
        self.assertEqual(member.email, "ana@example.com")
        self.assertEqual(member.id_number, "AB-123")
        self.assertFalse(member.is_active)

    def test_register_reports_duplicates_per_field(self):
        register_member(name="Ana", email="ana@example.com", id_number="AB-123")
        with self.assertRaises(BillingValidationError) as ctx:
            register_member(name="Other", email="ANA@example.com", id_number="ab-123")
        self.assertIn("email", ctx.exception.field_errors)
        self.assertIn("id_number", ctx.exception.field_errors)

    def test_register_rejects_unknown_profile_fields(self):
        with self.assertRaises(BillingValidationError) as ctx:
            register_member(name="Ana", email="ana@example.com", id_number="1", belt="black")
        self.assertIn("non_field_errors", ctx.exception.field_errors)

    def test_update_checks_uniqueness_against_others(self):
        first = register_member(name="Ana", email="ana@example.com", id_number="1")
        second = register_member(name="Bea", email="bea@example.com", id_number="2")
        update_member(first, email="ana@example.com", phone="555-0100")
        with self.assertRaises(BillingValidationError):
            update_member(second, email="ana@example.com")

    def test_delete_refused_while_invoices_are_open(self):
        member = make_member()
        assign(member, make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        with self.assertRaises(DomainConflict) as ctx:
            delete_member(member.pk)
        self.assertEqual(ctx.exception.code, DomainConflict.MEMBER_HAS_INVOICES)
        self.assertTrue(Member.objects.filter(pk=member.pk).exists())

    def test_delete_after_cancellation_removes_history(self):
        member = make_member()
        membership = assign(member, make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        cancel_membership(
            CancelMembershipRequest(
                membership_id=membership.pk, effective_date=date(2025, 1, 31), reason="Leaving"
            )
        )
        delete_member(member.pk)
        self.assertFalse(Member.objects.filter(pk=member.pk).exists())
        self.assertFalse(Membership.objects.filter(pk=membership.pk).exists())
        self.assertFalse(MembershipHistoryEvent.objects.filter(member_id=member.pk).exists())
        self.assertTrue(BillingAuditLog.objects.filter(action="membership.cancelled").exists())

    def test_billing_summary(self):
        member = make_member()
        membership = assign(
            member,
            make_plan(),
            Duration.MONTHLY,
            date(2025, 1, 16),
            clock=FixedClock(date(2025, 1, 16)),
        )
        summary = member_billing_summary(member)
        self.assertEqual(summary["membership"]["id"], str(membership.pk))
        self.assertEqual(summary["membership"]["next_billing_date"], "2025-02-01")
        self.assertEqual(summary["outstanding_amount"], "51.61")
        self.assertEqual(summary["next_due_payment"]["due_date"], "2025-01-17")
        self.assertEqual(summary["invoice_counts"], {"ISSUED": 1})

    def test_billing_summary_without_membership(self):
        summary = member_billing_summary(make_member())
        self.assertIsNone(summary["membership"])
        self.assertIsNone(summary["next_due_payment"])
        self.assertEqual(summary["outstanding_amount"], "0.00")


class MemberApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.operator = get_user_model().objects.create_user(
            username="frontdesk", password="pass12345", is_staff=True
        )
        self.client.force_authenticate(user=self.operator)

    def test_create_member(self):
        response = self.client.post(
            "/api/members/",
            {"name": "ana lopez", "email": "ana@example.com", "id_number": "x1"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["name"], "Ana Lopez")
        self.assertFalse(response.data["is_active"])

    def test_duplicate_email_is_field_error(self):
        make_member(email="ana@example.com")
        response = self.client.post(
            "/api/members/",
            {"name": "Ana", "email": "ana@example.com", "id_number": "x2"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("email", response.data)

    def test_is_active_cannot_be_written(self):
        member = make_member()
        response = self.client.patch(
            f"/api/members/{member.pk}/", {"is_active": True, "city": "Quito"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        member.refresh_from_db()
        self.assertFalse(member.is_active)
        self.assertEqual(member.city, "Quito")

    def test_list_filters(self):
        active = make_member(name="Active One")
        assign(active, make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        make_member(name="Idle One")

        response = self.client.get("/api/members/", {"is_active": "true"})
        self.assertEqual([row["id"] for row in response.data], [active.pk])

        response = self.client.get("/api/members/", {"q": "idle"})
        self.assertEqual([row["name"] for row in response.data], ["Idle One"])

    def test_delete_with_invoices_is_conflict(self):
        member = make_member()
        assign(member, make_plan(), Duration.MONTHLY, date(2025, 1, 16))
        response = self.client.delete(f"/api/members/{member.pk}/")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], DomainConflict.MEMBER_HAS_INVOICES)

    def test_delete_member_without_invoices(self):
        member = make_member()
        response = self.client.delete(f"/api/members/{member.pk}/")
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

    def test_billing_summary_and_history_endpoints(self):
        member = make_member()
        assign(member, make_plan(), Duration.MONTHLY, date(2025, 1, 16))

        summary = self.client.get(f"/api/members/{member.pk}/billing-summary/")
        self.assertEqual(summary.status_code, status.HTTP_200_OK)
        self.assertTrue(summary.data["is_active"])

        history = self.client.get(f"/api/members/{member.pk}/history/")
        self.assertEqual(history.status_code, status.HTTP_200_OK)
        self.assertEqual(history.data[0]["event_type"], "created")

    def test_staff_only(self):
        client = APIClient()
        response = client.get("/api/members/")
        self.assertIn(response.status_code, (401, 403))
