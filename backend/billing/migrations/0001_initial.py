import uuid
from decimal import Decimal

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models

import billing.fields
import billing.models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("catalog", "0001_initial"),
        ("members", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Membership",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("start_date", models.DateField()),
                ("end_date", models.DateField()),
                ("billing_start_date", models.DateField()),
                ("next_billing_date", models.DateField()),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("ACTIVE", "Active"), ("FROZEN", "Frozen"), ("PAUSED", "Paused"), ("CANCELLED", "Cancelled"), ("EXPIRED", "Expired")], default="PENDING", max_length=20)),
                ("auto_renew", models.BooleanField(default=True)),
                ("paid_months", models.PositiveIntegerField(default=0)),
                ("prorated_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("custom_fields", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="memberships", to="members.member")),
                ("plan", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="memberships", to="catalog.plan")),
                ("pricing_tier", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="memberships", to="catalog.pricingtier")),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "next_billing_date"], name="mship_status_next_bill_idx"),
                    models.Index(fields=["member", "-created_at"], name="mship_member_created_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("status__in", ["PENDING", "ACTIVE", "FROZEN", "PAUSED"])), fields=("member",), name="unique_live_membership_per_member"),
                ],
            },
        ),
        migrations.CreateModel(
            name="MembershipCancellation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("reason", models.CharField(max_length=255)),
                ("effective_date", models.DateField()),
                ("cancelled_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("actor", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="membership_cancellations", to=settings.AUTH_USER_MODEL)),
                ("membership", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="cancellation", to="billing.membership")),
            ],
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("invoice_number", models.CharField(editable=False, max_length=32, unique=True)),
                ("subtotal", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("tax", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("discount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("total", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("currency", models.CharField(default=billing.models.default_currency, max_length=3)),
                ("issue_date", models.DateField()),
                ("due_date", models.DateField()),
                ("paid_date", models.DateTimeField(blank=True, null=True)),
                ("period_start", models.DateField()),
                ("status", models.CharField(choices=[("DRAFT", "Draft"), ("ISSUED", "Issued"), ("PARTIALLY_PAID", "Partially paid"), ("PAID", "Paid"), ("OVERDUE", "Overdue"), ("CANCELLED", "Cancelled")], default="ISSUED", max_length=20)),
                ("notes", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="invoices", to="members.member")),
                ("membership", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="invoices", to="billing.membership")),
            ],
            options={
                "ordering": ["-issue_date", "-created_at"],
                "indexes": [
                    models.Index(fields=["status", "due_date"], name="inv_status_due_idx"),
                    models.Index(fields=["member", "-issue_date"], name="inv_member_issue_idx"),
                    models.Index(fields=["-issue_date"], name="inv_issue_date_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("membership", "period_start"), name="unique_invoice_per_membership_period"),
                    models.CheckConstraint(condition=models.Q(("total__gte", 0)), name="invoice_total_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("currency", models.CharField(default=billing.models.default_currency, max_length=3)),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("PAID", "Paid"), ("FAILED", "Failed"), ("REFUNDED", "Refunded"), ("PARTIALLY_REFUNDED", "Partially refunded"), ("CANCELLED", "Cancelled")], default="PENDING", max_length=20)),
                ("period_start", models.DateField()),
                ("period_end", models.DateField()),
                ("due_date", models.DateField()),
                ("paid_date", models.DateTimeField(blank=True, null=True)),
                ("payment_method", models.CharField(blank=True, choices=[("CASH", "Cash"), ("CARD", "Card"), ("BANK_TRANSFER", "Bank transfer"), ("DIRECT_DEBIT", "Direct debit"), ("OTHER", "Other")], max_length=20)),
                ("transaction_id", billing.fields.EncryptedCharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("invoice", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name="payments", to="billing.invoice")),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="payments", to="members.member")),
                ("membership", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="payments", to="billing.membership")),
            ],
            options={
                "ordering": ["-due_date", "-created_at"],
                "indexes": [
                    models.Index(fields=["status", "due_date"], name="pay_status_due_idx"),
                    models.Index(fields=["membership", "period_start"], name="pay_mship_period_idx"),
                    models.Index(fields=["invoice", "-created_at"], name="pay_invoice_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="MembershipHistoryEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_type", models.CharField(choices=[("created", "Created"), ("activated", "Activated"), ("frozen", "Frozen"), ("unfrozen", "Unfrozen"), ("paused", "Paused"), ("resumed", "Resumed"), ("cancelled", "Cancelled"), ("expired", "Expired"), ("renewed", "Renewed"), ("tier_changed", "Tier changed"), ("plan_changed", "Plan changed"), ("payment_recorded", "Payment recorded")], max_length=30)),
                ("event_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("reason", models.CharField(blank=True, max_length=255)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("status_before", models.CharField(blank=True, max_length=20)),
                ("status_after", models.CharField(blank=True, max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("actor", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="membership_history_events", to=settings.AUTH_USER_MODEL)),
                ("invoice", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="history_events", to="billing.invoice")),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="membership_history_events", to="members.member")),
                ("membership", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="history_events", to="billing.membership")),
                ("payment", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="history_events", to="billing.payment")),
            ],
            options={
                "ordering": ["-event_at", "-id"],
                "indexes": [
                    models.Index(fields=["membership", "-event_at"], name="mhist_mship_event_idx"),
                    models.Index(fields=["event_type", "-event_at"], name="mhist_type_event_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingAuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("action", models.CharField(max_length=100)),
                ("message", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("actor", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="billing_audit_logs", to=settings.AUTH_USER_MODEL)),
                ("invoice", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="audit_logs", to="billing.invoice")),
                ("member", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="billing_logs", to="members.member")),
                ("membership", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="audit_logs", to="billing.membership")),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["-created_at"], name="billlog_created_idx"),
                    models.Index(fields=["action", "-created_at"], name="billlog_action_created_idx"),
                ],
            },
        ),
    ]
