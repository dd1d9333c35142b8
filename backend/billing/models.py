from decimal import Decimal
from uuid import uuid4

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from catalog.models import Plan, PricingTier
from members.models import Member

from .fields import EncryptedCharField


def default_currency() -> str:
    return settings.BILLING_CURRENCY


class Membership(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        ACTIVE = "ACTIVE", "Active"
        FROZEN = "FROZEN", "Frozen"
        PAUSED = "PAUSED", "Paused"
        CANCELLED = "CANCELLED", "Cancelled"
        EXPIRED = "EXPIRED", "Expired"

    LIVE_STATUSES = [Status.PENDING, Status.ACTIVE, Status.FROZEN, Status.PAUSED]

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    member = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="memberships")
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="memberships")
    pricing_tier = models.ForeignKey(
        PricingTier, on_delete=models.PROTECT, related_name="memberships"
    )
    start_date = models.DateField()
    end_date = models.DateField()
    billing_start_date = models.DateField()
    next_billing_date = models.DateField()
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    auto_renew = models.BooleanField(default=True)  # type: ignore[call-arg]
    paid_months = models.PositiveIntegerField(default=0)
    prorated_amount = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0.00")
    )
    custom_fields = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "next_billing_date"], name="mship_status_next_bill_idx"),
            models.Index(fields=["member", "-created_at"], name="mship_member_created_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["member"],
                condition=Q(status__in=["PENDING", "ACTIVE", "FROZEN", "PAUSED"]),
                name="unique_live_membership_per_member",
            )
        ]

    @property
    def is_live(self) -> bool:
        return self.status in self.LIVE_STATUSES

    def __str__(self) -> str:
        return f"{self.member} · {self.plan} · {self.status}"


class MembershipCancellation(models.Model):
    membership = models.OneToOneField(
        Membership, on_delete=models.CASCADE, related_name="cancellation"
    )
    reason = models.CharField(max_length=255)
    effective_date = models.DateField()
    cancelled_at = models.DateTimeField(default=timezone.now)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="membership_cancellations",
    )

    def __str__(self) -> str:
        return f"{self.membership_id} cancelled {self.cancelled_at:%Y-%m-%d}"


class Invoice(models.Model):
    class Status(models.TextChoices):
        DRAFT = "DRAFT", "Draft"
        ISSUED = "ISSUED", "Issued"
        PARTIALLY_PAID = "PARTIALLY_PAID", "Partially paid"
        PAID = "PAID", "Paid"
        OVERDUE = "OVERDUE", "Overdue"
        CANCELLED = "CANCELLED", "Cancelled"

    OPEN_STATUSES = [Status.ISSUED, Status.PARTIALLY_PAID]
    UNSETTLED_STATUSES = [Status.ISSUED, Status.PARTIALLY_PAID, Status.OVERDUE]

    invoice_number = models.CharField(max_length=32, unique=True, editable=False)
    member = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="invoices")
    membership = models.ForeignKey(
        Membership, on_delete=models.CASCADE, related_name="invoices"
    )
    subtotal = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    tax = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    discount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default=default_currency)
    issue_date = models.DateField()
    due_date = models.DateField()
    paid_date = models.DateTimeField(null=True, blank=True)
    period_start = models.DateField()
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ISSUED)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-issue_date", "-created_at"]
        indexes = [
            models.Index(fields=["status", "due_date"], name="inv_status_due_idx"),
            models.Index(fields=["member", "-issue_date"], name="inv_member_issue_idx"),
            models.Index(fields=["-issue_date"], name="inv_issue_date_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["membership", "period_start"],
                name="unique_invoice_per_membership_period",
            ),
            models.CheckConstraint(
                condition=Q(total__gte=0),
                name="invoice_total_non_negative",
            ),
        ]

    def clean(self):
        super().clean()
        expected_total = self.subtotal + self.tax - self.discount
        if self.total != expected_total:
            raise ValidationError({"total": "Total must equal subtotal + tax - discount."})
        if self.total < 0:
            raise ValidationError({"total": "Total cannot be negative."})

    def __str__(self) -> str:
        return str(self.invoice_number)


class Payment(models.Model):
    class Method(models.TextChoices):
        CASH = "CASH", "Cash"
        CARD = "CARD", "Card"
        BANK_TRANSFER = "BANK_TRANSFER", "Bank transfer"
        DIRECT_DEBIT = "DIRECT_DEBIT", "Direct debit"
        OTHER = "OTHER", "Other"

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PAID = "PAID", "Paid"
        FAILED = "FAILED", "Failed"
        REFUNDED = "REFUNDED", "Refunded"
        PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED", "Partially refunded"
        CANCELLED = "CANCELLED", "Cancelled"

    OUTSTANDING_STATUSES = [Status.PENDING, Status.FAILED]

    member = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="payments")
    membership = models.ForeignKey(
        Membership, on_delete=models.CASCADE, related_name="payments"
    )
    invoice = models.ForeignKey(
        Invoice, on_delete=models.CASCADE, null=True, blank=True, related_name="payments"
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default=default_currency)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    period_start = models.DateField()
    period_end = models.DateField()
    due_date = models.DateField()
    paid_date = models.DateTimeField(null=True, blank=True)
    payment_method = models.CharField(max_length=20, choices=Method.choices, blank=True)
    transaction_id = EncryptedCharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-due_date", "-created_at"]
        indexes = [
            models.Index(fields=["status", "due_date"], name="pay_status_due_idx"),
            models.Index(fields=["membership", "period_start"], name="pay_mship_period_idx"),
            models.Index(fields=["invoice", "-created_at"], name="pay_invoice_created_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.invoice} - {self.amount} {self.currency}"


class MembershipHistoryEvent(models.Model):
    class EventType(models.TextChoices):
        CREATED = "created", "Created"
        ACTIVATED = "activated", "Activated"
        FROZEN = "frozen", "Frozen"
        UNFROZEN = "unfrozen", "Unfrozen"
        PAUSED = "paused", "Paused"
        RESUMED = "resumed", "Resumed"
        CANCELLED = "cancelled", "Cancelled"
        EXPIRED = "expired", "Expired"
        RENEWED = "renewed", "Renewed"
        TIER_CHANGED = "tier_changed", "Tier changed"
        PLAN_CHANGED = "plan_changed", "Plan changed"
        PAYMENT_RECORDED = "payment_recorded", "Payment recorded"

    member = models.ForeignKey(
        Member, on_delete=models.CASCADE, related_name="membership_history_events"
    )
    membership = models.ForeignKey(
        Membership, on_delete=models.CASCADE, related_name="history_events"
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="history_events",
    )
    payment = models.ForeignKey(
        Payment,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="history_events",
    )
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="membership_history_events",
    )
    event_type = models.CharField(max_length=30, choices=EventType.choices)
    event_at = models.DateTimeField(default=timezone.now)
    reason = models.CharField(max_length=255, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    status_before = models.CharField(max_length=20, blank=True)
    status_after = models.CharField(max_length=20, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-event_at", "-id"]
        indexes = [
            models.Index(fields=["membership", "-event_at"], name="mhist_mship_event_idx"),
            models.Index(fields=["event_type", "-event_at"], name="mhist_type_event_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Membership history events are immutable.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Membership history events are immutable.")

    def __str__(self) -> str:
        return f"{self.membership_id} · {self.event_type} · {self.event_at:%Y-%m-%d}"


class BillingAuditLog(models.Model):
    action = models.CharField(max_length=100)
    message = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="billing_audit_logs",
    )
    member = models.ForeignKey(
        Member, on_delete=models.SET_NULL, null=True, blank=True, related_name="billing_logs"
    )
    membership = models.ForeignKey(
        Membership, on_delete=models.SET_NULL, null=True, blank=True, related_name="audit_logs"
    )
    invoice = models.ForeignKey(
        Invoice, on_delete=models.SET_NULL, null=True, blank=True, related_name="audit_logs"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["-created_at"], name="billlog_created_idx"),
            models.Index(fields=["action", "-created_at"], name="billlog_action_created_idx"),
        ]

    def __str__(self):
        return f"{self.action} - {self.created_at:%Y-%m-%d}"
