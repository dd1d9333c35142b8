from django.contrib import admin

from .models import (
    BillingAuditLog,
    Invoice,
    Membership,
    MembershipCancellation,
    MembershipHistoryEvent,
    Payment,
)


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    fields = ("status", "amount", "period_start", "period_end", "due_date", "paid_date")
    readonly_fields = fields
    can_delete = False


@admin.register(Membership)
class MembershipAdmin(admin.ModelAdmin):
    list_display = (
        "member",
        "plan",
        "pricing_tier",
        "status",
        "paid_months",
        "next_billing_date",
        "end_date",
        "auto_renew",
    )
    list_filter = ("status", "auto_renew", "plan")
    search_fields = ("member__name", "member__email")
    readonly_fields = ("id", "paid_months", "prorated_amount", "created_at", "updated_at")


@admin.register(MembershipCancellation)
class MembershipCancellationAdmin(admin.ModelAdmin):
    list_display = ("membership", "reason", "effective_date", "cancelled_at", "actor")
    search_fields = ("reason", "membership__member__name")


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ("invoice_number", "member", "status", "total", "issue_date", "due_date")
    list_filter = ("status", "issue_date")
    search_fields = ("invoice_number", "member__name", "member__email")
    readonly_fields = ("invoice_number", "created_at", "updated_at")
    inlines = [PaymentInline]


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("invoice", "member", "status", "amount", "due_date", "payment_method")
    list_filter = ("status", "payment_method")
    search_fields = ("invoice__invoice_number", "member__name")


@admin.register(MembershipHistoryEvent)
class MembershipHistoryEventAdmin(admin.ModelAdmin):
    list_display = (
        "membership",
        "event_type",
        "status_before",
        "status_after",
        "event_at",
    )
    list_filter = ("event_type", "status_after", "event_at")
    search_fields = ("member__name", "reason")
    readonly_fields = (
        "member",
        "membership",
        "invoice",
        "payment",
        "actor",
        "event_type",
        "event_at",
        "reason",
        "metadata",
        "status_before",
        "status_after",
        "created_at",
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(BillingAuditLog)
class BillingAuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "membership", "invoice", "actor", "created_at")
    list_filter = ("action",)
    search_fields = ("action", "message")
    readonly_fields = (
        "action",
        "message",
        "metadata",
        "actor",
        "member",
        "membership",
        "invoice",
        "created_at",
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
