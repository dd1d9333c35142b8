from rest_framework import serializers

from .models import BillingAuditLog, Invoice, Membership, MembershipHistoryEvent, Payment
from .services import PAYMENT_OUTCOMES


class MembershipSerializer(serializers.ModelSerializer):
    member_name = serializers.CharField(source="member.name", read_only=True)
    plan_name = serializers.CharField(source="plan.name", read_only=True)
    duration = serializers.CharField(source="pricing_tier.duration", read_only=True)

    class Meta:
        model = Membership
        fields = [
            "id",
            "member",
            "member_name",
            "plan",
            "plan_name",
            "pricing_tier",
            "duration",
            "start_date",
            "end_date",
            "billing_start_date",
            "next_billing_date",
            "status",
            "auto_renew",
            "paid_months",
            "prorated_amount",
            "custom_fields",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class InitialPaymentSerializer(serializers.Serializer):
    method = serializers.ChoiceField(choices=Payment.Method.choices)
    transaction_id = serializers.CharField(max_length=255, required=False, allow_blank=True)


class AssignMembershipSerializer(serializers.Serializer):
    member_id = serializers.IntegerField()
    plan_id = serializers.IntegerField()
    tier_id = serializers.IntegerField()
    start_date = serializers.DateField()
    billing_start_date = serializers.DateField(required=False)
    auto_renew = serializers.BooleanField(required=False, default=True)
    initial_status = serializers.ChoiceField(
        choices=[Membership.Status.ACTIVE, Membership.Status.PENDING],
        required=False,
        default=Membership.Status.PENDING,
    )
    custom_fields = serializers.DictField(required=False, default=dict)
    tax = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=0, required=False, default=0
    )
    discount = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=0, required=False, default=0
    )
    initial_payment = InitialPaymentSerializer(required=False)

    def validate(self, attrs):
        billing_start_date = attrs.get("billing_start_date")
        if billing_start_date and billing_start_date < attrs["start_date"]:
            raise serializers.ValidationError(
                {"billing_start_date": "Billing cannot start before the membership starts."}
            )
        return attrs


class CancelMembershipSerializer(serializers.Serializer):
    effective_date = serializers.DateField()
    reason = serializers.CharField(max_length=255)


class ChangeTierSerializer(serializers.Serializer):
    tier_id = serializers.IntegerField()


class ChangePlanSerializer(serializers.Serializer):
    plan_id = serializers.IntegerField()
    tier_id = serializers.IntegerField()


class MembershipActionSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True)


class InvoiceSerializer(serializers.ModelSerializer):
    member_name = serializers.CharField(source="member.name", read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "member",
            "member_name",
            "membership",
            "subtotal",
            "tax",
            "discount",
            "total",
            "currency",
            "issue_date",
            "due_date",
            "paid_date",
            "period_start",
            "status",
            "notes",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    invoice_number = serializers.CharField(source="invoice.invoice_number", read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "member",
            "membership",
            "invoice",
            "invoice_number",
            "amount",
            "currency",
            "status",
            "period_start",
            "period_end",
            "due_date",
            "paid_date",
            "payment_method",
            "transaction_id",
            "created_at",
        ]
        read_only_fields = fields


class RecordPaymentSerializer(serializers.Serializer):
    outcome = serializers.ChoiceField(choices=[(value, value) for value in PAYMENT_OUTCOMES])
    method = serializers.ChoiceField(
        choices=Payment.Method.choices, required=False, allow_blank=True, default=""
    )
    transaction_id = serializers.CharField(
        max_length=255, required=False, allow_blank=True, default=""
    )

    def validate(self, attrs):
        if attrs["outcome"] == Payment.Status.PAID and not attrs.get("method"):
            raise serializers.ValidationError({"method": "A payment method is required for PAID."})
        return attrs


class CancelInvoiceSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255)


class MembershipHistoryEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = MembershipHistoryEvent
        fields = [
            "id",
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
        ]
        read_only_fields = fields


class BillingAuditLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = BillingAuditLog
        fields = [
            "id",
            "action",
            "message",
            "metadata",
            "actor",
            "member",
            "membership",
            "invoice",
            "created_at",
        ]
        read_only_fields = fields
