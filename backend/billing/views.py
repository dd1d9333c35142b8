import logging
from datetime import date

from django.db.models import Q
from django.utils import timezone
from drf_spectacular.utils import extend_schema
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from config.pagination import OptionalPaginationListMixin

from .exceptions import BillingError
from .models import BillingAuditLog, Invoice, Membership, Payment
from .permissions import HasCronSecret, IsBillingOperator
from .scheduler import tick_overdue, tick_recurring
from .serializers import (
    AssignMembershipSerializer,
    BillingAuditLogSerializer,
    CancelInvoiceSerializer,
    CancelMembershipSerializer,
    ChangePlanSerializer,
    ChangeTierSerializer,
    InvoiceSerializer,
    MembershipActionSerializer,
    MembershipHistoryEventSerializer,
    MembershipSerializer,
    PaymentSerializer,
    RecordPaymentSerializer,
)
from .services import (
    AssignMembershipRequest,
    CancelMembershipRequest,
    ChangePlanRequest,
    ChangePricingTierRequest,
    InitialPayment,
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

logger = logging.getLogger(__name__)


def billing_error_response(exc: BillingError) -> Response:
    return Response(exc.as_payload(), status=exc.http_status)


def command_response(result, serializer_class, *, context=None, created=False) -> Response:
    payload = dict(serializer_class(result.value, context=context or {}).data)
    payload["already_applied"] = result.already_applied
    if created and not result.already_applied:
        return Response(payload, status=status.HTTP_201_CREATED)
    return Response(payload, status=status.HTTP_200_OK)


def _split_csv(raw_value: str | None) -> list[str]:
    if not raw_value:
        return []
    return [value.strip() for value in raw_value.split(",") if value.strip()]


def _parse_date(raw_value: str | None) -> date | None:
    if not raw_value:
        return None
    try:
        return date.fromisoformat(raw_value)
    except ValueError:
        return None


class MembershipViewSet(
    OptionalPaginationListMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = MembershipSerializer
    permission_classes = [IsBillingOperator]

    def get_queryset(self):
        queryset = Membership.objects.select_related("member", "plan", "pricing_tier")

        member_id = self.request.query_params.get("member_id")
        if member_id:
            queryset = queryset.filter(member_id=member_id)

        statuses = _split_csv(self.request.query_params.get("status"))
        if statuses:
            queryset = queryset.filter(status__in=statuses)

        search_value = self.request.query_params.get("q", "").strip()
        if search_value:
            queryset = queryset.filter(
                Q(member__name__icontains=search_value)
                | Q(member__email__icontains=search_value)
                | Q(plan__name__icontains=search_value)
            )
        return queryset.order_by("-created_at")

    def get_serializer_class(self):
        serializer_map = {
            "create": AssignMembershipSerializer,
            "cancel": CancelMembershipSerializer,
            "change_tier": ChangeTierSerializer,
            "change_plan": ChangePlanSerializer,
            "pause": MembershipActionSerializer,
            "resume": MembershipActionSerializer,
            "history": MembershipHistoryEventSerializer,
        }
        return serializer_map.get(self.action, MembershipSerializer)

    @extend_schema(request=AssignMembershipSerializer, responses=MembershipSerializer)
    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        initial_payment = data.get("initial_payment")
        try:
            result = assign_membership(
                AssignMembershipRequest(
                    member_id=data["member_id"],
                    plan_id=data["plan_id"],
                    tier_id=data["tier_id"],
                    start_date=data["start_date"],
                    billing_start_date=data.get("billing_start_date"),
                    auto_renew=data["auto_renew"],
                    initial_status=data["initial_status"],
                    custom_fields=data.get("custom_fields") or {},
                    tax=data["tax"],
                    discount=data["discount"],
                    initial_payment=InitialPayment(**initial_payment) if initial_payment else None,
                    actor=request.user,
                )
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return command_response(
            result, MembershipSerializer, context=self.get_serializer_context(), created=True
        )

    def _membership_id(self):
        return self.kwargs[self.lookup_url_kwarg or self.lookup_field]

    @extend_schema(request=CancelMembershipSerializer, responses=MembershipSerializer)
    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = cancel_membership(
                CancelMembershipRequest(
                    membership_id=self._membership_id(),
                    effective_date=serializer.validated_data["effective_date"],
                    reason=serializer.validated_data["reason"],
                    actor=request.user,
                )
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return command_response(result, MembershipSerializer)

    @extend_schema(request=ChangeTierSerializer, responses=MembershipSerializer)
    @action(detail=True, methods=["post"], url_path="change-tier")
    def change_tier(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = change_pricing_tier(
                ChangePricingTierRequest(
                    membership_id=self._membership_id(),
                    tier_id=serializer.validated_data["tier_id"],
                    actor=request.user,
                )
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return command_response(result, MembershipSerializer)

    @extend_schema(request=ChangePlanSerializer, responses=MembershipSerializer)
    @action(detail=True, methods=["post"], url_path="change-plan")
    def change_plan(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = change_plan(
                ChangePlanRequest(
                    membership_id=self._membership_id(),
                    plan_id=serializer.validated_data["plan_id"],
                    tier_id=serializer.validated_data["tier_id"],
                    actor=request.user,
                )
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return command_response(result, MembershipSerializer)

    @extend_schema(request=MembershipActionSerializer, responses=MembershipSerializer)
    @action(detail=True, methods=["post"], url_path="pause")
    def pause(self, request, *args, **kwargs):
        return self._operator_transition(request, pause_membership)

    @extend_schema(request=MembershipActionSerializer, responses=MembershipSerializer)
    @action(detail=True, methods=["post"], url_path="resume")
    def resume(self, request, *args, **kwargs):
        return self._operator_transition(request, resume_membership)

    def _operator_transition(self, request, command):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = command(
                MembershipActionRequest(
                    membership_id=self._membership_id(),
                    reason=serializer.validated_data.get("reason", ""),
                    actor=request.user,
                )
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return command_response(result, MembershipSerializer)

    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request, *args, **kwargs):
        membership = self.get_object()
        serializer = MembershipHistoryEventSerializer(
            membership.history_events.all(), many=True
        )
        return Response(serializer.data, status=status.HTTP_200_OK)


class InvoiceViewSet(OptionalPaginationListMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = InvoiceSerializer
    permission_classes = [IsBillingOperator]

    def get_queryset(self):
        queryset = Invoice.objects.select_related("member", "membership")
        params = self.request.query_params

        statuses = _split_csv(params.get("status"))
        if statuses:
            queryset = queryset.filter(status__in=statuses)

        member_id = params.get("member_id")
        if member_id:
            queryset = queryset.filter(member_id=member_id)

        membership_id = params.get("membership_id")
        if membership_id:
            queryset = queryset.filter(membership_id=membership_id)

        date_from = _parse_date(params.get("date_from"))
        if date_from:
            queryset = queryset.filter(issue_date__gte=date_from)
        date_to = _parse_date(params.get("date_to"))
        if date_to:
            queryset = queryset.filter(issue_date__lte=date_to)

        is_overdue = params.get("is_overdue", "").strip().lower()
        if is_overdue in {"1", "true", "yes"}:
            queryset = queryset.filter(
                Q(status=Invoice.Status.OVERDUE)
                | Q(status__in=Invoice.OPEN_STATUSES, due_date__lt=timezone.localdate())
            )

        search_value = params.get("q", "").strip()
        if search_value:
            queryset = queryset.filter(
                Q(invoice_number__icontains=search_value)
                | Q(member__name__icontains=search_value)
                | Q(member__email__icontains=search_value)
                | Q(notes__icontains=search_value)
            )
        return queryset.order_by("-issue_date", "-created_at")

    def get_serializer_class(self):
        serializer_map = {
            "record_payment": RecordPaymentSerializer,
            "cancel": CancelInvoiceSerializer,
        }
        return serializer_map.get(self.action, InvoiceSerializer)

    @extend_schema(request=RecordPaymentSerializer, responses=PaymentSerializer)
    @action(detail=True, methods=["post"], url_path="record-payment")
    def record_payment(self, request, pk=None):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = record_payment_outcome(
                RecordPaymentOutcomeRequest(
                    invoice_id=pk,
                    outcome=serializer.validated_data["outcome"],
                    method=serializer.validated_data.get("method", ""),
                    transaction_id=serializer.validated_data.get("transaction_id", ""),
                    actor=request.user,
                )
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return command_response(result, PaymentSerializer)

    @extend_schema(request=CancelInvoiceSerializer, responses=InvoiceSerializer)
    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = cancel_invoice(pk, serializer.validated_data["reason"], actor=request.user)
        except BillingError as exc:
            return billing_error_response(exc)
        return command_response(result, InvoiceSerializer)

    @extend_schema(request=None, responses=InvoiceSerializer)
    @action(detail=True, methods=["post"], url_path="mark-overdue")
    def mark_overdue(self, request, pk=None):
        try:
            result = mark_invoice_overdue(pk, actor=request.user)
        except BillingError as exc:
            return billing_error_response(exc)
        return command_response(result, InvoiceSerializer)


class PaymentViewSet(OptionalPaginationListMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = PaymentSerializer
    permission_classes = [IsBillingOperator]

    def get_queryset(self):
        queryset = Payment.objects.select_related("invoice", "member")
        params = self.request.query_params

        statuses = _split_csv(params.get("status"))
        if statuses:
            queryset = queryset.filter(status__in=statuses)

        for param, lookup in [
            ("member_id", "member_id"),
            ("membership_id", "membership_id"),
            ("invoice_id", "invoice_id"),
        ]:
            value = params.get(param)
            if value:
                queryset = queryset.filter(**{lookup: value})

        due_from = _parse_date(params.get("due_from"))
        if due_from:
            queryset = queryset.filter(due_date__gte=due_from)
        due_to = _parse_date(params.get("due_to"))
        if due_to:
            queryset = queryset.filter(due_date__lte=due_to)

        search_value = params.get("q", "").strip()
        if search_value:
            queryset = queryset.filter(
                Q(invoice__invoice_number__icontains=search_value)
                | Q(member__name__icontains=search_value)
                | Q(payment_method__icontains=search_value)
            )
        return queryset.order_by("-due_date", "-created_at")


class BillingAuditLogViewSet(OptionalPaginationListMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = BillingAuditLogSerializer
    permission_classes = [IsBillingOperator]

    def get_queryset(self):
        queryset = BillingAuditLog.objects.all()
        action_value = self.request.query_params.get("action")
        if action_value:
            queryset = queryset.filter(action=action_value)
        return queryset.order_by("-created_at", "-id")


class _CronView(APIView):
    permission_classes = [HasCronSecret]
    label = ""

    def run_sweep(self) -> dict[str, int]:
        raise NotImplementedError

    def get(self, request):
        try:
            summary = self.run_sweep()
        except Exception:
            logger.exception("%s cron run failed", self.label)
            return Response(
                {"detail": f"{self.label} failed."},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return Response(summary, status=status.HTTP_200_OK)


class RecurringBillingCronView(_CronView):
    label = "Recurring billing"

    def run_sweep(self):
        return tick_recurring()


class OverdueInvoicesCronView(_CronView):
    label = "Overdue sweep"

    def run_sweep(self):
        return tick_overdue()
