from django.db.models import Q
from drf_spectacular.utils import extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from billing.exceptions import BillingError
from billing.permissions import IsBillingOperator
from billing.serializers import MembershipHistoryEventSerializer
from billing.models import MembershipHistoryEvent
from config.pagination import OptionalPaginationListMixin

from .models import Member
from .serializers import MemberSerializer
from .services import delete_member, member_billing_summary, register_member, update_member


class MemberViewSet(OptionalPaginationListMixin, viewsets.ModelViewSet):
    serializer_class = MemberSerializer
    permission_classes = [IsBillingOperator]

    def get_queryset(self):
        queryset = Member.objects.all()

        is_active = self.request.query_params.get("is_active", "").strip().lower()
        if is_active in {"1", "true", "yes"}:
            queryset = queryset.filter(is_active=True)
        elif is_active in {"0", "false", "no"}:
            queryset = queryset.filter(is_active=False)

        search_value = self.request.query_params.get("q", "").strip()
        if search_value:
            queryset = queryset.filter(
                Q(name__icontains=search_value)
                | Q(email__icontains=search_value)
                | Q(id_number__icontains=search_value)
                | Q(phone__icontains=search_value)
            )
        return queryset.order_by("name", "id")

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            member = register_member(**serializer.validated_data)
        except BillingError as exc:
            return Response(exc.as_payload(), status=exc.http_status)
        return Response(self.get_serializer(member).data, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop("partial", False)
        member = self.get_object()
        serializer = self.get_serializer(member, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        try:
            member = update_member(member, **serializer.validated_data)
        except BillingError as exc:
            return Response(exc.as_payload(), status=exc.http_status)
        return Response(self.get_serializer(member).data, status=status.HTTP_200_OK)

    def destroy(self, request, *args, **kwargs):
        member = self.get_object()
        try:
            delete_member(member.pk)
        except BillingError as exc:
            return Response(exc.as_payload(), status=exc.http_status)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["get"], url_path="billing-summary")
    def billing_summary(self, request, *args, **kwargs):
        member = self.get_object()
        return Response(member_billing_summary(member), status=status.HTTP_200_OK)

    @extend_schema(responses=MembershipHistoryEventSerializer(many=True))
    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request, *args, **kwargs):
        member = self.get_object()
        events = MembershipHistoryEvent.objects.filter(member=member).select_related("actor")
        return Response(
            MembershipHistoryEventSerializer(events, many=True).data,
            status=status.HTTP_200_OK,
        )
