from drf_spectacular.utils import extend_schema
from rest_framework import mixins, permissions, status, viewsets
from rest_framework.response import Response

from billing.exceptions import BillingError
from billing.permissions import IsBillingOperator
from config.pagination import OptionalPaginationListMixin

from .models import Plan
from .serializers import PlanCreateSerializer, PlanSerializer
from .services import create_plan_with_tiers


class PlanViewSet(
    OptionalPaginationListMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = PlanSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_permissions(self):
        if self.action == "create":
            return [IsBillingOperator()]
        return [permissions.IsAuthenticated()]

    def get_queryset(self):
        queryset = Plan.objects.prefetch_related("tiers")
        is_active = self.request.query_params.get("is_active", "").strip().lower()
        if is_active in {"1", "true", "yes"}:
            queryset = queryset.filter(is_active=True)
        elif is_active in {"0", "false", "no"}:
            queryset = queryset.filter(is_active=False)
        return queryset.order_by("name")

    def get_serializer_class(self):
        if self.action == "create":
            return PlanCreateSerializer
        return PlanSerializer

    @extend_schema(request=PlanCreateSerializer, responses=PlanSerializer)
    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            plan = create_plan_with_tiers(**serializer.validated_data)
        except BillingError as exc:
            return Response(exc.as_payload(), status=exc.http_status)
        return Response(
            PlanSerializer(plan, context=self.get_serializer_context()).data,
            status=status.HTTP_201_CREATED,
        )
