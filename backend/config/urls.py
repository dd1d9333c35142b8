from django.contrib import admin
from django.http import JsonResponse
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView
from rest_framework.routers import DefaultRouter

from billing.views import (
    BillingAuditLogViewSet,
    InvoiceViewSet,
    MembershipViewSet,
    OverdueInvoicesCronView,
    PaymentViewSet,
    RecurringBillingCronView,
)
from catalog.views import PlanViewSet
from members.views import MemberViewSet

router = DefaultRouter()
router.register(r"members", MemberViewSet, basename="member")
router.register(r"plans", PlanViewSet, basename="plan")
router.register(r"memberships", MembershipViewSet, basename="membership")
router.register(r"invoices", InvoiceViewSet, basename="invoice")
router.register(r"payments", PaymentViewSet, basename="payment")
router.register(r"billing-audit-logs", BillingAuditLogViewSet, basename="billing-audit-log")


def health_check(request):
    return JsonResponse({"status": "ok"})


urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/health/", health_check, name="health-check"),
    path(
        "api/cron/recurring-billing/",
        RecurringBillingCronView.as_view(),
        name="cron-recurring-billing",
    ),
    path(
        "api/cron/overdue-invoices/",
        OverdueInvoicesCronView.as_view(),
        name="cron-overdue-invoices",
    ),
    path("api/", include(router.urls)),
    path("api/schema/", SpectacularAPIView.as_view(), name="schema"),
    path("api/docs/", SpectacularSwaggerView.as_view(url_name="schema"), name="docs"),
]
