from hmac import compare_digest

from django.conf import settings
from rest_framework.permissions import BasePermission


class IsBillingOperator(BasePermission):
    def has_permission(self, request, view) -> bool:  # type: ignore
        return bool(request.user and request.user.is_authenticated and request.user.is_staff)


class HasCronSecret(BasePermission):
    """Bearer CRON_SECRET when configured, otherwise a staff session."""

    def has_permission(self, request, view) -> bool:  # type: ignore
        secret = getattr(settings, "CRON_SECRET", "")
        if not secret:
            return bool(request.user and request.user.is_authenticated and request.user.is_staff)
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        return scheme.lower() == "bearer" and compare_digest(token.strip(), secret)
