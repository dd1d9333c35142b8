from __future__ import annotations

from typing import Any


class BillingError(Exception):
    code = "BILLING_ERROR"
    http_status = 400

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or str(self.args[0])
        if code:
            self.code = code

    def as_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class BillingValidationError(BillingError):
    """Invalid input."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, field_errors: dict[str, Any] | str, *, code: str | None = None):
        if isinstance(field_errors, str):
            field_errors = {"non_field_errors": [field_errors]}
        self.field_errors = {
            field: messages if isinstance(messages, list) else [messages]
            for field, messages in field_errors.items()
        }
        super().__init__("Validation failed.", code=code)

    def as_payload(self) -> dict[str, Any]:
        return {**self.field_errors, "code": self.code}


class NotFound(BillingError):
    """Referenced record does not exist."""

    code = "NOT_FOUND"
    http_status = 404


class DomainConflict(BillingError):
    """Operation would violate a billing rule."""

    CATALOG_MISMATCH = "CATALOG_MISMATCH"
    LIVE_MEMBERSHIP_EXISTS = "LIVE_MEMBERSHIP_EXISTS"
    INVOICE_CANCELLED = "INVOICE_CANCELLED"
    INVOICE_PAID = "INVOICE_PAID"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    COMMITMENT_EXCEEDED = "COMMITMENT_EXCEEDED"
    MEMBER_HAS_INVOICES = "MEMBER_HAS_INVOICES"
    DUPLICATE = "DUPLICATE"

    code = "DOMAIN_CONFLICT"
    http_status = 409


class TransientError(BillingError):
    """Storage is temporarily unavailable."""

    code = "TRANSIENT"
    http_status = 503


class FatalError(BillingError):
    """Storage reported an unexpected failure."""

    code = "FATAL"
    http_status = 500
