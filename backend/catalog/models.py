from decimal import Decimal

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models


class Duration(models.TextChoices):
    MONTHLY = "MONTHLY", "Monthly"
    THREE_MONTH = "THREE_MONTH", "Three months"
    SIX_MONTH = "SIX_MONTH", "Six months"
    ANNUAL = "ANNUAL", "Annual"


DURATION_MONTHS = {
    Duration.MONTHLY: 1,
    Duration.THREE_MONTH: 3,
    Duration.SIX_MONTH: 6,
    Duration.ANNUAL: 12,
}


def months_for_duration(duration: str) -> int:
    try:
        return DURATION_MONTHS[Duration(duration)]
    except ValueError as exc:
        raise ValueError(f"Unknown duration class: {duration!r}") from exc


class Plan(models.Model):
    name = models.CharField(max_length=100, unique=True)
    description = models.TextField(blank=True)
    features = models.JSONField(default=list, blank=True)
    is_active = models.BooleanField(default=True)  # type: ignore[call-arg]
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return str(self.name)


class PricingTier(models.Model):
    plan = models.ForeignKey(Plan, on_delete=models.CASCADE, related_name="tiers")
    duration = models.CharField(max_length=20, choices=Duration.choices)
    monthly_price = models.DecimalField(
        max_digits=10, decimal_places=2, validators=[MinValueValidator(Decimal("0.00"))]
    )
    total_price = models.DecimalField(
        max_digits=10, decimal_places=2, validators=[MinValueValidator(Decimal("0.00"))]
    )
    discount_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("100"))],
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["id"]
        constraints = [
            models.UniqueConstraint(
                fields=["plan", "duration"],
                name="unique_pricing_tier_per_plan_duration",
            )
        ]

    @property
    def months(self) -> int:
        return months_for_duration(self.duration)

    def __str__(self) -> str:
        return f"{self.plan.name}: {self.get_duration_display()} @ {self.monthly_price}/month"
