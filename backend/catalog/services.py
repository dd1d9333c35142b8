from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Mapping

from django.conf import settings
from django.core.cache import cache
from django.db import IntegrityError, transaction

from billing.exceptions import BillingValidationError, DomainConflict, NotFound
from billing.proration import quantize_money

from .models import Duration, Plan, PricingTier, months_for_duration

logger = logging.getLogger(__name__)


def _tier_cache_key(tier_id) -> str:
    return f"catalog:tier:{tier_id}"


def invalidate_tier_cache(tier_ids) -> None:
    cache.delete_many([_tier_cache_key(tier_id) for tier_id in tier_ids])


def get_pricing_tier(tier_id) -> PricingTier:
    """Tier lookup cached for at most one scheduler tick."""
    key = _tier_cache_key(tier_id)
    tier = cache.get(key)
    if tier is not None:
        return tier
    try:
        tier = PricingTier.objects.select_related("plan").get(pk=tier_id)
    except (PricingTier.DoesNotExist, ValueError, TypeError):
        raise NotFound(f"Pricing tier {tier_id} does not exist.")
    cache.set(key, tier, timeout=settings.CATALOG_CACHE_SECONDS)
    return tier


def get_plan(plan_id) -> Plan:
    try:
        return Plan.objects.get(pk=plan_id)
    except (Plan.DoesNotExist, ValueError, TypeError):
        raise NotFound(f"Plan {plan_id} does not exist.")


def compute_total_price(
    monthly_price: Decimal, duration: str, discount_percent: Decimal | None = None
) -> Decimal:
    total = Decimal(monthly_price) * months_for_duration(duration)
    if discount_percent:
        total = total * (Decimal("100") - Decimal(discount_percent)) / Decimal("100")
    return quantize_money(total)


def create_plan_with_tiers(
    *,
    name: str,
    tiers: Mapping[str, Mapping[str, Any]],
    description: str = "",
    features: list[str] | None = None,
    is_active: bool = True,
) -> Plan:
    """Create a plan together with its four pricing tiers.

    ``tiers`` maps each duration class to ``monthly_price`` and optionally
    ``discount_percent`` or an explicit ``total_price``.
    """
    errors: dict[str, list[str]] = {}
    name = str(name or "").strip()
    if not name:
        errors["name"] = ["Plan name is required."]
    missing = [duration.value for duration in Duration if duration.value not in tiers]
    unknown = [key for key in tiers if key not in Duration.values]
    if missing:
        errors["tiers"] = [f"Missing pricing for: {', '.join(missing)}."]
    if unknown:
        errors.setdefault("tiers", []).append(f"Unknown duration: {', '.join(unknown)}.")

    tier_rows = []
    for duration in Duration:
        payload = tiers.get(duration.value)
        if payload is None:
            continue
        try:
            monthly_price = Decimal(str(payload["monthly_price"]))
            discount_percent = payload.get("discount_percent")
            if discount_percent is not None:
                discount_percent = Decimal(str(discount_percent))
        except (KeyError, ArithmeticError, ValueError):
            errors.setdefault("tiers", []).append(f"{duration.value}: pricing is invalid.")
            continue
        if monthly_price < 0:
            errors.setdefault("tiers", []).append(f"{duration.value}: monthly_price must be >= 0.")
            continue
        total_price = payload.get("total_price")
        if total_price is None:
            total_price = compute_total_price(monthly_price, duration.value, discount_percent)
        tier_rows.append((duration.value, monthly_price, Decimal(str(total_price)), discount_percent))

    if errors:
        raise BillingValidationError(errors)

    try:
        with transaction.atomic():
            plan = Plan.objects.create(
                name=name,
                description=description,
                features=list(features or []),
                is_active=is_active,
            )
            PricingTier.objects.bulk_create(
                [
                    PricingTier(
                        plan=plan,
                        duration=duration,
                        monthly_price=monthly_price,
                        total_price=total_price,
                        discount_percent=discount_percent,
                    )
                    for duration, monthly_price, total_price, discount_percent in tier_rows
                ]
            )
    except IntegrityError:
        raise DomainConflict(
            f"A plan named {name!r} already exists.", code=DomainConflict.DUPLICATE
        )
    # bulk_create skips post_save, so clear any stale entries for reused ids.
    invalidate_tier_cache(plan.tiers.values_list("id", flat=True))
    logger.info("Created plan %s with %d tiers", plan.pk, len(tier_rows))
    return plan
