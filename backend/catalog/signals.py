from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .models import Plan, PricingTier
from .services import invalidate_tier_cache


@receiver(post_save, sender=PricingTier)
@receiver(post_delete, sender=PricingTier)
def clear_cached_tier(sender, instance, **kwargs):
    invalidate_tier_cache([instance.pk])


@receiver(post_save, sender=Plan)
def clear_cached_plan_tiers(sender, instance, **kwargs):
    invalidate_tier_cache(instance.tiers.values_list("id", flat=True))
