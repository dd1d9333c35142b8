from django.contrib import admin

from .models import Plan, PricingTier


class PricingTierInline(admin.TabularInline):
    model = PricingTier
    extra = 0
    fields = ("duration", "monthly_price", "total_price", "discount_percent")


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    list_display = ("name", "is_active", "created_at")
    list_filter = ("is_active",)
    search_fields = ("name",)
    inlines = [PricingTierInline]
