from rest_framework import serializers

from .models import Duration, Plan, PricingTier


class PricingTierSerializer(serializers.ModelSerializer):
    months = serializers.IntegerField(read_only=True)

    class Meta:
        model = PricingTier
        fields = [
            "id",
            "plan",
            "duration",
            "months",
            "monthly_price",
            "total_price",
            "discount_percent",
        ]
        read_only_fields = fields


class PlanSerializer(serializers.ModelSerializer):
    tiers = PricingTierSerializer(many=True, read_only=True)

    class Meta:
        model = Plan
        fields = [
            "id",
            "name",
            "description",
            "features",
            "is_active",
            "tiers",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class TierPriceSerializer(serializers.Serializer):
    monthly_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)
    discount_percent = serializers.DecimalField(
        max_digits=5, decimal_places=2, min_value=0, max_value=100, required=False
    )
    total_price = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=0, required=False
    )


class PlanCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    features = serializers.ListField(
        child=serializers.CharField(max_length=255), required=False, default=list
    )
    is_active = serializers.BooleanField(required=False, default=True)
    tiers = serializers.DictField(child=TierPriceSerializer())

    def validate_tiers(self, value):
        missing = [duration for duration in Duration.values if duration not in value]
        unknown = [key for key in value if key not in Duration.values]
        if missing:
            raise serializers.ValidationError(f"Missing pricing for: {', '.join(missing)}.")
        if unknown:
            raise serializers.ValidationError(f"Unknown duration: {', '.join(unknown)}.")
        return value
