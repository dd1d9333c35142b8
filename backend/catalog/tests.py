from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import IntegrityError, transaction
from django.test import TestCase
from rest_framework.test import APIClient

from billing.exceptions import BillingValidationError, DomainConflict, NotFound

from .models import Duration, Plan, PricingTier
from .services import compute_total_price, create_plan_with_tiers, get_pricing_tier


def tier_payload(monthly_price="100.00", **overrides):
    tiers = {duration.value: {"monthly_price": monthly_price} for duration in Duration}
    tiers.update(overrides)
    return tiers


class CreatePlanTests(TestCase):
    def test_creates_all_four_tiers(self):
        plan = create_plan_with_tiers(
            name="Gold",
            tiers=tier_payload(ANNUAL={"monthly_price": "100.00", "discount_percent": "10"}),
            features=["Pool", "Sauna"],
        )
        tiers = {tier.duration: tier for tier in plan.tiers.all()}
        self.assertEqual(set(tiers), set(Duration.values))
        self.assertEqual(tiers[Duration.MONTHLY].total_price, Decimal("100.00"))
        self.assertEqual(tiers[Duration.SIX_MONTH].total_price, Decimal("600.00"))
        self.assertEqual(tiers[Duration.ANNUAL].total_price, Decimal("1080.00"))
        self.assertEqual(tiers[Duration.ANNUAL].months, 12)
        self.assertEqual(plan.features, ["Pool", "Sauna"])

    def test_explicit_total_price_is_kept(self):
        plan = create_plan_with_tiers(
            name="Silver",
            tiers=tier_payload(
                "50.00", THREE_MONTH={"monthly_price": "50.00", "total_price": "140.00"}
            ),
        )
        self.assertEqual(
            plan.tiers.get(duration=Duration.THREE_MONTH).total_price, Decimal("140.00")
        )

    def test_missing_duration_is_rejected(self):
        tiers = tier_payload()
        tiers.pop(Duration.SIX_MONTH.value)
        with self.assertRaises(BillingValidationError) as ctx:
            create_plan_with_tiers(name="Bronze", tiers=tiers)
        self.assertIn("tiers", ctx.exception.field_errors)
        self.assertFalse(Plan.objects.filter(name="Bronze").exists())

    def test_negative_price_is_rejected(self):
        with self.assertRaises(BillingValidationError):
            create_plan_with_tiers(name="Broken", tiers=tier_payload("-1.00"))

    def test_duplicate_name_is_conflict(self):
        create_plan_with_tiers(name="Gold", tiers=tier_payload())
        with self.assertRaises(DomainConflict) as ctx:
            create_plan_with_tiers(name="Gold", tiers=tier_payload())
        self.assertEqual(ctx.exception.code, DomainConflict.DUPLICATE)
        self.assertEqual(Plan.objects.filter(name="Gold").count(), 1)

    def test_one_tier_per_duration(self):
        plan = create_plan_with_tiers(name="Gold", tiers=tier_payload())
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                PricingTier.objects.create(
                    plan=plan,
                    duration=Duration.MONTHLY,
                    monthly_price=Decimal("90.00"),
                    total_price=Decimal("90.00"),
                )

    def test_compute_total_price(self):
        self.assertEqual(compute_total_price(Decimal("33.33"), Duration.THREE_MONTH), Decimal("99.99"))
        self.assertEqual(
            compute_total_price(Decimal("49.99"), Duration.SIX_MONTH, Decimal("12.5")),
            Decimal("262.45"),
        )


class PricingTierCacheTests(TestCase):
    def setUp(self):
        cache.clear()
        self.plan = create_plan_with_tiers(name="Gold", tiers=tier_payload())
        self.tier = self.plan.tiers.get(duration=Duration.MONTHLY)

    def test_lookup_is_cached(self):
        get_pricing_tier(self.tier.pk)
        with self.assertNumQueries(0):
            cached = get_pricing_tier(self.tier.pk)
        self.assertEqual(cached.monthly_price, Decimal("100.00"))
        self.assertEqual(cached.plan_id, self.plan.pk)

    def test_saving_a_tier_invalidates_the_cache(self):
        get_pricing_tier(self.tier.pk)
        self.tier.monthly_price = Decimal("120.00")
        self.tier.save()
        self.assertEqual(get_pricing_tier(self.tier.pk).monthly_price, Decimal("120.00"))

    def test_unknown_tier_is_not_found(self):
        with self.assertRaises(NotFound):
            get_pricing_tier(999999)


class PlanApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.operator = get_user_model().objects.create_user(
            username="manager", password="pass12345", is_staff=True
        )
        self.client.force_authenticate(user=self.operator)

    def test_create_plan(self):
        response = self.client.post(
            "/api/plans/",
            {"name": "Gold", "features": ["Pool"], "tiers": tier_payload()},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(response.data["tiers"]), 4)

    def test_create_plan_missing_tier(self):
        tiers = tier_payload()
        tiers.pop(Duration.ANNUAL.value)
        response = self.client.post(
            "/api/plans/", {"name": "Gold", "tiers": tiers}, format="json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("tiers", response.data)

    def test_duplicate_plan_is_conflict(self):
        create_plan_with_tiers(name="Gold", tiers=tier_payload())
        response = self.client.post(
            "/api/plans/", {"name": "Gold", "tiers": tier_payload()}, format="json"
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], DomainConflict.DUPLICATE)

    def test_members_can_list_but_not_create(self):
        create_plan_with_tiers(name="Gold", tiers=tier_payload())
        create_plan_with_tiers(name="Legacy", tiers=tier_payload(), is_active=False)
        user = get_user_model().objects.create_user(username="regular", password="pass12345")
        client = APIClient()
        client.force_authenticate(user=user)

        response = client.get("/api/plans/", {"is_active": "true"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual([plan["name"] for plan in response.data], ["Gold"])

        response = client.post(
            "/api/plans/", {"name": "Silver", "tiers": tier_payload()}, format="json"
        )
        self.assertEqual(response.status_code, 403)
