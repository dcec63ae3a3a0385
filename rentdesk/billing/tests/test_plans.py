"""
Tests for the plan catalog and the plan limits cache.
"""

import pytest
from django.test import TestCase

from rentdesk.billing.constants import BillingModel
from rentdesk.billing.constants import PlanCode
from rentdesk.billing.constants import PlanStatus
from rentdesk.billing.exceptions import PlanConflictError
from rentdesk.billing.exceptions import PlanNotFoundError
from rentdesk.billing.exceptions import PlanValidationError
from rentdesk.billing.models import Plan
from rentdesk.billing.plans import PlanCatalog
from rentdesk.billing.plans import PlanLimits
from rentdesk.billing.plans import PlanLimitsCache
from rentdesk.billing.plans import load_active_plan_limits


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _limits(code, max_seats=5):
    return PlanLimits(
        code=code,
        name=code.title(),
        billing_model=BillingModel.DYNAMIC,
        base_cost_cents=1000,
        seat_price_cents=100,
        max_seats=max_seats,
        max_catalog_items=10,
        features=(),
    )


class PlanLimitsCacheTests(TestCase):
    """TTL behaviour, driven by a fake clock and loader."""

    def setUp(self):
        self.clock = FakeClock()
        self.loads = 0
        self.max_seats = 5

        def loader():
            self.loads += 1
            return {"starter": _limits("starter", self.max_seats)}

        self.cache = PlanLimitsCache(ttl_seconds=60, clock=self.clock, loader=loader)

    def test_reads_within_ttl_hit_the_snapshot(self):
        self.cache.get_limits("starter")
        self.clock.now += 59
        self.cache.get_limits("starter")

        self.assertEqual(self.loads, 1)

    def test_expired_snapshot_is_rebuilt(self):
        self.cache.get_limits("starter")
        self.max_seats = 7
        self.clock.now += 60

        limits = self.cache.get_limits("starter")

        self.assertEqual(self.loads, 2)
        self.assertEqual(limits.max_seats, 7)

    def test_invalidate_forces_rebuild(self):
        self.cache.get_limits("starter")
        self.max_seats = 9

        self.cache.invalidate()

        self.assertEqual(self.cache.get_limits("starter").max_seats, 9)
        self.assertEqual(self.loads, 2)

    def test_unknown_code_raises_not_found(self):
        with pytest.raises(PlanNotFoundError):
            self.cache.get_limits("platinum")

    def test_get_all_returns_a_copy(self):
        snapshot = self.cache.get_all()
        snapshot.pop("starter")

        self.assertIn("starter", self.cache.get_all())

    def test_ttl_defaults_to_setting(self):
        cache = PlanLimitsCache()

        with self.settings(BILLING_PLAN_LIMITS_TTL_SECONDS=12):
            self.assertEqual(cache.ttl_seconds, 12)


class PlanCatalogTests(TestCase):
    def setUp(self):
        clock = FakeClock()
        self.cache = PlanLimitsCache(ttl_seconds=3600, clock=clock)
        self.catalog = PlanCatalog(cache=self.cache)

    def _plan_data(self, **overrides):
        data = {
            "code": "team_plus",
            "name": "Team Plus",
            "billing_model": BillingModel.DYNAMIC,
            "base_cost_cents": 4900,
            "seat_price_cents": 450,
            "max_seats": 10,
            "max_catalog_items": 250,
            "features": ["Priority support"],
            "display_order": 5,
        }
        data.update(overrides)
        return data

    def test_create_is_visible_through_cache(self):
        # Prime the cache before the plan exists
        self.cache.get_all()

        self.catalog.create(**self._plan_data())

        limits = self.cache.get_limits("team_plus")
        self.assertEqual(limits.max_seats, 10)
        self.assertEqual(limits.features, ("Priority support",))

    def test_create_duplicate_code_conflicts(self):
        with pytest.raises(PlanConflictError):
            self.catalog.create(**self._plan_data(code=PlanCode.STARTER))

    def test_create_rejects_invalid_code(self):
        with pytest.raises(PlanValidationError) as exc_info:
            self.catalog.create(**self._plan_data(code="Team Plus"))

        self.assertIn("code", exc_info.value.extra["errors"])

    def test_create_rejects_limit_below_unlimited(self):
        with pytest.raises(PlanValidationError):
            self.catalog.create(**self._plan_data(max_seats=-2))

    def test_create_rejects_non_string_features(self):
        with pytest.raises(PlanValidationError):
            self.catalog.create(**self._plan_data(features=[1, 2]))

    def test_update_round_trip_through_cache(self):
        self.assertEqual(self.cache.get_limits(PlanCode.STARTER).max_seats, 5)

        self.catalog.update(PlanCode.STARTER, max_seats=8)

        self.assertEqual(self.cache.get_limits(PlanCode.STARTER).max_seats, 8)

    def test_update_rejects_code_change(self):
        with pytest.raises(PlanValidationError):
            self.catalog.update(PlanCode.STARTER, code="starter_two")

        self.assertTrue(Plan.objects.filter(code=PlanCode.STARTER).exists())

    def test_mutation_invalidates_again_after_commit(self):
        """A rebuild between the write and its commit is dropped on commit."""
        loads = []

        def loader():
            loads.append(1)
            if len(loads) == 1:
                # A reader that still sees the committed rows
                return {PlanCode.STARTER: _limits(PlanCode.STARTER, max_seats=5)}
            return load_active_plan_limits()

        cache = PlanLimitsCache(ttl_seconds=300, clock=FakeClock(), loader=loader)
        catalog = PlanCatalog(cache=cache)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            catalog.update(PlanCode.STARTER, max_seats=8)
            self.assertEqual(cache.get_limits(PlanCode.STARTER).max_seats, 5)

        self.assertEqual(len(callbacks), 1)
        self.assertEqual(cache.get_limits(PlanCode.STARTER).max_seats, 8)

    def test_update_unknown_plan_raises_not_found(self):
        with pytest.raises(PlanNotFoundError):
            self.catalog.update("platinum", name="Platinum")

    def test_deactivate_hides_plan_immediately(self):
        """A read right after deactivation misses, inside the TTL window."""
        self.cache.get_limits(PlanCode.STARTER)

        self.catalog.deactivate(PlanCode.STARTER)

        with pytest.raises(PlanNotFoundError):
            self.cache.get_limits(PlanCode.STARTER)
        plan = Plan.objects.get(code=PlanCode.STARTER)
        self.assertEqual(plan.status, PlanStatus.INACTIVE)

    def test_deactivate_is_idempotent(self):
        self.catalog.deactivate(PlanCode.STARTER)
        self.catalog.deactivate(PlanCode.STARTER)

        self.assertFalse(Plan.objects.get(code=PlanCode.STARTER).is_active)

    def test_deactivate_unknown_plan_raises_not_found(self):
        with pytest.raises(PlanNotFoundError):
            self.catalog.deactivate("platinum")

    def test_find_all_excludes_inactive_by_default(self):
        self.catalog.deactivate(PlanCode.STARTER)

        active_codes = {plan.code for plan in self.catalog.find_all()}
        all_codes = {
            plan.code for plan in self.catalog.find_all(include_inactive=True)
        }

        self.assertNotIn(PlanCode.STARTER, active_codes)
        self.assertIn(PlanCode.STARTER, all_codes)

    def test_set_price_refs_leaves_missing_ref_untouched(self):
        self.catalog.set_price_refs(PlanCode.STARTER, base="price_base")
        self.catalog.set_price_refs(PlanCode.STARTER, seat="price_seat")

        plan = Plan.objects.get(code=PlanCode.STARTER)
        self.assertEqual(plan.stripe_base_price_id, "price_base")
        self.assertEqual(plan.stripe_seat_price_id, "price_seat")
        self.assertEqual(
            self.cache.get_limits(PlanCode.STARTER).stripe_seat_price_id,
            "price_seat",
        )

    def test_calculate_cost_dynamic_plan(self):
        cost = self.catalog.calculate_cost(PlanCode.STARTER, 3)

        self.assertEqual(
            cost,
            {"base_cost_cents": 2900, "seat_cost_cents": 1500, "total_cents": 4400},
        )

    def test_calculate_cost_fixed_plan_ignores_seats(self):
        cost = self.catalog.calculate_cost(PlanCode.FREE, 3)

        self.assertEqual(cost["seat_cost_cents"], 0)
        self.assertEqual(cost["total_cents"], 0)

    def test_validate_seat_count(self):
        self.catalog.validate_seat_count(PlanCode.STARTER, 5)
        self.catalog.validate_seat_count(PlanCode.ENTERPRISE, 10_000)

        with pytest.raises(PlanValidationError):
            self.catalog.validate_seat_count(PlanCode.STARTER, 6)
        with pytest.raises(PlanValidationError):
            self.catalog.validate_seat_count(PlanCode.STARTER, 0)
