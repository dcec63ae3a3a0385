"""
Plan catalog and the in-process plan limits cache.

Quota checks run on every mutating request, so they read plan limits from
``plan_limits_cache`` instead of the database. The cache holds one dict of
active plans, rebuilt when older than BILLING_PLAN_LIMITS_TTL_SECONDS.

The catalog owns the cache: every write made through ``PlanCatalog``
invalidates it, so a read right after a mutation never serves stale limits.
Code that writes Plan rows some other way (the admin site, seed_plans) must
call ``plan_limits_cache.invalidate()`` itself.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import IntegrityError
from django.db import transaction

from rentdesk.billing.constants import UNLIMITED
from rentdesk.billing.constants import PlanStatus
from rentdesk.billing.exceptions import PlanConflictError
from rentdesk.billing.exceptions import PlanNotFoundError
from rentdesk.billing.exceptions import PlanValidationError
from rentdesk.billing.models import Plan

logger = logging.getLogger(__name__)

IMMUTABLE_PLAN_FIELDS = frozenset({"code", "created", "modified"})


@dataclass(frozen=True)
class PlanLimits:
    """Read-only snapshot of a plan as seen by quota checks and pricing."""

    code: str
    name: str
    billing_model: str
    base_cost_cents: int
    seat_price_cents: int
    max_seats: int
    max_catalog_items: int
    features: tuple[str, ...]
    stripe_base_price_id: str = ""
    stripe_seat_price_id: str = ""

    @classmethod
    def from_plan(cls, plan: Plan) -> PlanLimits:
        return cls(
            code=plan.code,
            name=plan.name,
            billing_model=plan.billing_model,
            base_cost_cents=plan.base_cost_cents,
            seat_price_cents=plan.seat_price_cents,
            max_seats=plan.max_seats,
            max_catalog_items=plan.max_catalog_items,
            features=tuple(plan.features or ()),
            stripe_base_price_id=plan.stripe_base_price_id,
            stripe_seat_price_id=plan.stripe_seat_price_id,
        )

    @property
    def unlimited_seats(self) -> bool:
        return self.max_seats == UNLIMITED

    @property
    def unlimited_catalog_items(self) -> bool:
        return self.max_catalog_items == UNLIMITED


def load_active_plan_limits() -> dict[str, PlanLimits]:
    plans = Plan.objects.filter(status=PlanStatus.ACTIVE).order_by(
        "display_order",
        "code",
    )
    return {plan.code: PlanLimits.from_plan(plan) for plan in plans}


class PlanLimitsCache:
    """
    TTL cache of active plan limits.

    The whole map is rebuilt at once and published with a single attribute
    assignment, so readers never see a half-built map. Two threads may both
    rebuild after expiry; the last one wins and both results are equivalent.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        loader: Callable[[], dict[str, PlanLimits]] = load_active_plan_limits,
    ):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._loader = loader
        # (built_at, limits by code) or None when invalidated
        self._state: tuple[float, dict[str, PlanLimits]] | None = None

    @property
    def ttl_seconds(self) -> float:
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        return settings.BILLING_PLAN_LIMITS_TTL_SECONDS

    def _snapshot(self) -> dict[str, PlanLimits]:
        state = self._state
        now = self._clock()
        if state is None or now - state[0] >= self.ttl_seconds:
            limits = self._loader()
            self._state = (now, limits)
            logger.debug("Rebuilt plan limits cache with %d plans", len(limits))
            return limits
        return state[1]

    def get_limits(self, code: str) -> PlanLimits:
        limits = self._snapshot().get(code)
        if limits is None:
            raise PlanNotFoundError(f"No active plan with code '{code}'.")
        return limits

    def get_all(self) -> dict[str, PlanLimits]:
        return dict(self._snapshot())

    def invalidate(self) -> None:
        self._state = None


plan_limits_cache = PlanLimitsCache()


class PlanCatalog:
    """
    Create, update and retire plans.

    Every mutation validates with ``full_clean()`` and invalidates the plan
    limits cache before returning, and again once the transaction commits.
    """

    def __init__(self, cache: PlanLimitsCache | None = None):
        self.cache = cache or plan_limits_cache

    def get(self, code: str) -> Plan:
        try:
            return Plan.objects.get(code=code)
        except Plan.DoesNotExist as exc:
            raise PlanNotFoundError(f"Plan '{code}' does not exist.") from exc

    def find_active(self):
        return Plan.objects.filter(status=PlanStatus.ACTIVE).order_by(
            "display_order",
            "code",
        )

    def find_all(self, *, include_inactive: bool = False):
        if not include_inactive:
            return self.find_active()
        return Plan.objects.order_by("display_order", "code")

    def create(self, **data) -> Plan:
        code = data.get("code")
        if code and Plan.objects.filter(code=code).exists():
            raise PlanConflictError(f"Plan '{code}' already exists.")

        plan = Plan(**data)
        self._validate(plan, validate_unique=False)
        try:
            with transaction.atomic():
                plan.save(force_insert=True)
        except IntegrityError as exc:
            raise PlanConflictError(f"Plan '{plan.code}' already exists.") from exc
        self._invalidate_cache()
        logger.info("Created plan %s", plan.code)
        return plan

    def update(self, code: str, /, **changes) -> Plan:
        forbidden = IMMUTABLE_PLAN_FIELDS.intersection(changes)
        if forbidden:
            raise PlanValidationError(
                "Plan code cannot be changed.",
                errors={field: ["This field is immutable."] for field in forbidden},
            )

        plan = self.get(code)
        for field, value in changes.items():
            setattr(plan, field, value)
        self._validate(plan)
        plan.save()
        self._invalidate_cache()
        logger.info("Updated plan %s (%s)", code, ", ".join(sorted(changes)))
        return plan

    def deactivate(self, code: str) -> None:
        """
        Retire a plan. Subscriptions already on it keep it; it just stops
        being offered and can no longer be checked out. Repeating the call
        is a no-op.
        """
        updated = Plan.objects.filter(code=code).update(status=PlanStatus.INACTIVE)
        if not updated:
            raise PlanNotFoundError(f"Plan '{code}' does not exist.")
        self._invalidate_cache()
        logger.info("Deactivated plan %s", code)

    def set_price_refs(
        self,
        code: str,
        *,
        base: str | None = None,
        seat: str | None = None,
    ) -> Plan:
        """Persist Stripe price ids. ``None`` leaves a ref untouched."""
        changes = {}
        if base is not None:
            changes["stripe_base_price_id"] = base
        if seat is not None:
            changes["stripe_seat_price_id"] = seat
        if not changes:
            return self.get(code)

        updated = Plan.objects.filter(code=code).update(**changes)
        if not updated:
            raise PlanNotFoundError(f"Plan '{code}' does not exist.")
        self._invalidate_cache()
        return self.get(code)

    def calculate_cost(self, code: str, seat_count: int) -> dict:
        """
        Monthly cost in cents. Seats are only billed on dynamic plans.
        """
        plan = self.get(code)
        seat_cost = plan.seat_price_cents * seat_count if plan.is_dynamic else 0
        return {
            "base_cost_cents": plan.base_cost_cents,
            "seat_cost_cents": seat_cost,
            "total_cents": plan.base_cost_cents + seat_cost,
        }

    def validate_seat_count(self, code: str, seat_count: int) -> None:
        plan = self.get(code)
        if seat_count < 1:
            raise PlanValidationError(
                "Seat count must be at least 1.",
                errors={"seat_count": ["Must be at least 1."]},
            )
        if plan.max_seats != UNLIMITED and seat_count > plan.max_seats:
            raise PlanValidationError(
                f"The {plan.name} plan allows at most {plan.max_seats} seats.",
                errors={"seat_count": [f"Must be at most {plan.max_seats}."]},
            )

    def _invalidate_cache(self) -> None:
        # A read between now and commit may rebuild from the old rows
        self.cache.invalidate()
        transaction.on_commit(self.cache.invalidate)

    @staticmethod
    def _validate(plan: Plan, *, validate_unique: bool = True) -> None:
        try:
            plan.full_clean(validate_unique=validate_unique)
        except ValidationError as exc:
            raise PlanValidationError(
                "Invalid plan definition.",
                errors=exc.message_dict,
            ) from exc
