"""
Quota meters for seats and catalog items.

The meters are called at enforcement points: before a member is added or
reactivated, and before a catalog item is created. Limits come from the
plan limits cache; counters live on the Subscription row and only ever
move through atomic ``F()`` updates.

Usage:
    # Check, then run the guarded operation with automatic compensation
    with CatalogItemMeter().reserve(org):
        CatalogItem.objects.create(org=org, ...)

    # Release the quota when the item is deleted
    CatalogItemMeter().decrement(org)

Concurrency: two requests can both pass the pre-check of ``increment`` and
both apply their update, overshooting the limit by the number of racers.
This is an accepted soft limit.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from django.db.models import F

from rentdesk.billing.constants import UNLIMITED
from rentdesk.billing.constants import QuotaResource
from rentdesk.billing.exceptions import PlanLimitError
from rentdesk.billing.exceptions import PlanNotFoundError
from rentdesk.billing.exceptions import PlanValidationError
from rentdesk.billing.models import Subscription
from rentdesk.billing.plans import PlanLimits
from rentdesk.billing.plans import plan_limits_cache
from rentdesk.billing.subscriptions import get_or_create_subscription

if TYPE_CHECKING:
    from collections.abc import Iterator

    from rentdesk.users.models import Organization

logger = logging.getLogger(__name__)


def within_limit(current: int, delta: int, limit: int) -> bool:
    """
    True when ``delta`` more units fit under ``limit``.

    The billing model does not matter here: a plan's own ceiling is what
    counts, and -1 means no ceiling.
    """
    return limit == UNLIMITED or current + delta <= limit


class QuotaMeter:
    """
    Base meter for one counter on the Subscription row.

    Subclasses set the counter field, the plan attribute holding its limit
    and the floor the counter may not drop below.
    """

    resource: str
    counter_field: str
    limit_field: str
    floor: int = 0

    def get_limits(self, subscription: Subscription) -> PlanLimits:
        try:
            return plan_limits_cache.get_limits(subscription.plan_id)
        except PlanNotFoundError:
            # Retired plans are not cached but still bind their subscribers
            return PlanLimits.from_plan(subscription.plan)

    def get_limit(self, subscription: Subscription) -> int:
        return getattr(self.get_limits(subscription), self.limit_field)

    def _load_subscription(self, org: Organization) -> Subscription:
        get_or_create_subscription(org)
        return Subscription.objects.select_related("plan").get(org=org)

    @staticmethod
    def _validate_delta(delta: int) -> None:
        if not isinstance(delta, int) or delta < 1:
            raise PlanValidationError(
                "Quota adjustments must be a positive whole number.",
                errors={"delta": ["Must be at least 1."]},
            )

    def can_add(self, org: Organization, delta: int = 1) -> bool:
        self._validate_delta(delta)
        subscription = self._load_subscription(org)
        return within_limit(
            getattr(subscription, self.counter_field),
            delta,
            self.get_limit(subscription),
        )

    def increment(self, org: Organization, delta: int = 1) -> None:
        """
        Add ``delta`` units if the plan allows it.

        The limit is re-checked here; never rely on an earlier ``can_add``.

        Raises:
            PlanLimitError: the counter would exceed the plan limit. The
                counter is left unchanged.
        """
        self._validate_delta(delta)
        subscription = self._load_subscription(org)
        limit = self.get_limit(subscription)
        current = getattr(subscription, self.counter_field)

        if not within_limit(current, delta, limit):
            raise PlanLimitError(resource=self.resource, limit=limit)

        Subscription.objects.filter(pk=subscription.pk).update(
            **{self.counter_field: F(self.counter_field) + delta},
        )
        logger.debug(
            "Incremented %s for org=%s: %d+%d (limit %s)",
            self.resource,
            org.pk,
            current,
            delta,
            limit,
        )

    def decrement(self, org: Organization, delta: int = 1) -> None:
        """
        Release ``delta`` units, clamped at the floor.

        A decrement that would cross the floor indicates a bookkeeping bug
        elsewhere; it is logged and the counter is set to the floor.
        """
        self._validate_delta(delta)
        subscription = self._load_subscription(org)
        field = self.counter_field

        updated = Subscription.objects.filter(
            pk=subscription.pk,
            **{f"{field}__gte": self.floor + delta},
        ).update(**{field: F(field) - delta})
        if updated:
            return

        logger.warning(
            "Decrement of %s by %d for org=%s would cross floor %d; clamping.",
            self.resource,
            delta,
            org.pk,
            self.floor,
        )
        Subscription.objects.filter(pk=subscription.pk).update(**{field: self.floor})

    @contextmanager
    def reserve(self, org: Organization, delta: int = 1) -> Iterator[None]:
        """
        Reserve quota for the duration of the block.

        The counter is incremented on entry. If the block raises, the
        reservation is released and the exception propagates. Run database
        writes in the block inside their own ``transaction.atomic()`` so the
        release can still reach the database after a failed write.
        """
        self.increment(org, delta)
        try:
            yield
        except Exception:
            logger.info(
                "Releasing %d reserved %s for org=%s after failure",
                delta,
                self.resource,
                org.pk,
            )
            self.decrement(org, delta)
            raise

    def get_usage(self, org: Organization) -> dict:
        """
        Get current usage.

        Returns:
            dict with 'used', 'limit', 'remaining' and 'unlimited' keys
        """
        subscription = self._load_subscription(org)
        used = getattr(subscription, self.counter_field)
        limit = self.get_limit(subscription)
        unlimited = limit == UNLIMITED
        return {
            "used": used,
            "limit": None if unlimited else limit,
            "remaining": None if unlimited else max(limit - used, 0),
            "unlimited": unlimited,
        }


class SeatMeter(QuotaMeter):
    """Active members. An organization always holds at least its owner's seat."""

    resource = QuotaResource.SEATS
    counter_field = "seat_count"
    limit_field = "max_seats"
    floor = 1


class CatalogItemMeter(QuotaMeter):
    resource = QuotaResource.CATALOG_ITEMS
    counter_field = "catalog_item_count"
    limit_field = "max_catalog_items"
    floor = 0
