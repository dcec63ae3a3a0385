"""
Organization subscription record and status gate.

Status transitions are unconditional "set to X" updates filtered on the
states they may leave, so a racing webhook and a lazy expiry check cannot
resurrect a cancelled organization.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.utils import timezone

from rentdesk.billing.models import Subscription
from rentdesk.users.constants import OrganizationStatus
from rentdesk.users.models import Organization

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrganizationStatusResult:
    status: str
    subscription: Subscription | None

    @property
    def is_active(self) -> bool:
        return self.status == OrganizationStatus.ACTIVE


def get_or_create_subscription(org: Organization) -> Subscription:
    """
    Return the organization's subscription, creating a free-plan one for
    organizations that predate the post_save receiver.
    """
    subscription, created = Subscription.objects.get_or_create(org=org)
    if created:
        logger.info(
            "Created subscription for org=%s on plan %s",
            org.pk,
            subscription.plan_id,
        )
    return subscription


def _set_status(
    org: Organization,
    status: str,
    *,
    from_statuses: Iterable[str],
) -> bool:
    updated = Organization.objects.filter(
        pk=org.pk,
        status__in=list(from_statuses),
    ).update(status=status, modified=timezone.now())
    if updated:
        org.status = status
    return bool(updated)


def suspend_organization(org: Organization, *, reason: str = "") -> bool:
    """Move an active organization to suspended. Cancelled stays cancelled."""
    changed = _set_status(
        org,
        OrganizationStatus.SUSPENDED,
        from_statuses=[OrganizationStatus.ACTIVE],
    )
    if changed:
        logger.warning("Suspended org=%s: %s", org.pk, reason or "no reason given")
    return changed


def reactivate_organization(org: Organization) -> bool:
    """Move a suspended organization back to active. Returns True on change."""
    changed = _set_status(
        org,
        OrganizationStatus.ACTIVE,
        from_statuses=[OrganizationStatus.SUSPENDED],
    )
    if changed:
        logger.info("Reactivated org=%s", org.pk)
    return changed


def cancel_organization(org: Organization) -> bool:
    changed = _set_status(
        org,
        OrganizationStatus.CANCELLED,
        from_statuses=[OrganizationStatus.ACTIVE, OrganizationStatus.SUSPENDED],
    )
    if changed:
        logger.info("Cancelled org=%s", org.pk)
    return changed


def check_organization_active(org: Organization) -> OrganizationStatusResult:
    """
    Report whether the organization may perform mutating actions.

    An active organization whose paid period has ended is suspended as a
    side effect of this read, so no background sweep is needed. The change
    is persisted and visible to every later read.
    """
    org.refresh_from_db(fields=["status"])
    subscription = Subscription.objects.select_related("plan").filter(org=org).first()

    if org.status != OrganizationStatus.ACTIVE:
        return OrganizationStatusResult(status=org.status, subscription=subscription)

    period_end = subscription.current_period_end if subscription else None
    if period_end is not None and period_end < timezone.now():
        suspend_organization(
            org,
            reason=f"billing period ended {period_end:%Y-%m-%d}",
        )
        org.refresh_from_db(fields=["status"])

    return OrganizationStatusResult(status=org.status, subscription=subscription)
