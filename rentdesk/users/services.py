"""
Organization and membership flows that consume seats.

A new organization's subscription starts with one seat, held by its owner.
Every other active membership is reserved through ``SeatMeter`` before the
row is written, and released again if the write fails.
"""

from __future__ import annotations

import logging

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils.translation import gettext_lazy as _

from rentdesk.billing.metering import SeatMeter
from rentdesk.users.constants import RoleCode
from rentdesk.users.models import Membership
from rentdesk.users.models import Organization
from rentdesk.users.models import User

logger = logging.getLogger(__name__)


def create_organization(name: str, owner: User, *, email: str = "") -> Organization:
    """
    Create an organization with ``owner`` as its first member and make it
    the owner's current organization.
    """
    with transaction.atomic():
        org = Organization.objects.create(name=name, email=email)
        Membership.objects.create(user=owner, org=org, role=RoleCode.OWNER)
        owner.current_org = org
        owner.save(update_fields=["current_org"])
    logger.info("Created org=%s owned by user=%s", org.pk, owner.pk)
    return org


def add_member(
    org: Organization,
    user: User,
    role: str = RoleCode.MEMBER,
) -> Membership:
    """
    Add ``user`` to ``org``, consuming a seat.

    An inactive membership is reactivated with the new role. Adding an
    existing active member is a no-op.

    Raises:
        PlanLimitError: the organization has no seat left.
    """
    existing = Membership.objects.filter(user=user, org=org).first()
    if existing is not None and existing.is_active:
        return existing

    with SeatMeter().reserve(org), transaction.atomic():
        if existing is None:
            membership = Membership.objects.create(user=user, org=org, role=role)
        else:
            existing.role = role
            existing.is_active = True
            existing.save(update_fields=["role", "is_active", "modified"])
            membership = existing

    logger.info("Added user=%s to org=%s as %s", user.pk, org.pk, role)
    return membership


def deactivate_member(membership: Membership) -> Membership:
    """Deactivate a membership and release its seat. Owners cannot leave."""
    if membership.is_owner:
        raise ValidationError(_("The organization owner cannot be removed."))
    if not membership.is_active:
        return membership

    with transaction.atomic():
        membership.is_active = False
        membership.save(update_fields=["is_active", "modified"])
        SeatMeter().decrement(membership.org)

    logger.info(
        "Deactivated user=%s in org=%s",
        membership.user_id,
        membership.org_id,
    )
    return membership


def reactivate_member(membership: Membership) -> Membership:
    """
    Reactivate a membership, consuming a seat.

    Raises:
        PlanLimitError: the organization has no seat left.
    """
    if membership.is_active:
        return membership

    with SeatMeter().reserve(membership.org), transaction.atomic():
        membership.is_active = True
        membership.save(update_fields=["is_active", "modified"])

    logger.info(
        "Reactivated user=%s in org=%s",
        membership.user_id,
        membership.org_id,
    )
    return membership
