"""
Mixin and permission classes for API views scoped to the caller's
current organization.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions
from rest_framework.exceptions import PermissionDenied

from rentdesk.users.constants import RoleCode

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView

    from rentdesk.users.models import Membership
    from rentdesk.users.models import Organization


class CurrentOrgMixin:
    """
    Resolve the organization the request acts on.

    The org is the authenticated user's current organization. Sets
    self._org on first access and provides get_org() and get_membership()
    helpers for views.

    Usage:
        class UsageView(CurrentOrgMixin, APIView):
            def get(self, request):
                return Response(SeatMeter().get_usage(self.get_org()))
    """

    _org: Organization | None = None
    _membership: Membership | None = None

    def get_org(self) -> Organization:
        if self._org is None:
            org = self.request.user.get_current_org()
            if org is None:
                msg = "You are not a member of any organization."
                raise PermissionDenied(msg)
            self._org = org
        return self._org

    def get_membership(self) -> Membership | None:
        if self._membership is None:
            self._membership = self.request.user.membership_for(self.get_org())
        return self._membership


class OrgMembershipPermission(permissions.BasePermission):
    """
    Grants access to active members of the current organization.

    Requires the view to use CurrentOrgMixin.
    """

    message = "You must be a member of this organization."

    def has_permission(self, request: Request, view: APIView) -> bool:
        if not request.user.is_authenticated:
            return False
        return view.get_membership() is not None


class OrgOwnerPermission(OrgMembershipPermission):
    """Billing and subscription management is reserved to owners."""

    message = "Only the organization owner can manage billing."

    def has_permission(self, request: Request, view: APIView) -> bool:
        if not request.user.is_authenticated:
            return False
        membership = view.get_membership()
        return membership is not None and membership.role == RoleCode.OWNER
