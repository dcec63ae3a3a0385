from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions

from rentdesk.billing.exceptions import OrganizationInactiveError
from rentdesk.billing.subscriptions import check_organization_active

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView


class ActiveOrganizationRequired(permissions.BasePermission):
    """
    Deny mutating actions to suspended or cancelled organizations.

    Raises OrganizationInactiveError (402) rather than returning False, so
    clients can tell a billing block from a missing permission. Requires
    the view to use CurrentOrgMixin.
    """

    def has_permission(self, request: Request, view: APIView) -> bool:
        result = check_organization_active(view.get_org())
        if not result.is_active:
            raise OrganizationInactiveError(result.status)
        return True
