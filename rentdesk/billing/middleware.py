"""
Billing middleware for organization status enforcement.

Blocks mutating API requests from organizations that are suspended or
cancelled. Reads stay open so a blocked organization can still see its
data and billing state.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import TYPE_CHECKING

from django.http import JsonResponse

from rentdesk.billing.subscriptions import check_organization_active
from rentdesk.users.constants import OrganizationStatus

if TYPE_CHECKING:
    from django.http import HttpRequest
    from django.http import HttpResponse

logger = logging.getLogger(__name__)

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


class SubscriptionStatusMiddleware:
    """
    Return 402 Payment Required for unsafe API requests of inactive orgs.

    The status check suspends organizations whose paid period has ended, so
    this middleware is also where most lazy expiries happen.

    This middleware should be added after AuthenticationMiddleware.
    """

    API_PREFIX = "/api/"

    # Billing must stay reachable so a blocked org can pay its way back
    EXEMPT_PATH_PREFIXES = [
        "/api/v1/billing/",
        "/api/v1/plans/",
        "/api/schema/",
        "/api/docs/",
    ]

    ERROR_MESSAGES = {
        OrganizationStatus.SUSPENDED: (
            "Your organization is suspended. Please update your payment method."
        ),
        OrganizationStatus.CANCELLED: (
            "Your organization's subscription has been cancelled. "
            "Please resubscribe to continue."
        ),
    }

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        if not self._should_check(request):
            return self.get_response(request)

        org = request.user.get_current_org()
        if org is None:
            return self.get_response(request)

        result = check_organization_active(org)
        if not result.is_active:
            logger.info(
                "Blocked %s %s for org=%s (%s)",
                request.method,
                request.path,
                org.pk,
                result.status,
            )
            return JsonResponse(
                {
                    "detail": self.ERROR_MESSAGES.get(
                        result.status,
                        "Your organization is not active.",
                    ),
                    "code": "organization_inactive",
                    "status": result.status,
                },
                status=HTTPStatus.PAYMENT_REQUIRED,
            )

        return self.get_response(request)

    def _should_check(self, request: HttpRequest) -> bool:
        if request.method in SAFE_METHODS:
            return False
        if not request.path.startswith(self.API_PREFIX):
            return False
        if any(request.path.startswith(prefix) for prefix in self.EXEMPT_PATH_PREFIXES):
            return False
        user = getattr(request, "user", None)
        return bool(user and user.is_authenticated)
