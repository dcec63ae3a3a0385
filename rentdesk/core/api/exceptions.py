"""
DRF exception handling for domain errors.

Services raise BillingError subclasses; this handler turns them into the same
``{"detail", "code", ...}`` JSON shape DRF uses for its own errors, so
clients only have to understand one error format.
"""

from __future__ import annotations

import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler
from rest_framework.views import set_rollback

from rentdesk.billing.exceptions import BillingError

logger = logging.getLogger(__name__)


def billing_exception_handler(exc, context):
    if isinstance(exc, BillingError):
        if exc.status_code >= 500:  # noqa: PLR2004
            logger.error("Billing error (%s): %s", exc.code, exc.detail)
        set_rollback()
        return Response(
            {"detail": exc.detail, "code": exc.code, **exc.extra},
            status=exc.status_code,
        )
    return exception_handler(exc, context)
