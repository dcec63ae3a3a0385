"""
Billing exceptions.

Every error raised by the billing engine derives from BillingError, which
carries a human-readable ``detail``, a machine-readable ``code`` and the HTTP
status the API layer should answer with. Extra keyword arguments end up in
``extra`` and are rendered alongside detail/code, so callers can react to
e.g. the ``resource`` of a quota failure without parsing messages.
"""

from __future__ import annotations

from http import HTTPStatus

PLAN_LIMIT_REACHED = "PLAN_LIMIT_REACHED"


class BillingError(Exception):
    """Base exception for billing-related errors."""

    status_code = HTTPStatus.BAD_REQUEST
    default_code = "billing_error"

    def __init__(self, detail: str, code: str | None = None, **extra):
        self.detail = detail
        self.code = code or self.default_code
        self.extra = extra
        super().__init__(detail)


class PlanValidationError(BillingError):
    """Malformed plan definition or invalid billing input."""

    default_code = "invalid"

    def __init__(self, detail: str, errors: dict | None = None):
        super().__init__(detail, errors=errors or {})


class PlanConflictError(BillingError):
    """A plan with the same code already exists."""

    status_code = HTTPStatus.CONFLICT
    default_code = "conflict"


class PlanNotFoundError(BillingError):
    """No plan (or no active plan) matches the requested code."""

    status_code = HTTPStatus.NOT_FOUND
    default_code = "not_found"


class OrganizationNotFoundError(BillingError):
    status_code = HTTPStatus.NOT_FOUND
    default_code = "not_found"

    def __init__(self, detail: str = "Organization not found."):
        super().__init__(detail)


class PlanLimitError(BillingError):
    """
    Raised when a counter would exceed the plan quota.

    This is an expected, user-actionable condition: the ``resource`` tells
    the client which upgrade prompt to show.
    """

    def __init__(
        self,
        resource: str,
        limit: int,
        detail: str | None = None,
    ):
        self.resource = resource
        self.limit = limit
        super().__init__(
            detail
            or (
                f"Your plan allows a maximum of {limit} {resource.replace('_', ' ')}. "
                "Upgrade your plan to add more."
            ),
            code=PLAN_LIMIT_REACHED,
            resource=resource,
            limit=limit,
        )


class BillingRequestError(BillingError):
    """The request cannot be served in the organization's billing state."""

    default_code = "bad_request"


class BillingProviderError(BillingError):
    """A Stripe API call failed."""

    status_code = HTTPStatus.BAD_GATEWAY
    default_code = "provider_error"


class BillingConfigurationError(BillingError):
    """Stripe keys, webhook secret or price references are missing."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    default_code = "billing_not_configured"


class WebhookSignatureError(BillingError):
    """The webhook payload failed signature verification."""

    default_code = "invalid_signature"


class OrganizationInactiveError(BillingError):
    status_code = HTTPStatus.PAYMENT_REQUIRED
    default_code = "organization_inactive"

    def __init__(self, status: str, detail: str | None = None):
        super().__init__(
            detail or f"Your organization is {status}.",
            status=status,
        )
