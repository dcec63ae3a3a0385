"""
Billing constants.

Plan codes for the default catalog, plan lifecycle states and the audit
event taxonomy used by BillingEvent.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _

# Sentinel for max_seats / max_catalog_items meaning "no ceiling".
UNLIMITED = -1

PLAN_CODE_PATTERN = r"^[a-z0-9_]+$"


class PlanCode(models.TextChoices):
    """
    Codes of the plans seeded by the data migration.

    Plans are rows, not an enum: operators can add more through the catalog
    API, so Plan.code is not restricted to these values.
    """

    FREE = "free", _("Free")
    STARTER = "starter", _("Starter")
    PROFESSIONAL = "professional", _("Professional")
    ENTERPRISE = "enterprise", _("Enterprise")


class BillingModel(models.TextChoices):
    """
    FIXED plans charge a flat base price. DYNAMIC plans add a per-seat price
    on top of the base price.
    """

    FIXED = "fixed", _("Fixed")
    DYNAMIC = "dynamic", _("Dynamic")


class PlanStatus(models.TextChoices):
    ACTIVE = "active", _("Active")
    INACTIVE = "inactive", _("Inactive")
    DEPRECATED = "deprecated", _("Deprecated")


class BillingEventType(models.TextChoices):
    SUBSCRIPTION_CREATED = "subscription_created", _("Subscription created")
    SUBSCRIPTION_UPDATED = "subscription_updated", _("Subscription updated")
    SUBSCRIPTION_CANCELLED = "subscription_cancelled", _("Subscription cancelled")
    PAYMENT_SUCCEEDED = "payment_succeeded", _("Payment succeeded")
    PAYMENT_FAILED = "payment_failed", _("Payment failed")
    INVOICE_PAID = "invoice_paid", _("Invoice paid")
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed", _("Invoice payment failed")
    SEAT_ADDED = "seat_added", _("Seat added")
    SEAT_REMOVED = "seat_removed", _("Seat removed")
    PLAN_UPGRADED = "plan_upgraded", _("Plan upgraded")
    PLAN_DOWNGRADED = "plan_downgraded", _("Plan downgraded")
    WEBHOOK_RECEIVED = "webhook_received", _("Webhook received")


class QuotaResource(models.TextChoices):
    SEATS = "seats", _("Seats")
    CATALOG_ITEMS = "catalog_items", _("Catalog items")


# Stripe event types handled by the webhook reconciler.
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

# Audit type recorded on the delivery row of each provider event.
PROVIDER_EVENT_TYPE_MAP = {
    CHECKOUT_SESSION_COMPLETED: BillingEventType.SUBSCRIPTION_CREATED,
    SUBSCRIPTION_CREATED: BillingEventType.SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED: BillingEventType.SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED: BillingEventType.SUBSCRIPTION_CANCELLED,
    INVOICE_PAID: BillingEventType.INVOICE_PAID,
    INVOICE_PAYMENT_FAILED: BillingEventType.INVOICE_PAYMENT_FAILED,
}

# Checkout session metadata keys echoed back by Stripe.
METADATA_ORG_ID = "org_id"
METADATA_PLAN = "plan"
METADATA_SEAT_COUNT = "seat_count"

# Default catalog, seeded by migration and by `manage.py seed_plans`.
DEFAULT_PLANS = {
    PlanCode.FREE: {
        "name": "Free",
        "description": "For individuals trying RentDesk with a small catalog.",
        "billing_model": BillingModel.FIXED,
        "base_cost_cents": 0,
        "seat_price_cents": 0,
        "max_seats": 1,
        "max_catalog_items": 10,
        "features": ["Basic catalog management", "Single user"],
        "display_order": 0,
    },
    PlanCode.STARTER: {
        "name": "Starter",
        "description": "For small rental teams getting organized.",
        "billing_model": BillingModel.DYNAMIC,
        "base_cost_cents": 2900,  # $29
        "seat_price_cents": 500,  # $5 per seat
        "max_seats": 5,
        "max_catalog_items": 100,
        "features": [
            "Up to 5 team members",
            "100 catalog items",
            "Email support",
        ],
        "display_order": 1,
    },
    PlanCode.PROFESSIONAL: {
        "name": "Professional",
        "description": "For growing rental businesses with larger inventories.",
        "billing_model": BillingModel.DYNAMIC,
        "base_cost_cents": 9900,  # $99
        "seat_price_cents": 400,  # $4 per seat
        "max_seats": 20,
        "max_catalog_items": 500,
        "features": [
            "Up to 20 team members",
            "500 catalog items",
            "Priority support",
            "Analytics dashboard",
        ],
        "display_order": 2,
    },
    PlanCode.ENTERPRISE: {
        "name": "Enterprise",
        "description": "Unlimited scale with dedicated support.",
        "billing_model": BillingModel.DYNAMIC,
        "base_cost_cents": 29900,  # $299
        "seat_price_cents": 300,  # $3 per seat
        "max_seats": UNLIMITED,
        "max_catalog_items": UNLIMITED,
        "features": [
            "Unlimited team members",
            "Unlimited catalog items",
            "Dedicated support",
            "Custom integrations",
            "SLA",
        ],
        "display_order": 3,
    },
}
