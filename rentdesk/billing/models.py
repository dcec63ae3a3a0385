"""
Billing models for RentDesk.

Key design decisions:
- Plan is a catalog table keyed by its code; deactivation flips ``status``
  and never deletes, so subscriptions can keep pointing at retired plans.
- Subscription is 1:1 with Organization and holds the Stripe references,
  the billing period and the seat / catalog-item counters used for quotas.
- BillingEvent is the append-only audit log. Rows carrying a
  ``stripe_event_id`` are webhook deliveries and double as the idempotency
  ledger; rows without one are synthesized by handlers.

Relationship: Organization ──1:1── Subscription ──N:1── Plan
"""

from __future__ import annotations

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.core.validators import RegexValidator
from django.db import models
from model_utils.models import TimeStampedModel

from rentdesk.billing.constants import PLAN_CODE_PATTERN
from rentdesk.billing.constants import UNLIMITED
from rentdesk.billing.constants import BillingEventType
from rentdesk.billing.constants import BillingModel
from rentdesk.billing.constants import PlanStatus


def default_plan_code() -> str:
    return settings.BILLING_FREE_PLAN_CODE


class Plan(TimeStampedModel):
    """
    A tier of service with its price and quotas.

    Prices are stored in cents. The Stripe price ids stay blank until the
    first checkout (or ``seed_plans --provision-stripe``) creates them.

    Do not write to this table directly from application code: go through
    ``PlanCatalog`` so the plan limits cache is invalidated.
    """

    code = models.CharField(
        max_length=50,
        primary_key=True,
        validators=[
            RegexValidator(
                PLAN_CODE_PATTERN,
                "Plan code may only contain lowercase letters, digits and "
                "underscores.",
            ),
        ],
        help_text="Unique plan key, also used as PK. Immutable.",
    )
    name = models.CharField(max_length=100, help_text="Display name for the plan.")
    description = models.TextField(blank=True)
    billing_model = models.CharField(
        max_length=10,
        choices=BillingModel.choices,
        default=BillingModel.FIXED,
    )
    base_cost_cents = models.PositiveIntegerField(
        default=0,
        help_text="Monthly base price in cents.",
    )
    seat_price_cents = models.PositiveIntegerField(
        default=0,
        help_text="Monthly price per seat in cents. Only billed on dynamic plans.",
    )
    max_seats = models.IntegerField(
        default=1,
        validators=[MinValueValidator(UNLIMITED)],
        help_text="Maximum active members. -1 = unlimited.",
    )
    max_catalog_items = models.IntegerField(
        default=0,
        validators=[MinValueValidator(UNLIMITED)],
        help_text="Maximum catalog items. -1 = unlimited.",
    )
    features = models.JSONField(
        default=list,
        blank=True,
        help_text="Feature bullet points shown on the pricing page.",
    )
    display_order = models.PositiveIntegerField(default=0)
    stripe_base_price_id = models.CharField(max_length=255, blank=True)
    stripe_seat_price_id = models.CharField(max_length=255, blank=True)
    status = models.CharField(
        max_length=20,
        choices=PlanStatus.choices,
        default=PlanStatus.ACTIVE,
    )

    class Meta:
        ordering = ["display_order", "code"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(max_seats__gte=UNLIMITED),
                name="plan_max_seats_gte_unlimited",
            ),
            models.CheckConstraint(
                condition=models.Q(max_catalog_items__gte=UNLIMITED),
                name="plan_max_catalog_items_gte_unlimited",
            ),
            models.UniqueConstraint(
                fields=["stripe_base_price_id"],
                condition=~models.Q(stripe_base_price_id=""),
                name="unique_plan_stripe_base_price",
            ),
            models.UniqueConstraint(
                fields=["stripe_seat_price_id"],
                condition=~models.Q(stripe_seat_price_id=""),
                name="unique_plan_stripe_seat_price",
            ),
        ]

    def __str__(self) -> str:
        return self.name

    def clean(self):
        super().clean()
        if not isinstance(self.features, list) or not all(
            isinstance(feature, str) for feature in self.features
        ):
            raise ValidationError({"features": "Features must be a list of strings."})

    @property
    def is_active(self) -> bool:
        return self.status == PlanStatus.ACTIVE

    @property
    def is_dynamic(self) -> bool:
        return self.billing_model == BillingModel.DYNAMIC


class Subscription(TimeStampedModel):
    """
    Billing state of an organization.

    The webhook reconciler is the only writer of plan, Stripe references and
    period fields. The counters are moved by the quota meters with atomic
    ``F()`` updates; never read-modify-write them.
    """

    org = models.OneToOneField(
        "users.Organization",
        on_delete=models.CASCADE,
        related_name="subscription",
    )
    plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,  # Never delete a plan with subscriptions
        related_name="subscriptions",
        default=default_plan_code,
    )
    stripe_customer_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe Customer ID (cus_xxx).",
    )
    stripe_subscription_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe Subscription ID (sub_xxx).",
    )
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(
        null=True,
        blank=True,
        help_text="End of the paid period. Checked lazily by the status gate.",
    )
    cancel_at_period_end = models.BooleanField(default=False)
    seat_count = models.PositiveIntegerField(default=1)
    catalog_item_count = models.PositiveIntegerField(default=0)

    class Meta:
        indexes = [
            models.Index(
                fields=["stripe_customer_id"],
                name="billing_sub_customer_idx",
            ),
            models.Index(
                fields=["stripe_subscription_id"],
                name="billing_sub_stripe_sub_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(seat_count__gte=1),
                name="subscription_seat_count_gte_1",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.org.name} - {self.plan_id}"


class BillingEvent(TimeStampedModel):
    """
    Audit trail of billing activity.

    For webhook deliveries the row is created on first sight of the event id
    and updated to ``processed`` on success. On failure ``error`` is set and
    ``processed`` stays false, so the provider's redelivery is processed
    again.
    """

    stripe_event_id = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
        help_text="Stripe event id (evt_xxx). Null for internally recorded rows.",
    )
    event_type = models.CharField(
        max_length=40,
        choices=BillingEventType.choices,
    )
    provider_event_type = models.CharField(
        max_length=100,
        blank=True,
        help_text="Raw Stripe event type, e.g. invoice.payment_failed.",
    )
    org = models.ForeignKey(
        "users.Organization",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="billing_events",
    )
    stripe_customer_id = models.CharField(max_length=255, blank=True)
    stripe_subscription_id = models.CharField(max_length=255, blank=True)
    stripe_invoice_id = models.CharField(max_length=255, blank=True)
    amount_cents = models.IntegerField(null=True, blank=True)
    currency = models.CharField(max_length=3, blank=True)
    previous_plan = models.CharField(max_length=50, blank=True)
    new_plan = models.CharField(max_length=50, blank=True)
    seat_change = models.IntegerField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    processed = models.BooleanField(default=False)
    processed_at = models.DateTimeField(null=True, blank=True)
    error = models.TextField(blank=True)

    class Meta:
        ordering = ["-created"]
        indexes = [
            models.Index(fields=["org", "created"], name="billing_event_org_idx"),
            models.Index(
                fields=["processed", "event_type"],
                name="billing_event_processed_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.event_type} ({self.stripe_event_id or 'internal'})"
