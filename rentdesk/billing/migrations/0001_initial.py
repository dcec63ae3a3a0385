import django.core.validators
import django.db.models.deletion
import django.utils.timezone
import model_utils.fields
from django.db import migrations
from django.db import models

import rentdesk.billing.models


def _timestamps():
    return [
        (
            "created",
            model_utils.fields.AutoCreatedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="created",
            ),
        ),
        (
            "modified",
            model_utils.fields.AutoLastModifiedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="modified",
            ),
        ),
    ]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("users", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                *_timestamps(),
                (
                    "code",
                    models.CharField(
                        help_text="Unique plan key, also used as PK. Immutable.",
                        max_length=50,
                        primary_key=True,
                        serialize=False,
                        validators=[
                            django.core.validators.RegexValidator(
                                "^[a-z0-9_]+$",
                                "Plan code may only contain lowercase letters, "
                                "digits and underscores.",
                            ),
                        ],
                    ),
                ),
                (
                    "name",
                    models.CharField(
                        help_text="Display name for the plan.",
                        max_length=100,
                    ),
                ),
                ("description", models.TextField(blank=True)),
                (
                    "billing_model",
                    models.CharField(
                        choices=[("fixed", "Fixed"), ("dynamic", "Dynamic")],
                        default="fixed",
                        max_length=10,
                    ),
                ),
                (
                    "base_cost_cents",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Monthly base price in cents.",
                    ),
                ),
                (
                    "seat_price_cents",
                    models.PositiveIntegerField(
                        default=0,
                        help_text=(
                            "Monthly price per seat in cents. "
                            "Only billed on dynamic plans."
                        ),
                    ),
                ),
                (
                    "max_seats",
                    models.IntegerField(
                        default=1,
                        help_text="Maximum active members. -1 = unlimited.",
                        validators=[django.core.validators.MinValueValidator(-1)],
                    ),
                ),
                (
                    "max_catalog_items",
                    models.IntegerField(
                        default=0,
                        help_text="Maximum catalog items. -1 = unlimited.",
                        validators=[django.core.validators.MinValueValidator(-1)],
                    ),
                ),
                (
                    "features",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Feature bullet points shown on the pricing page.",
                    ),
                ),
                ("display_order", models.PositiveIntegerField(default=0)),
                (
                    "stripe_base_price_id",
                    models.CharField(blank=True, max_length=255),
                ),
                (
                    "stripe_seat_price_id",
                    models.CharField(blank=True, max_length=255),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("inactive", "Inactive"),
                            ("deprecated", "Deprecated"),
                        ],
                        default="active",
                        max_length=20,
                    ),
                ),
            ],
            options={
                "ordering": ["display_order", "code"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(max_seats__gte=-1),
                        name="plan_max_seats_gte_unlimited",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(max_catalog_items__gte=-1),
                        name="plan_max_catalog_items_gte_unlimited",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("stripe_base_price_id", ""), _negated=True),
                        fields=("stripe_base_price_id",),
                        name="unique_plan_stripe_base_price",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("stripe_seat_price_id", ""), _negated=True),
                        fields=("stripe_seat_price_id",),
                        name="unique_plan_stripe_seat_price",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                *_timestamps(),
                (
                    "stripe_customer_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Customer ID (cus_xxx).",
                        max_length=255,
                    ),
                ),
                (
                    "stripe_subscription_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Subscription ID (sub_xxx).",
                        max_length=255,
                    ),
                ),
                (
                    "current_period_start",
                    models.DateTimeField(blank=True, null=True),
                ),
                (
                    "current_period_end",
                    models.DateTimeField(
                        blank=True,
                        help_text=(
                            "End of the paid period. Checked lazily by the "
                            "status gate."
                        ),
                        null=True,
                    ),
                ),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("seat_count", models.PositiveIntegerField(default=1)),
                ("catalog_item_count", models.PositiveIntegerField(default=0)),
                (
                    "org",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscription",
                        to="users.organization",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        default=rentdesk.billing.models.default_plan_code,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(
                        fields=["stripe_customer_id"],
                        name="billing_sub_customer_idx",
                    ),
                    models.Index(
                        fields=["stripe_subscription_id"],
                        name="billing_sub_stripe_sub_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(seat_count__gte=1),
                        name="subscription_seat_count_gte_1",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingEvent",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                *_timestamps(),
                (
                    "stripe_event_id",
                    models.CharField(
                        blank=True,
                        help_text=(
                            "Stripe event id (evt_xxx). Null for internally "
                            "recorded rows."
                        ),
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("subscription_created", "Subscription created"),
                            ("subscription_updated", "Subscription updated"),
                            ("subscription_cancelled", "Subscription cancelled"),
                            ("payment_succeeded", "Payment succeeded"),
                            ("payment_failed", "Payment failed"),
                            ("invoice_paid", "Invoice paid"),
                            ("invoice_payment_failed", "Invoice payment failed"),
                            ("seat_added", "Seat added"),
                            ("seat_removed", "Seat removed"),
                            ("plan_upgraded", "Plan upgraded"),
                            ("plan_downgraded", "Plan downgraded"),
                            ("webhook_received", "Webhook received"),
                        ],
                        max_length=40,
                    ),
                ),
                (
                    "provider_event_type",
                    models.CharField(
                        blank=True,
                        help_text="Raw Stripe event type, e.g. invoice.payment_failed.",
                        max_length=100,
                    ),
                ),
                (
                    "stripe_customer_id",
                    models.CharField(blank=True, max_length=255),
                ),
                (
                    "stripe_subscription_id",
                    models.CharField(blank=True, max_length=255),
                ),
                (
                    "stripe_invoice_id",
                    models.CharField(blank=True, max_length=255),
                ),
                ("amount_cents", models.IntegerField(blank=True, null=True)),
                ("currency", models.CharField(blank=True, max_length=3)),
                ("previous_plan", models.CharField(blank=True, max_length=50)),
                ("new_plan", models.CharField(blank=True, max_length=50)),
                ("seat_change", models.IntegerField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("processed", models.BooleanField(default=False)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error", models.TextField(blank=True)),
                (
                    "org",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="billing_events",
                        to="users.organization",
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
                "indexes": [
                    models.Index(
                        fields=["org", "created"],
                        name="billing_event_org_idx",
                    ),
                    models.Index(
                        fields=["processed", "event_type"],
                        name="billing_event_processed_idx",
                    ),
                ],
            },
        ),
    ]
