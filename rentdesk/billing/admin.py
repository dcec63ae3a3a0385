"""
Django admin configuration for billing models.

Provides admin interfaces for:
- Plan: edit pricing, quotas and Stripe price IDs
- Subscription: inspect organization subscriptions and counters
- BillingEvent: audit trail, filterable by failed webhook deliveries
"""

from django.contrib import admin

from rentdesk.billing.models import BillingEvent
from rentdesk.billing.models import Plan
from rentdesk.billing.models import Subscription
from rentdesk.billing.plans import plan_limits_cache


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    """Admin for pricing plans. Saves invalidate the plan limits cache."""

    list_display = [
        "code",
        "name",
        "status",
        "billing_model",
        "base_cost_cents",
        "seat_price_cents",
        "max_seats",
        "max_catalog_items",
        "display_order",
    ]
    list_filter = ["status", "billing_model"]
    ordering = ["display_order"]
    search_fields = ["code", "name"]

    fieldsets = [
        (None, {"fields": ["code", "name", "description", "status"]}),
        ("Limits", {"fields": ["max_seats", "max_catalog_items"]}),
        (
            "Pricing & Stripe",
            {
                "fields": [
                    "billing_model",
                    "base_cost_cents",
                    "seat_price_cents",
                    "stripe_base_price_id",
                    "stripe_seat_price_id",
                ],
                "description": (
                    "Leave Stripe price IDs blank to have them created on first "
                    "checkout. Change prices by creating a new plan."
                ),
            },
        ),
        ("Display", {"fields": ["features", "display_order"]}),
    ]

    def get_readonly_fields(self, request, obj=None):
        # Plan code is the primary key and must not change after creation
        return ["code"] if obj else []

    def has_delete_permission(self, request, obj=None):
        return False

    def save_model(self, request, obj, form, change):
        super().save_model(request, obj, form, change)
        plan_limits_cache.invalidate()


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Admin for organization subscriptions."""

    list_display = [
        "org",
        "plan",
        "seat_count",
        "catalog_item_count",
        "current_period_end",
        "cancel_at_period_end",
        "stripe_subscription_id",
    ]
    list_filter = ["plan", "cancel_at_period_end"]
    search_fields = ["org__name", "stripe_customer_id", "stripe_subscription_id"]
    raw_id_fields = ["org"]
    readonly_fields = ["created", "modified"]

    fieldsets = [
        (None, {"fields": ["org", "plan"]}),
        ("Usage", {"fields": ["seat_count", "catalog_item_count"]}),
        (
            "Stripe",
            {"fields": ["stripe_customer_id", "stripe_subscription_id"]},
        ),
        (
            "Billing Period",
            {
                "fields": [
                    "current_period_start",
                    "current_period_end",
                    "cancel_at_period_end",
                ],
            },
        ),
        ("Timestamps", {"fields": ["created", "modified"]}),
    ]


@admin.register(BillingEvent)
class BillingEventAdmin(admin.ModelAdmin):
    """Read-only audit trail."""

    list_display = [
        "created",
        "event_type",
        "provider_event_type",
        "org",
        "stripe_event_id",
        "processed",
        "amount_cents",
    ]
    list_filter = ["processed", "event_type", "created"]
    search_fields = [
        "org__name",
        "stripe_event_id",
        "stripe_customer_id",
        "stripe_invoice_id",
        "error",
    ]
    raw_id_fields = ["org"]
    date_hierarchy = "created"

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
