from rest_framework import serializers

from rentdesk.billing.constants import PLAN_CODE_PATTERN
from rentdesk.billing.events import DEFAULT_HISTORY_LIMIT
from rentdesk.billing.events import DEFAULT_STATS_MONTHS
from rentdesk.billing.events import MAX_HISTORY_LIMIT
from rentdesk.billing.events import MAX_STATS_MONTHS
from rentdesk.billing.models import BillingEvent
from rentdesk.billing.models import Plan


class CheckoutSerializer(serializers.Serializer):
    plan = serializers.CharField(max_length=50)
    seat_count = serializers.IntegerField(min_value=1, default=1)
    success_url = serializers.URLField()
    cancel_url = serializers.URLField()


class PortalSerializer(serializers.Serializer):
    return_url = serializers.URLField()


class SeatQuantitySerializer(serializers.Serializer):
    seat_count = serializers.IntegerField(min_value=1)


class PaymentIntentSerializer(serializers.Serializer):
    amount_cents = serializers.IntegerField(min_value=1)
    currency = serializers.RegexField(r"^[a-z]{3}$", default="")
    description = serializers.CharField(max_length=200, default="")


class StatsQuerySerializer(serializers.Serializer):
    months = serializers.IntegerField(
        min_value=1,
        max_value=MAX_STATS_MONTHS,
        default=DEFAULT_STATS_MONTHS,
    )


class CancelSubscriptionSerializer(serializers.Serializer):
    cancel_immediately = serializers.BooleanField(default=False)


class HistoryQuerySerializer(serializers.Serializer):
    limit = serializers.IntegerField(
        min_value=1,
        max_value=MAX_HISTORY_LIMIT,
        default=DEFAULT_HISTORY_LIMIT,
    )


class BillingEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = BillingEvent
        fields = [
            "id",
            "event_type",
            "provider_event_type",
            "stripe_invoice_id",
            "amount_cents",
            "currency",
            "previous_plan",
            "new_plan",
            "seat_change",
            "processed",
            "created",
        ]


class PlanLimitsSerializer(serializers.Serializer):
    """Public view of a plan, rendered from the plan limits cache."""

    code = serializers.CharField()
    name = serializers.CharField()
    billing_model = serializers.CharField()
    base_cost_cents = serializers.IntegerField()
    seat_price_cents = serializers.IntegerField()
    max_seats = serializers.IntegerField()
    max_catalog_items = serializers.IntegerField()
    features = serializers.ListField(child=serializers.CharField())


class PlanSerializer(serializers.ModelSerializer):
    """
    Operator view of a plan.

    ``code`` is declared explicitly so duplicate codes reach the catalog
    and come back as a 409 conflict instead of a field error.
    """

    code = serializers.RegexField(PLAN_CODE_PATTERN, max_length=50)
    features = serializers.ListField(
        child=serializers.CharField(max_length=200),
        required=False,
    )

    class Meta:
        model = Plan
        fields = [
            "code",
            "name",
            "description",
            "billing_model",
            "base_cost_cents",
            "seat_price_cents",
            "max_seats",
            "max_catalog_items",
            "features",
            "display_order",
            "stripe_base_price_id",
            "stripe_seat_price_id",
            "status",
            "created",
            "modified",
        ]
        read_only_fields = [
            "stripe_base_price_id",
            "stripe_seat_price_id",
            "created",
            "modified",
        ]
