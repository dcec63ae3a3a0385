"""
Billing event audit log.

Two kinds of rows live in BillingEvent:

- delivery rows, one per Stripe event id, upserted by the webhook
  reconciler. They are the idempotency ledger: a processed delivery row
  means the event must not be dispatched again.
- handler rows, synthesized while applying an event (payment failed,
  subscription created, ...). They have no Stripe event id and are born
  processed.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db.models import Count
from django.db.models import Sum
from django.db.models.functions import TruncMonth
from django.utils import timezone

from rentdesk.billing.constants import PROVIDER_EVENT_TYPE_MAP
from rentdesk.billing.constants import BillingEventType
from rentdesk.billing.models import BillingEvent

if TYPE_CHECKING:
    from rentdesk.users.models import Organization

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500
DEFAULT_STATS_MONTHS = 12
MAX_STATS_MONTHS = 60
RECENT_DAYS = 30


def event_type_for(provider_event_type: str) -> str:
    return PROVIDER_EVENT_TYPE_MAP.get(
        provider_event_type,
        BillingEventType.WEBHOOK_RECEIVED,
    )


def stripe_id(value) -> str:
    # Stripe sends either an id string or an expanded object
    if isinstance(value, dict):
        return value.get("id") or ""
    return value or ""


def record_event(
    event_type: str,
    *,
    org: Organization | None = None,
    **fields,
) -> BillingEvent:
    """Append a processed, handler-synthesized audit row."""
    return BillingEvent.objects.create(
        event_type=event_type,
        org=org,
        processed=True,
        processed_at=timezone.now(),
        **fields,
    )


def is_processed(stripe_event_id: str) -> bool:
    return BillingEvent.objects.filter(
        stripe_event_id=stripe_event_id,
        processed=True,
    ).exists()


def _delivery_fields(event: dict, *, processed: bool, error: str = "") -> dict:
    obj = (event.get("data") or {}).get("object") or {}
    provider_event_type = event.get("type", "")
    is_invoice = obj.get("object") == "invoice"

    return {
        "event_type": event_type_for(provider_event_type),
        "provider_event_type": provider_event_type,
        "stripe_customer_id": stripe_id(obj.get("customer")),
        "stripe_subscription_id": (
            stripe_id(obj.get("subscription"))
            if obj.get("object") != "subscription"
            else obj.get("id", "")
        ),
        "stripe_invoice_id": obj.get("id", "") if is_invoice else "",
        "metadata": {"object": obj.get("object", ""), "object_id": obj.get("id", "")},
        "processed": processed,
        "processed_at": timezone.now() if processed else None,
        "error": error,
    }


def claim_delivery(event: dict) -> BillingEvent:
    """
    Lock the delivery row for a Stripe event, creating it unprocessed when
    it is new. Call inside a transaction: a second delivery of the same
    event blocks here until the first one commits, then sees it processed.
    """
    BillingEvent.objects.get_or_create(
        stripe_event_id=event["id"],
        defaults=_delivery_fields(event, processed=False),
    )
    return BillingEvent.objects.select_for_update().get(stripe_event_id=event["id"])


def record_delivery(
    event: dict,
    *,
    processed: bool,
    error: str = "",
    org: Organization | None = None,
) -> BillingEvent:
    """
    Upsert the delivery row for a Stripe event.

    Called on both the success and the failure path, so a row exists after
    the first delivery attempt whatever its outcome.
    """
    defaults = _delivery_fields(event, processed=processed, error=error)
    if org is not None:
        defaults["org"] = org

    delivery, created = BillingEvent.objects.update_or_create(
        stripe_event_id=event["id"],
        defaults=defaults,
    )
    logger.debug(
        "%s delivery row for %s (%s), processed=%s",
        "Created" if created else "Updated",
        event["id"],
        event.get("type", ""),
        processed,
    )
    return delivery


def get_billing_history(org: Organization, limit: int = DEFAULT_HISTORY_LIMIT):
    """Newest-first audit rows for an organization."""
    limit = max(1, min(limit, MAX_HISTORY_LIMIT))
    return BillingEvent.objects.filter(org=org).order_by("-created", "-pk")[:limit]


def get_billing_stats(*, months: int = DEFAULT_STATS_MONTHS, now=None) -> dict:
    """
    Platform-wide aggregates over the audit log, for staff only.

    Payments are read from handler rows so a Stripe event and the row its
    handler wrote are not counted twice.
    """
    now = now or timezone.now()
    since = now - timedelta(days=31 * max(months, 1))
    recent_since = now - timedelta(days=RECENT_DAYS)
    handler_rows = BillingEvent.objects.filter(stripe_event_id__isnull=True)
    deliveries = BillingEvent.objects.filter(stripe_event_id__isnull=False)

    monthly = (
        handler_rows.filter(
            event_type=BillingEventType.PAYMENT_SUCCEEDED,
            created__gte=since,
        )
        .annotate(month=TruncMonth("created"))
        .values("month")
        .annotate(amount_cents=Sum("amount_cents"), count=Count("pk"))
        .order_by("month")
    )
    recent_counts = (
        handler_rows.filter(created__gte=recent_since)
        .values("event_type")
        .annotate(count=Count("pk"))
    )

    return {
        "payments_by_month": [
            {
                "period": f"{row['month']:%Y-%m}",
                "amount_cents": row["amount_cents"] or 0,
                "count": row["count"],
            }
            for row in monthly
        ],
        "recent_events": {row["event_type"]: row["count"] for row in recent_counts},
        "recent_payment_failures": handler_rows.filter(
            event_type=BillingEventType.PAYMENT_FAILED,
            created__gte=recent_since,
        ).count(),
        "failed_deliveries": deliveries.filter(processed=False).exclude(
            error="",
        ).count(),
        "unprocessed_deliveries": deliveries.filter(processed=False).count(),
    }
