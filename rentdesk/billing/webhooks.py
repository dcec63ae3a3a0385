"""
Stripe webhook reconciliation.

Stripe delivers events at least once, possibly out of order and possibly
late. The reconciler makes processing idempotent by keying every delivery
on the Stripe event id:

1. ``verify()`` checks the Stripe-Signature header against the raw body
   before anything is parsed. Unverified payloads never reach the audit log.
2. ``process()`` skips events whose delivery row is already processed.
3. The handler for the event type runs in a transaction.
4. The delivery row is upserted as processed on success, or with the error
   text on failure, and the error is re-raised so Stripe retries.

Key events handled:
- checkout.session.completed: apply the purchased plan and seat count
- customer.subscription.created / updated: sync period and cancel flag
- customer.subscription.deleted: downgrade to the free plan
- invoice.paid: record payment, lift a suspension
- invoice.payment_failed: record failure, suspend

To test locally:
    stripe listen --forward-to localhost:8000/api/v1/billing/webhook/
"""

from __future__ import annotations

import json
import logging
from datetime import UTC
from datetime import datetime

import stripe
from django.conf import settings
from django.db import transaction

from rentdesk.billing import events
from rentdesk.billing.constants import CHECKOUT_SESSION_COMPLETED
from rentdesk.billing.constants import INVOICE_PAID
from rentdesk.billing.constants import INVOICE_PAYMENT_FAILED
from rentdesk.billing.constants import METADATA_ORG_ID
from rentdesk.billing.constants import METADATA_PLAN
from rentdesk.billing.constants import METADATA_SEAT_COUNT
from rentdesk.billing.constants import SUBSCRIPTION_CREATED
from rentdesk.billing.constants import SUBSCRIPTION_DELETED
from rentdesk.billing.constants import SUBSCRIPTION_UPDATED
from rentdesk.billing.constants import BillingEventType
from rentdesk.billing.events import stripe_id
from rentdesk.billing.exceptions import BillingConfigurationError
from rentdesk.billing.exceptions import OrganizationNotFoundError
from rentdesk.billing.exceptions import PlanNotFoundError
from rentdesk.billing.exceptions import WebhookSignatureError
from rentdesk.billing.models import Plan
from rentdesk.billing.models import Subscription
from rentdesk.billing.subscriptions import get_or_create_subscription
from rentdesk.billing.subscriptions import reactivate_organization
from rentdesk.billing.subscriptions import suspend_organization
from rentdesk.users.models import Organization

logger = logging.getLogger(__name__)


def _from_timestamp(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


class WebhookReconciler:
    """
    Apply Stripe events to organizations and subscriptions.

    Usage:
        reconciler = WebhookReconciler()
        event = reconciler.verify(request.body, request.headers["Stripe-Signature"])
        reconciler.process(event)
    """

    handlers = {
        CHECKOUT_SESSION_COMPLETED: "handle_checkout_completed",
        SUBSCRIPTION_CREATED: "handle_subscription_updated",
        SUBSCRIPTION_UPDATED: "handle_subscription_updated",
        SUBSCRIPTION_DELETED: "handle_subscription_deleted",
        INVOICE_PAID: "handle_invoice_paid",
        INVOICE_PAYMENT_FAILED: "handle_invoice_payment_failed",
    }

    def verify(self, payload: bytes, signature: str | None) -> dict:
        """
        Verify the signature over the raw body, then parse it.

        Raises:
            WebhookSignatureError: missing or invalid signature, stale
                timestamp or unparseable body.
            BillingConfigurationError: no webhook secret configured.
        """
        secret = settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            raise BillingConfigurationError("Stripe webhook secret is not configured.")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header.")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                secret,
                settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("Rejected webhook with invalid signature: %s", exc)
            raise WebhookSignatureError("Invalid webhook signature.") from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookSignatureError("Webhook payload is not valid JSON.") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookSignatureError("Webhook payload is not a Stripe event.")
        return event

    def process(self, event: dict) -> bool:
        """
        Apply an event once.

        Returns False when the event was already processed and nothing was
        done, True otherwise.
        """
        event_id = event["id"]
        event_type = event["type"]

        if events.is_processed(event_id):
            logger.info("Webhook event %s already processed", event_id)
            return False

        handler_name = self.handlers.get(event_type)
        obj = (event.get("data") or {}).get("object") or {}

        try:
            with transaction.atomic():
                # Concurrent deliveries of this event wait here for the first
                if events.claim_delivery(event).processed:
                    logger.info("Webhook event %s already processed", event_id)
                    return False
                org = None
                if handler_name:
                    org = getattr(self, handler_name)(obj)
                else:
                    logger.info("Unhandled webhook event type %s", event_type)
                events.record_delivery(event, processed=True, org=org)
        except Exception as exc:
            logger.exception(
                "Error processing webhook event %s (%s)",
                event_id,
                event_type,
            )
            events.record_delivery(event, processed=False, error=str(exc) or repr(exc))
            raise

        logger.info("Processed webhook event %s (%s)", event_id, event_type)
        return True

    # Lookups
    # -------------------------------------------------------------------------

    def _org_from_metadata(self, obj: dict) -> Organization | None:
        org_id = (obj.get("metadata") or {}).get(METADATA_ORG_ID)
        if not org_id or not str(org_id).isdigit():
            return None
        return Organization.objects.filter(pk=int(org_id)).first()

    def _org_from_customer(self, obj: dict) -> Organization | None:
        customer_id = stripe_id(obj.get("customer"))
        if not customer_id:
            return None
        subscription = (
            Subscription.objects.select_related("org")
            .filter(stripe_customer_id=customer_id)
            .first()
        )
        return subscription.org if subscription else None

    def _require_org(self, obj: dict) -> Organization:
        org = self._org_from_metadata(obj) or self._org_from_customer(obj)
        if org is None:
            raise OrganizationNotFoundError(
                f"No organization for Stripe object {obj.get('id', '?')}.",
            )
        return org

    # Handlers
    # -------------------------------------------------------------------------

    def handle_checkout_completed(self, session: dict) -> Organization | None:
        """
        Apply a completed checkout.

        The seat count from the session metadata is authoritative and set
        directly, bypassing the quota re-check.
        """
        metadata = session.get("metadata") or {}
        org = self._org_from_metadata(session)
        plan_code = metadata.get(METADATA_PLAN)
        if org is None or not plan_code:
            logger.error(
                "Checkout session %s is missing org or plan metadata",
                session.get("id"),
            )
            return None
        if not Plan.objects.filter(code=plan_code).exists():
            raise PlanNotFoundError(f"Checkout references unknown plan '{plan_code}'.")

        try:
            seat_count = max(int(metadata.get(METADATA_SEAT_COUNT) or 1), 1)
        except (TypeError, ValueError):
            logger.error(
                "Checkout session %s has an invalid seat count %r",
                session.get("id"),
                metadata.get(METADATA_SEAT_COUNT),
            )
            return None
        customer_id = stripe_id(session.get("customer"))
        stripe_subscription_id = stripe_id(session.get("subscription"))

        subscription = get_or_create_subscription(org)
        previous_plan = subscription.plan_id
        subscription.plan_id = plan_code
        subscription.stripe_subscription_id = stripe_subscription_id
        subscription.seat_count = seat_count
        update_fields = ["plan", "stripe_subscription_id", "seat_count", "modified"]
        if customer_id and not subscription.stripe_customer_id:
            subscription.stripe_customer_id = customer_id
            update_fields.append("stripe_customer_id")
        subscription.save(update_fields=update_fields)

        events.record_event(
            BillingEventType.SUBSCRIPTION_CREATED,
            org=org,
            stripe_customer_id=customer_id,
            stripe_subscription_id=stripe_subscription_id,
            previous_plan=previous_plan,
            new_plan=plan_code,
            seat_change=seat_count,
            metadata={"checkout_session": session.get("id", "")},
        )
        logger.info(
            "Checkout completed for org=%s: plan %s -> %s, %d seats",
            org.pk,
            previous_plan,
            plan_code,
            seat_count,
        )
        return org

    def handle_subscription_updated(self, stripe_sub: dict) -> Organization:
        org = self._require_org(stripe_sub)
        subscription = get_or_create_subscription(org)

        items = (stripe_sub.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        period_start = _from_timestamp(
            first_item.get("current_period_start")
            or stripe_sub.get("current_period_start"),
        )
        period_end = _from_timestamp(
            first_item.get("current_period_end")
            or stripe_sub.get("current_period_end"),
        )

        subscription.stripe_subscription_id = stripe_sub.get("id", "")
        subscription.cancel_at_period_end = bool(stripe_sub.get("cancel_at_period_end"))
        update_fields = ["stripe_subscription_id", "cancel_at_period_end", "modified"]
        if period_start:
            subscription.current_period_start = period_start
            update_fields.append("current_period_start")
        if period_end:
            subscription.current_period_end = period_end
            update_fields.append("current_period_end")
        subscription.save(update_fields=update_fields)

        if stripe_sub.get("status") == "active":
            reactivate_organization(org)

        logger.info(
            "Subscription %s updated for org=%s, status=%s",
            stripe_sub.get("id"),
            org.pk,
            stripe_sub.get("status"),
        )
        return org

    def handle_subscription_deleted(self, stripe_sub: dict) -> Organization:
        """
        Downgrade to the free plan and forget the ended subscription and its
        billing period. Status is left alone: suspension comes from failed
        invoices, not from the subscription ending.
        """
        org = self._require_org(stripe_sub)
        subscription = get_or_create_subscription(org)
        previous_plan = subscription.plan_id
        free_plan = settings.BILLING_FREE_PLAN_CODE

        # The lapsed period would trip the status gate on the free plan
        Subscription.objects.filter(pk=subscription.pk).update(
            plan_id=free_plan,
            cancel_at_period_end=False,
            stripe_subscription_id="",
            current_period_start=None,
            current_period_end=None,
        )
        events.record_event(
            BillingEventType.SUBSCRIPTION_CANCELLED,
            org=org,
            stripe_customer_id=stripe_id(stripe_sub.get("customer")),
            stripe_subscription_id=stripe_sub.get("id", ""),
            previous_plan=previous_plan,
            new_plan=free_plan,
        )
        logger.info(
            "Subscription %s deleted, org=%s downgraded to %s",
            stripe_sub.get("id"),
            org.pk,
            free_plan,
        )
        return org

    def handle_invoice_paid(self, invoice: dict) -> Organization:
        org = self._org_from_customer(invoice)
        if org is None:
            raise OrganizationNotFoundError(
                "Organization not found for Stripe customer.",
            )

        events.record_event(
            BillingEventType.PAYMENT_SUCCEEDED,
            org=org,
            stripe_customer_id=stripe_id(invoice.get("customer")),
            stripe_subscription_id=stripe_id(invoice.get("subscription")),
            stripe_invoice_id=invoice.get("id", ""),
            amount_cents=invoice.get("amount_paid"),
            currency=invoice.get("currency") or "",
        )
        reactivate_organization(org)

        logger.info(
            "Invoice %s paid for org=%s, amount=%s",
            invoice.get("id"),
            org.pk,
            invoice.get("amount_paid"),
        )
        return org

    def handle_invoice_payment_failed(self, invoice: dict) -> Organization:
        org = self._org_from_customer(invoice)
        if org is None:
            raise OrganizationNotFoundError(
                "Organization not found for Stripe customer.",
            )

        events.record_event(
            BillingEventType.PAYMENT_FAILED,
            org=org,
            stripe_customer_id=stripe_id(invoice.get("customer")),
            stripe_subscription_id=stripe_id(invoice.get("subscription")),
            stripe_invoice_id=invoice.get("id", ""),
            amount_cents=invoice.get("amount_due"),
            currency=invoice.get("currency") or "",
        )
        suspend_organization(org, reason=f"invoice {invoice.get('id')} payment failed")

        logger.warning(
            "Invoice %s payment failed, org=%s suspended",
            invoice.get("id"),
            org.pk,
        )
        return org
