"""
Billing service for Stripe operations.

This service provides a clean interface for:
- Creating Stripe Checkout sessions (subscription signup)
- Opening the Stripe Customer Portal (self-service management)
- Creating PaymentIntents for one-time charges
- Getting or creating Stripe customers and plan prices
- Changing the seat quantity or cancelling a subscription

Every call fails closed: a missing key or price reference raises
BillingConfigurationError, and Stripe errors are wrapped in
BillingProviderError.

We use Stripe Checkout (not custom payment forms) for PCI compliance.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import stripe
from django.conf import settings
from django.db import transaction

from rentdesk.billing import events
from rentdesk.billing.constants import METADATA_ORG_ID
from rentdesk.billing.constants import METADATA_PLAN
from rentdesk.billing.constants import METADATA_SEAT_COUNT
from rentdesk.billing.constants import BillingEventType
from rentdesk.billing.exceptions import BillingConfigurationError
from rentdesk.billing.exceptions import BillingProviderError
from rentdesk.billing.exceptions import BillingRequestError
from rentdesk.billing.exceptions import PlanNotFoundError
from rentdesk.billing.metering import CatalogItemMeter
from rentdesk.billing.metering import SeatMeter
from rentdesk.billing.models import Plan
from rentdesk.billing.models import Subscription
from rentdesk.billing.plans import PlanCatalog
from rentdesk.billing.subscriptions import cancel_organization
from rentdesk.billing.subscriptions import get_or_create_subscription

if TYPE_CHECKING:
    from rentdesk.users.models import Organization

logger = logging.getLogger(__name__)

PRICE_KIND_BASE = "base"
PRICE_KIND_SEAT = "seat"


class BillingService:
    """
    Service for Stripe billing operations.

    Usage:
        service = BillingService()
        checkout_url = service.create_checkout_session(
            org=org,
            plan_code="starter",
            seat_count=3,
            success_url="https://app.example.com/billing/success/",
            cancel_url="https://app.example.com/billing/",
        )
    """

    def __init__(self, catalog: PlanCatalog | None = None):
        self.catalog = catalog or PlanCatalog()

    def _configure_stripe(self) -> None:
        if not settings.STRIPE_SECRET_KEY:
            raise BillingConfigurationError("Stripe is not configured.")
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES

    # Customers
    # -------------------------------------------------------------------------

    def get_or_create_stripe_customer(self, org: Organization) -> str:
        """
        Get existing Stripe customer or create a new one.

        Returns the Stripe customer ID (cus_xxx).
        """
        subscription = get_or_create_subscription(org)
        if subscription.stripe_customer_id:
            return subscription.stripe_customer_id

        self._configure_stripe()
        try:
            customer = stripe.Customer.create(
                email=self._get_billing_email(org),
                name=org.name,
                metadata={METADATA_ORG_ID: str(org.pk)},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe customer creation failed for org=%s: %s", org.pk, exc)
            raise BillingProviderError("Could not create the Stripe customer.") from exc

        Subscription.objects.filter(pk=subscription.pk).update(
            stripe_customer_id=customer.id,
        )
        logger.info("Created Stripe customer %s for org=%s", customer.id, org.pk)
        return customer.id

    def _get_billing_email(self, org: Organization) -> str:
        if org.email:
            return org.email
        owner = org.get_owner()
        return owner.email if owner else ""

    # Prices
    # -------------------------------------------------------------------------

    def get_or_create_price_refs(
        self,
        plan: Plan,
        *,
        allow_create: bool | None = None,
    ) -> dict[str, str]:
        """
        Return the plan's Stripe base and seat price ids, creating any that
        are missing.

        The plan row is locked while the refs are checked and created, and
        every Stripe create call carries a deterministic idempotency key, so
        concurrent first checkouts end up with the same Stripe objects.

        Creation is allowed when BILLING_LAZY_PRICE_PROVISIONING is on, or
        when ``allow_create`` is passed explicitly (seed_plans does this).
        """
        if plan.stripe_base_price_id and plan.stripe_seat_price_id:
            return {
                PRICE_KIND_BASE: plan.stripe_base_price_id,
                PRICE_KIND_SEAT: plan.stripe_seat_price_id,
            }

        if allow_create is None:
            allow_create = settings.BILLING_LAZY_PRICE_PROVISIONING
        if not allow_create:
            raise BillingConfigurationError(
                f"Plan '{plan.code}' has no Stripe prices. "
                "Run `manage.py seed_plans --provision-stripe`.",
            )

        self._configure_stripe()
        with transaction.atomic():
            locked = Plan.objects.select_for_update().get(pk=plan.pk)
            refs = {
                PRICE_KIND_BASE: locked.stripe_base_price_id,
                PRICE_KIND_SEAT: locked.stripe_seat_price_id,
            }
            if not refs[PRICE_KIND_BASE]:
                refs[PRICE_KIND_BASE] = self._create_price(
                    locked,
                    PRICE_KIND_BASE,
                    locked.base_cost_cents,
                )
            if not refs[PRICE_KIND_SEAT]:
                refs[PRICE_KIND_SEAT] = self._create_price(
                    locked,
                    PRICE_KIND_SEAT,
                    locked.seat_price_cents,
                )
            self.catalog.set_price_refs(
                locked.code,
                base=refs[PRICE_KIND_BASE],
                seat=refs[PRICE_KIND_SEAT],
            )

        plan.stripe_base_price_id = refs[PRICE_KIND_BASE]
        plan.stripe_seat_price_id = refs[PRICE_KIND_SEAT]
        return refs

    def _create_price(self, plan: Plan, kind: str, unit_amount: int) -> str:
        label = "Base" if kind == PRICE_KIND_BASE else "Per Seat"
        idempotency_prefix = f"rentdesk-plan-{plan.code}-{kind}-{unit_amount}"
        metadata = {METADATA_PLAN: plan.code, "type": kind}

        logger.info("Creating Stripe %s price for plan %s", kind, plan.code)
        try:
            product = stripe.Product.create(
                name=f"{plan.name} - {label}",
                metadata=metadata,
                idempotency_key=f"{idempotency_prefix}-product",
            )
            price = stripe.Price.create(
                product=product.id,
                unit_amount=unit_amount,
                currency=settings.BILLING_CURRENCY,
                recurring={"interval": "month"},
                metadata=metadata,
                idempotency_key=f"{idempotency_prefix}-price",
            )
        except stripe.StripeError as exc:
            logger.error(
                "Stripe %s price creation failed for plan %s: %s",
                kind,
                plan.code,
                exc,
            )
            raise BillingProviderError(
                f"Could not create the Stripe {kind} price for plan '{plan.code}'.",
            ) from exc

        logger.info("Stripe %s price for plan %s: %s", kind, plan.code, price.id)
        return price.id

    # Sessions
    # -------------------------------------------------------------------------

    def _get_purchasable_plan(self, plan_code: str) -> Plan:
        if plan_code == settings.BILLING_FREE_PLAN_CODE:
            raise BillingRequestError("The free plan does not require checkout.")
        try:
            plan = self.catalog.get(plan_code)
        except PlanNotFoundError as exc:
            raise BillingRequestError(f"Unknown plan '{plan_code}'.") from exc
        if not plan.is_active:
            raise BillingRequestError(f"Plan '{plan_code}' is not available.")
        return plan

    def create_checkout_session(
        self,
        org: Organization,
        plan_code: str,
        seat_count: int,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """
        Create a Stripe Checkout session for subscription signup.

        Returns the checkout session URL to redirect the user to.

        The session carries the org id, plan code and seat count as metadata;
        the ``checkout.session.completed`` webhook reads them back to apply
        the purchase.
        """
        plan = self._get_purchasable_plan(plan_code)
        self.catalog.validate_seat_count(plan.code, seat_count)

        price_refs = self.get_or_create_price_refs(plan)
        customer_id = self.get_or_create_stripe_customer(org)

        self._configure_stripe()
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="subscription",
                line_items=[
                    {"price": price_refs[PRICE_KIND_BASE], "quantity": 1},
                    {"price": price_refs[PRICE_KIND_SEAT], "quantity": seat_count},
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=str(org.pk),
                metadata={
                    METADATA_ORG_ID: str(org.pk),
                    METADATA_PLAN: plan.code,
                    METADATA_SEAT_COUNT: str(seat_count),
                },
                subscription_data={
                    "metadata": {
                        METADATA_ORG_ID: str(org.pk),
                        METADATA_PLAN: plan.code,
                    },
                },
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout failed for org=%s: %s", org.pk, exc)
            raise BillingProviderError("Could not start checkout.") from exc

        logger.info(
            "Created checkout session %s for org=%s, plan %s, %d seats",
            session.id,
            org.pk,
            plan.code,
            seat_count,
        )
        return session.url

    def create_portal_session(self, org: Organization, return_url: str) -> str:
        """
        Get a Stripe Customer Portal URL for self-service management.

        Only organizations that went through checkout have a customer.
        """
        subscription = get_or_create_subscription(org)
        if not subscription.stripe_customer_id:
            raise BillingRequestError("No billing account found for this organization.")

        self._configure_stripe()
        try:
            session = stripe.billing_portal.Session.create(
                customer=subscription.stripe_customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe portal session failed for org=%s: %s", org.pk, exc)
            raise BillingProviderError("Could not open the billing portal.") from exc

        logger.info("Created portal session for org=%s", org.pk)
        return session.url

    def create_payment_intent(
        self,
        org: Organization,
        amount_cents: int,
        *,
        currency: str = "",
        metadata: dict | None = None,
    ) -> dict:
        """
        Create a PaymentIntent for a one-time charge, such as a damage
        invoice, on the organization's Stripe customer.

        Returns the client secret the frontend confirms the payment with.
        """
        if amount_cents < 1:
            raise BillingRequestError("Amount must be at least 1 cent.")
        subscription = get_or_create_subscription(org)
        if not subscription.stripe_customer_id:
            raise BillingRequestError("No billing account found for this organization.")

        self._configure_stripe()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency or settings.BILLING_CURRENCY,
                customer=subscription.stripe_customer_id,
                metadata={**(metadata or {}), METADATA_ORG_ID: str(org.pk)},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe payment intent failed for org=%s: %s", org.pk, exc)
            raise BillingProviderError("Could not create the payment.") from exc

        logger.info(
            "Created payment intent %s for org=%s, %d cents",
            intent.id,
            org.pk,
            amount_cents,
        )
        return {
            "client_secret": intent.client_secret or "",
            "payment_intent_id": intent.id,
        }

    # Subscription changes
    # -------------------------------------------------------------------------

    def _get_paid_subscription(self, org: Organization) -> Subscription:
        subscription = get_or_create_subscription(org)
        if not subscription.stripe_subscription_id:
            raise BillingRequestError(
                "Organization does not have an active subscription.",
            )
        return subscription

    def update_seat_quantity(self, org: Organization, seat_count: int) -> Subscription:
        """
        Change the number of paid seats on the Stripe subscription and store
        the new seat count.
        """
        subscription = self._get_paid_subscription(org)
        plan = subscription.plan
        self.catalog.validate_seat_count(plan.code, seat_count)
        price_refs = self.get_or_create_price_refs(plan)

        self._configure_stripe()
        try:
            stripe_subscription = stripe.Subscription.retrieve(
                subscription.stripe_subscription_id,
            )
            seat_item = next(
                (
                    item
                    for item in stripe_subscription["items"]["data"]
                    if item["price"]["id"] == price_refs[PRICE_KIND_SEAT]
                ),
                None,
            )
            if seat_item is None:
                raise BillingProviderError(
                    "Seat item not found on the Stripe subscription.",
                )
            stripe.SubscriptionItem.modify(seat_item["id"], quantity=seat_count)
        except stripe.StripeError as exc:
            logger.error("Stripe seat update failed for org=%s: %s", org.pk, exc)
            raise BillingProviderError("Could not update the seat quantity.") from exc

        previous = subscription.seat_count
        Subscription.objects.filter(pk=subscription.pk).update(seat_count=seat_count)
        subscription.refresh_from_db()

        if seat_count != previous:
            events.record_event(
                (
                    BillingEventType.SEAT_ADDED
                    if seat_count > previous
                    else BillingEventType.SEAT_REMOVED
                ),
                org=org,
                stripe_customer_id=subscription.stripe_customer_id,
                stripe_subscription_id=subscription.stripe_subscription_id,
                seat_change=seat_count - previous,
            )
        logger.info(
            "Seat quantity for org=%s changed %d -> %d",
            org.pk,
            previous,
            seat_count,
        )
        return subscription

    def cancel_subscription(
        self,
        org: Organization,
        *,
        cancel_immediately: bool = False,
    ) -> Subscription:
        """
        Cancel at period end (the default) or immediately. Immediate
        cancellation also moves the organization to cancelled.
        """
        subscription = self._get_paid_subscription(org)

        self._configure_stripe()
        try:
            if cancel_immediately:
                stripe.Subscription.cancel(subscription.stripe_subscription_id)
            else:
                stripe.Subscription.modify(
                    subscription.stripe_subscription_id,
                    cancel_at_period_end=True,
                )
        except stripe.StripeError as exc:
            logger.error("Stripe cancellation failed for org=%s: %s", org.pk, exc)
            raise BillingProviderError("Could not cancel the subscription.") from exc

        Subscription.objects.filter(pk=subscription.pk).update(
            cancel_at_period_end=not cancel_immediately,
        )
        if cancel_immediately:
            cancel_organization(org)

        logger.info(
            "Subscription cancellation requested for org=%s, immediately=%s",
            org.pk,
            cancel_immediately,
        )
        subscription.refresh_from_db()
        return subscription

    # Reporting
    # -------------------------------------------------------------------------

    def get_billing_history(
        self,
        org: Organization,
        limit: int = events.DEFAULT_HISTORY_LIMIT,
    ):
        return events.get_billing_history(org, limit=limit)

    def get_plan_usage(self, org: Organization) -> dict:
        subscription = get_or_create_subscription(org)
        seats = SeatMeter()
        catalog_items = CatalogItemMeter()
        seat_usage = seats.get_usage(org)
        item_usage = catalog_items.get_usage(org)
        return {
            "plan": subscription.plan_id,
            "seats": {**seat_usage, "can_add": seats.can_add(org)},
            "catalog_items": {**item_usage, "can_add": catalog_items.can_add(org)},
        }
