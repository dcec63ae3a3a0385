"""
Tests for BillingService. Stripe is mocked at the API resource level.
"""

from unittest import mock

import pytest
import stripe
from django.test import TestCase

from rentdesk.billing.constants import PlanCode
from rentdesk.billing.constants import BillingEventType
from rentdesk.billing.exceptions import BillingConfigurationError
from rentdesk.billing.exceptions import BillingProviderError
from rentdesk.billing.exceptions import BillingRequestError
from rentdesk.billing.exceptions import PlanValidationError
from rentdesk.billing.models import BillingEvent
from rentdesk.billing.models import Plan
from rentdesk.billing.models import Subscription
from rentdesk.billing.services import BillingService
from rentdesk.users.constants import OrganizationStatus
from rentdesk.users.models import Organization
from rentdesk.users.tests.factories import OrganizationFactory
from rentdesk.users.tests.factories import create_owner


class StripeMocksMixin:
    def setUp(self):
        super().setUp()
        self.customer_create = self._patch(stripe.Customer, "create")
        self.customer_create.return_value = mock.Mock(id="cus_new")
        self.product_create = self._patch(stripe.Product, "create")
        self.product_create.side_effect = lambda **kwargs: mock.Mock(
            id=f"prod_{kwargs['idempotency_key']}",
        )
        self.price_create = self._patch(stripe.Price, "create")
        self.price_create.side_effect = lambda **kwargs: mock.Mock(
            id=f"price_{kwargs['unit_amount']}",
        )
        self.session_create = self._patch(stripe.checkout.Session, "create")
        self.session_create.return_value = mock.Mock(
            id="cs_test",
            url="https://checkout.stripe.com/c/pay/cs_test",
        )

    def _patch(self, target, attribute):
        patcher = mock.patch.object(target, attribute)
        self.addCleanup(patcher.stop)
        return patcher.start()


class PriceProvisioningTests(StripeMocksMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.service = BillingService()
        self.plan = Plan.objects.get(code=PlanCode.STARTER)

    def test_missing_refs_created_once_and_persisted(self):
        refs = self.service.get_or_create_price_refs(self.plan)

        self.assertEqual(refs, {"base": "price_2900", "seat": "price_500"})
        self.plan.refresh_from_db()
        self.assertEqual(self.plan.stripe_base_price_id, "price_2900")
        self.assertEqual(self.plan.stripe_seat_price_id, "price_500")

        again = self.service.get_or_create_price_refs(
            Plan.objects.get(code=PlanCode.STARTER),
        )

        self.assertEqual(again, refs)
        self.assertEqual(self.price_create.call_count, 2)

    def test_only_missing_ref_is_created(self):
        Plan.objects.filter(code=PlanCode.STARTER).update(
            stripe_base_price_id="price_existing",
        )

        refs = self.service.get_or_create_price_refs(self.plan)

        self.assertEqual(refs["base"], "price_existing")
        self.assertEqual(self.price_create.call_count, 1)
        _, kwargs = self.price_create.call_args
        self.assertEqual(kwargs["unit_amount"], 500)
        self.assertEqual(kwargs["currency"], "usd")
        self.assertEqual(kwargs["recurring"], {"interval": "month"})

    def test_idempotency_keys_are_deterministic(self):
        self.service.get_or_create_price_refs(self.plan)

        keys = [c.kwargs["idempotency_key"] for c in self.price_create.call_args_list]
        self.assertEqual(
            keys,
            [
                "rentdesk-plan-starter-base-2900-price",
                "rentdesk-plan-starter-seat-500-price",
            ],
        )

    def test_refs_visible_through_cache(self):
        from rentdesk.billing.plans import plan_limits_cache

        plan_limits_cache.get_all()

        self.service.get_or_create_price_refs(self.plan)

        limits = plan_limits_cache.get_limits(PlanCode.STARTER)
        self.assertEqual(limits.stripe_seat_price_id, "price_500")

    def test_fails_closed_when_lazy_provisioning_disabled(self):
        with (
            self.settings(BILLING_LAZY_PRICE_PROVISIONING=False),
            pytest.raises(BillingConfigurationError),
        ):
            self.service.get_or_create_price_refs(self.plan)

        self.price_create.assert_not_called()

    def test_explicit_allow_create_overrides_setting(self):
        with self.settings(BILLING_LAZY_PRICE_PROVISIONING=False):
            refs = self.service.get_or_create_price_refs(self.plan, allow_create=True)

        self.assertEqual(refs["seat"], "price_500")

    def test_stripe_error_is_wrapped(self):
        self.price_create.side_effect = stripe.StripeError("boom")

        with pytest.raises(BillingProviderError):
            self.service.get_or_create_price_refs(self.plan)

        self.plan.refresh_from_db()
        self.assertEqual(self.plan.stripe_base_price_id, "")

    def test_missing_api_key_fails_closed(self):
        with (
            self.settings(STRIPE_SECRET_KEY=""),
            pytest.raises(BillingConfigurationError),
        ):
            self.service.get_or_create_price_refs(self.plan)


class CheckoutSessionTests(StripeMocksMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.owner = create_owner(email="owner@example.com")
        self.org = self.owner.current_org
        self.service = BillingService()

    def _checkout(self, plan_code=PlanCode.STARTER, seat_count=3):
        return self.service.create_checkout_session(
            org=self.org,
            plan_code=plan_code,
            seat_count=seat_count,
            success_url="https://app.example.com/billing/success/",
            cancel_url="https://app.example.com/billing/",
        )

    def test_checkout_session_carries_org_plan_and_seats(self):
        url = self._checkout()

        self.assertEqual(url, "https://checkout.stripe.com/c/pay/cs_test")
        _, kwargs = self.session_create.call_args
        self.assertEqual(kwargs["customer"], "cus_new")
        self.assertEqual(kwargs["mode"], "subscription")
        self.assertEqual(
            kwargs["line_items"],
            [
                {"price": "price_2900", "quantity": 1},
                {"price": "price_500", "quantity": 3},
            ],
        )
        self.assertEqual(
            kwargs["metadata"],
            {"org_id": str(self.org.pk), "plan": "starter", "seat_count": "3"},
        )
        self.assertEqual(kwargs["client_reference_id"], str(self.org.pk))

    def test_customer_created_once(self):
        self._checkout()
        self._checkout()

        self.customer_create.assert_called_once()
        _, kwargs = self.customer_create.call_args
        self.assertEqual(kwargs["metadata"], {"org_id": str(self.org.pk)})
        subscription = Subscription.objects.get(org=self.org)
        self.assertEqual(subscription.stripe_customer_id, "cus_new")

    def test_billing_email_falls_back_to_owner(self):
        Organization.objects.filter(pk=self.org.pk).update(email="")
        self.org.refresh_from_db()

        self._checkout()

        _, kwargs = self.customer_create.call_args
        self.assertEqual(kwargs["email"], "owner@example.com")

    def test_free_plan_rejected(self):
        with pytest.raises(BillingRequestError):
            self._checkout(plan_code=PlanCode.FREE)

        self.session_create.assert_not_called()

    def test_unknown_plan_rejected(self):
        with pytest.raises(BillingRequestError):
            self._checkout(plan_code="platinum")

    def test_inactive_plan_rejected(self):
        Plan.objects.filter(code=PlanCode.STARTER).update(status="inactive")

        with pytest.raises(BillingRequestError):
            self._checkout()

    def test_too_many_seats_rejected(self):
        with pytest.raises(PlanValidationError):
            self._checkout(seat_count=6)

        self.session_create.assert_not_called()

    def test_stripe_failure_wrapped(self):
        self.session_create.side_effect = stripe.StripeError("card network down")

        with pytest.raises(BillingProviderError):
            self._checkout()


class PortalSessionTests(TestCase):
    def test_requires_existing_customer(self):
        org = OrganizationFactory()

        with pytest.raises(BillingRequestError):
            BillingService().create_portal_session(org, "https://app.example.com/")

    def test_returns_portal_url(self):
        org = OrganizationFactory()
        Subscription.objects.filter(org=org).update(stripe_customer_id="cus_test")

        with mock.patch.object(stripe.billing_portal.Session, "create") as create:
            create.return_value = mock.Mock(url="https://billing.stripe.com/p/test")
            url = BillingService().create_portal_session(
                org,
                "https://app.example.com/billing/",
            )

        self.assertEqual(url, "https://billing.stripe.com/p/test")
        create.assert_called_once_with(
            customer="cus_test",
            return_url="https://app.example.com/billing/",
        )


class PaymentIntentTests(TestCase):
    def setUp(self):
        self.org = OrganizationFactory()
        Subscription.objects.filter(org=self.org).update(
            stripe_customer_id="cus_test",
        )

    def test_requires_existing_customer(self):
        org = OrganizationFactory()

        with pytest.raises(BillingRequestError):
            BillingService().create_payment_intent(org, 12500)

    def test_rejects_non_positive_amount(self):
        with pytest.raises(BillingRequestError):
            BillingService().create_payment_intent(self.org, 0)

    def test_charges_org_customer(self):
        with mock.patch.object(stripe.PaymentIntent, "create") as create:
            create.return_value = mock.Mock(id="pi_test", client_secret="pi_secret")
            result = BillingService().create_payment_intent(
                self.org,
                12500,
                metadata={"description": "Damage invoice"},
            )

        self.assertEqual(
            result,
            {"client_secret": "pi_secret", "payment_intent_id": "pi_test"},
        )
        create.assert_called_once_with(
            amount=12500,
            currency="usd",
            customer="cus_test",
            metadata={"description": "Damage invoice", "org_id": str(self.org.pk)},
        )

    def test_stripe_failure_wrapped(self):
        with (
            mock.patch.object(
                stripe.PaymentIntent,
                "create",
                side_effect=stripe.StripeError("card declined"),
            ),
            pytest.raises(BillingProviderError),
        ):
            BillingService().create_payment_intent(self.org, 12500)


class PaidSubscriptionTests(TestCase):
    def setUp(self):
        self.org = OrganizationFactory()
        Plan.objects.filter(code=PlanCode.STARTER).update(
            stripe_base_price_id="price_base",
            stripe_seat_price_id="price_seat",
        )
        Subscription.objects.filter(org=self.org).update(
            plan_id=PlanCode.STARTER,
            stripe_customer_id="cus_test",
            stripe_subscription_id="sub_test",
            seat_count=2,
        )
        self.service = BillingService()

    def _stripe_subscription(self):
        return {
            "id": "sub_test",
            "items": {
                "data": [
                    {"id": "si_base", "price": {"id": "price_base"}},
                    {"id": "si_seat", "price": {"id": "price_seat"}},
                ],
            },
        }

    def test_update_seat_quantity(self):
        with (
            mock.patch.object(stripe.Subscription, "retrieve") as retrieve,
            mock.patch.object(stripe.SubscriptionItem, "modify") as modify,
        ):
            retrieve.return_value = self._stripe_subscription()
            subscription = self.service.update_seat_quantity(self.org, 4)

        modify.assert_called_once_with("si_seat", quantity=4)
        self.assertEqual(subscription.seat_count, 4)
        event = BillingEvent.objects.get(event_type=BillingEventType.SEAT_ADDED)
        self.assertEqual(event.seat_change, 2)

    def test_reducing_seats_records_removal(self):
        with (
            mock.patch.object(stripe.Subscription, "retrieve") as retrieve,
            mock.patch.object(stripe.SubscriptionItem, "modify"),
        ):
            retrieve.return_value = self._stripe_subscription()
            self.service.update_seat_quantity(self.org, 1)

        event = BillingEvent.objects.get(event_type=BillingEventType.SEAT_REMOVED)
        self.assertEqual(event.seat_change, -1)

    def test_seat_quantity_above_plan_rejected(self):
        with pytest.raises(PlanValidationError):
            self.service.update_seat_quantity(self.org, 6)

    def test_seat_quantity_requires_paid_subscription(self):
        Subscription.objects.filter(org=self.org).update(stripe_subscription_id="")

        with pytest.raises(BillingRequestError):
            self.service.update_seat_quantity(self.org, 3)

    def test_cancel_at_period_end(self):
        with mock.patch.object(stripe.Subscription, "modify") as modify:
            subscription = self.service.cancel_subscription(self.org)

        modify.assert_called_once_with("sub_test", cancel_at_period_end=True)
        self.assertTrue(subscription.cancel_at_period_end)
        self.org.refresh_from_db()
        self.assertEqual(self.org.status, OrganizationStatus.ACTIVE)

    def test_cancel_immediately_cancels_org(self):
        with mock.patch.object(stripe.Subscription, "cancel") as cancel:
            subscription = self.service.cancel_subscription(
                self.org,
                cancel_immediately=True,
            )

        cancel.assert_called_once_with("sub_test")
        self.assertFalse(subscription.cancel_at_period_end)
        self.org.refresh_from_db()
        self.assertEqual(self.org.status, OrganizationStatus.CANCELLED)

    def test_plan_usage(self):
        usage = self.service.get_plan_usage(self.org)

        self.assertEqual(usage["plan"], PlanCode.STARTER)
        self.assertEqual(usage["seats"]["used"], 2)
        self.assertEqual(usage["seats"]["limit"], 5)
        self.assertTrue(usage["seats"]["can_add"])
        self.assertEqual(usage["catalog_items"]["limit"], 100)

    def test_billing_history_newest_first_and_limited(self):
        for change in (1, 2, 3):
            BillingEvent.objects.create(
                event_type=BillingEventType.SEAT_ADDED,
                org=self.org,
                seat_change=change,
            )

        history = list(self.service.get_billing_history(self.org, limit=2))

        self.assertEqual([event.seat_change for event in history], [3, 2])
