"""
Tests for the billing and plan API endpoints and the status middleware.
"""

from datetime import timedelta
from unittest.mock import MagicMock
from unittest.mock import patch

from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from rentdesk.billing.constants import PlanCode
from rentdesk.billing.constants import BillingEventType
from rentdesk.billing.models import BillingEvent
from rentdesk.billing.models import Plan
from rentdesk.billing.models import Subscription
from rentdesk.users.constants import OrganizationStatus
from rentdesk.users.constants import RoleCode
from rentdesk.users.models import Organization
from rentdesk.users.tests.factories import MembershipFactory
from rentdesk.users.tests.factories import UserFactory
from rentdesk.users.tests.factories import create_owner


class BillingAPITestCase(TestCase):
    def setUp(self):
        self.owner = create_owner()
        self.org = self.owner.current_org
        self.member = UserFactory()
        MembershipFactory(user=self.member, org=self.org, role=RoleCode.MEMBER)
        self.member.current_org = self.org
        self.member.save(update_fields=["current_org"])
        self.client = APIClient()

    def _as(self, user):
        self.client.force_authenticate(user=user)


class CheckoutSessionViewTests(BillingAPITestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("api:billing:checkout")

    payload = {
        "plan": PlanCode.STARTER,
        "seat_count": 2,
        "success_url": "https://app.example.com/billing/success/",
        "cancel_url": "https://app.example.com/billing/",
    }

    @patch("rentdesk.billing.api.views.BillingService.create_checkout_session")
    def test_owner_gets_checkout_url(self, mock_checkout):
        mock_checkout.return_value = "https://checkout.stripe.com/c/pay/cs_test"
        self._as(self.owner)

        response = self.client.post(self.url, self.payload, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {"checkout_url": "https://checkout.stripe.com/c/pay/cs_test"},
        )
        _, kwargs = mock_checkout.call_args
        self.assertEqual(kwargs["org"], self.org)
        self.assertEqual(kwargs["seat_count"], 2)

    def test_member_cannot_start_checkout(self):
        self._as(self.member)

        response = self.client.post(self.url, self.payload, format="json")

        self.assertEqual(response.status_code, 403)

    def test_anonymous_rejected(self):
        response = self.client.post(self.url, self.payload, format="json")

        self.assertIn(response.status_code, (401, 403))

    def test_free_plan_is_bad_request(self):
        self._as(self.owner)

        response = self.client.post(
            self.url,
            {**self.payload, "plan": PlanCode.FREE},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "bad_request")

    def test_too_many_seats_is_validation_error(self):
        self._as(self.owner)

        response = self.client.post(
            self.url,
            {**self.payload, "seat_count": 6},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body["code"], "invalid")
        self.assertIn("seat_count", body["errors"])

    @patch("rentdesk.billing.services.stripe.checkout.Session.create")
    @patch("rentdesk.billing.services.stripe.Price.create")
    @patch("rentdesk.billing.services.stripe.Product.create")
    @patch("rentdesk.billing.services.stripe.Customer.create")
    def test_checkout_end_to_end_with_stripe_mocked(
        self,
        mock_customer,
        mock_product,
        mock_price,
        mock_session,
    ):
        mock_customer.return_value = MagicMock(id="cus_new")
        mock_product.return_value = MagicMock(id="prod_test")
        mock_price.side_effect = [
            MagicMock(id="price_base"),
            MagicMock(id="price_seat"),
        ]
        mock_session.return_value = MagicMock(id="cs_1", url="https://stripe.test/x")
        self._as(self.owner)

        response = self.client.post(self.url, self.payload, format="json")

        self.assertEqual(response.status_code, 200)
        plan = Plan.objects.get(code=PlanCode.STARTER)
        self.assertEqual(plan.stripe_seat_price_id, "price_seat")


class CustomerPortalViewTests(BillingAPITestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("api:billing:portal")


    def test_org_without_customer_is_bad_request(self):
        self._as(self.owner)

        response = self.client.post(
            self.url,
            {"return_url": "https://app.example.com/"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    @patch("rentdesk.billing.services.stripe.billing_portal.Session.create")
    def test_owner_gets_portal_url(self, mock_portal):
        mock_portal.return_value = MagicMock(url="https://billing.stripe.com/p/x")
        Subscription.objects.filter(org=self.org).update(stripe_customer_id="cus_1")
        self._as(self.owner)

        response = self.client.post(
            self.url,
            {"return_url": "https://app.example.com/"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json()["portal_url"],
            "https://billing.stripe.com/p/x",
        )


class SeatQuantityViewTests(BillingAPITestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("api:billing:seats")


    def test_suspended_org_gets_payment_required(self):
        Organization.objects.filter(pk=self.org.pk).update(
            status=OrganizationStatus.SUSPENDED,
        )
        self._as(self.owner)

        response = self.client.patch(self.url, {"seat_count": 3}, format="json")

        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.json()["status"], OrganizationStatus.SUSPENDED)

    def test_free_org_without_subscription_is_bad_request(self):
        self._as(self.owner)

        response = self.client.patch(self.url, {"seat_count": 1}, format="json")

        self.assertEqual(response.status_code, 400)


class CancelSubscriptionViewTests(BillingAPITestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("api:billing:cancel")


    @patch("rentdesk.billing.services.stripe.Subscription.cancel")
    def test_cancel_immediately(self, mock_cancel):
        Subscription.objects.filter(org=self.org).update(
            plan_id=PlanCode.STARTER,
            stripe_subscription_id="sub_1",
        )
        self._as(self.owner)

        response = self.client.post(
            self.url,
            {"cancel_immediately": True},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {"cancel_at_period_end": False, "status": OrganizationStatus.CANCELLED},
        )
        mock_cancel.assert_called_once_with("sub_1")


class ReportingViewTests(BillingAPITestCase):
    def test_history_is_owner_only_and_limited(self):
        for change in (1, 2, 3):
            BillingEvent.objects.create(
                event_type=BillingEventType.SEAT_ADDED,
                org=self.org,
                seat_change=change,
            )
        url = reverse("api:billing:history")

        self._as(self.member)
        self.assertEqual(self.client.get(url).status_code, 403)

        self._as(self.owner)
        response = self.client.get(url, {"limit": 2})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["seat_change"] for row in response.json()], [3, 2])

    def test_history_limit_is_bounded(self):
        self._as(self.owner)

        response = self.client.get(reverse("api:billing:history"), {"limit": 501})

        self.assertEqual(response.status_code, 400)

    def test_member_sees_usage(self):
        self._as(self.member)

        response = self.client.get(reverse("api:billing:usage"))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["plan"], PlanCode.FREE)
        self.assertEqual(body["catalog_items"]["limit"], 10)

    def test_status_reports_lapsed_period(self):
        Subscription.objects.filter(org=self.org).update(
            current_period_end=timezone.now() - timedelta(days=1),
        )
        self._as(self.member)

        response = self.client.get(reverse("api:billing:status"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], OrganizationStatus.SUSPENDED)
        self.assertFalse(response.json()["is_active"])

    def test_user_without_org_is_forbidden(self):
        self._as(UserFactory())

        response = self.client.get(reverse("api:billing:usage"))

        self.assertEqual(response.status_code, 403)


class PaymentIntentViewTests(BillingAPITestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("api:billing:payments")

    @patch("rentdesk.billing.api.views.BillingService.create_payment_intent")
    def test_owner_creates_one_time_charge(self, mock_intent):
        mock_intent.return_value = {
            "client_secret": "pi_secret",
            "payment_intent_id": "pi_test",
        }
        self._as(self.owner)

        response = self.client.post(
            self.url,
            {"amount_cents": 12500, "description": "Damage invoice"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["payment_intent_id"], "pi_test")
        mock_intent.assert_called_once_with(
            self.org,
            12500,
            currency="",
            metadata={"description": "Damage invoice"},
        )

    def test_member_cannot_charge(self):
        self._as(self.member)

        response = self.client.post(self.url, {"amount_cents": 100}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_amount_must_be_positive(self):
        self._as(self.owner)

        response = self.client.post(self.url, {"amount_cents": 0}, format="json")

        self.assertEqual(response.status_code, 400)


class BillingStatsViewTests(BillingAPITestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("api:billing:stats")

    def test_staff_only(self):
        self._as(self.owner)

        self.assertEqual(self.client.get(self.url).status_code, 403)

    def test_staff_sees_payment_aggregates(self):
        BillingEvent.objects.create(
            event_type=BillingEventType.PAYMENT_SUCCEEDED,
            org=self.org,
            amount_cents=2900,
        )
        self._as(UserFactory(is_staff=True))

        response = self.client.get(self.url, {"months": 3})

        self.assertEqual(response.status_code, 200)
        months = response.json()["payments_by_month"]
        self.assertEqual(len(months), 1)
        self.assertEqual(months[0]["amount_cents"], 2900)

    def test_months_is_bounded(self):
        self._as(UserFactory(is_staff=True))

        response = self.client.get(self.url, {"months": 0})

        self.assertEqual(response.status_code, 400)


class PlanViewSetTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.staff = UserFactory(is_staff=True)

    def test_anyone_lists_active_plans_in_display_order(self):
        Plan.objects.filter(code=PlanCode.PROFESSIONAL).update(status="inactive")

        response = self.client.get(reverse("api:plan-list"))

        self.assertEqual(response.status_code, 200)
        codes = [plan["code"] for plan in response.json()]
        self.assertEqual(codes, ["free", "starter", "enterprise"])

    def test_include_inactive_requires_staff(self):
        response = self.client.get(reverse("api:plan-list"), {"include_inactive": 1})
        self.assertIn(response.status_code, (401, 403))

        self.client.force_authenticate(user=self.staff)
        response = self.client.get(reverse("api:plan-list"), {"include_inactive": 1})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 4)

    def test_retrieve_unknown_plan_is_not_found(self):
        response = self.client.get(reverse("api:plan-detail", args=["platinum"]))

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_staff_creates_plan(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.post(
            reverse("api:plan-list"),
            {
                "code": "team_plus",
                "name": "Team Plus",
                "billing_model": "dynamic",
                "base_cost_cents": 4900,
                "seat_price_cents": 450,
                "max_seats": 10,
                "max_catalog_items": 250,
                "features": ["Priority support"],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        listed = self.client.get(reverse("api:plan-detail", args=["team_plus"]))
        self.assertEqual(listed.json()["max_seats"], 10)

    def test_duplicate_code_is_conflict(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.post(
            reverse("api:plan-list"),
            {"code": PlanCode.STARTER, "name": "Starter again"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)

    def test_non_staff_cannot_create(self):
        self.client.force_authenticate(user=UserFactory())

        response = self.client.post(
            reverse("api:plan-list"),
            {"code": "team_plus", "name": "Team Plus"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    def test_update_then_read_sees_new_limits(self):
        self.client.get(reverse("api:plan-detail", args=[PlanCode.STARTER]))
        self.client.force_authenticate(user=self.staff)

        response = self.client.patch(
            reverse("api:plan-detail", args=[PlanCode.STARTER]),
            {"max_seats": 8},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        detail = self.client.get(reverse("api:plan-detail", args=[PlanCode.STARTER]))
        self.assertEqual(detail.json()["max_seats"], 8)

    def test_code_cannot_be_changed(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.patch(
            reverse("api:plan-detail", args=[PlanCode.STARTER]),
            {"code": "starter_two"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_delete_retires_plan(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.delete(
            reverse("api:plan-detail", args=[PlanCode.STARTER]),
        )

        self.assertEqual(response.status_code, 204)
        self.assertTrue(Plan.objects.filter(code=PlanCode.STARTER).exists())
        detail = self.client.get(reverse("api:plan-detail", args=[PlanCode.STARTER]))
        self.assertEqual(detail.status_code, 404)


class SubscriptionStatusMiddlewareTests(BillingAPITestCase):
    def test_inactive_org_blocked_on_unsafe_api_request(self):
        Organization.objects.filter(pk=self.org.pk).update(
            status=OrganizationStatus.SUSPENDED,
        )
        self.client.force_login(self.member)

        response = self.client.post("/api/v1/catalog/", {}, format="json")

        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.json()["code"], "organization_inactive")

    def test_billing_paths_stay_reachable(self):
        Organization.objects.filter(pk=self.org.pk).update(
            status=OrganizationStatus.SUSPENDED,
        )
        self.client.force_login(self.owner)

        response = self.client.post(
            reverse("api:billing:portal"),
            {"return_url": "https://app.example.com/"},
            format="json",
        )

        # Reaches the view, which rejects the org for having no customer
        self.assertEqual(response.status_code, 400)

    def test_reads_are_not_blocked(self):
        Organization.objects.filter(pk=self.org.pk).update(
            status=OrganizationStatus.SUSPENDED,
        )
        self.client.force_login(self.member)

        response = self.client.get(reverse("api:billing:usage"))

        self.assertEqual(response.status_code, 200)
