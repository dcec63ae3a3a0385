"""
Billing API endpoints.

Organization endpoints act on the caller's current organization; the
webhook endpoint is called by Stripe and authenticated by its signature.
Domain errors raised by the services are rendered by
``rentdesk.core.api.exceptions.billing_exception_handler``.
"""

from __future__ import annotations

from http import HTTPStatus

from drf_spectacular.utils import OpenApiParameter
from drf_spectacular.utils import extend_schema
from drf_spectacular.utils import inline_serializer
from rest_framework import serializers
from rest_framework import viewsets
from rest_framework.permissions import SAFE_METHODS
from rest_framework.permissions import AllowAny
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from rentdesk.billing.api.permissions import ActiveOrganizationRequired
from rentdesk.billing.api.serializers import BillingEventSerializer
from rentdesk.billing.api.serializers import CancelSubscriptionSerializer
from rentdesk.billing.api.serializers import CheckoutSerializer
from rentdesk.billing.api.serializers import HistoryQuerySerializer
from rentdesk.billing.api.serializers import PaymentIntentSerializer
from rentdesk.billing.api.serializers import PlanLimitsSerializer
from rentdesk.billing.api.serializers import PlanSerializer
from rentdesk.billing.api.serializers import PortalSerializer
from rentdesk.billing.api.serializers import SeatQuantitySerializer
from rentdesk.billing.api.serializers import StatsQuerySerializer
from rentdesk.billing.events import get_billing_stats
from rentdesk.billing.exceptions import BillingError
from rentdesk.billing.plans import PlanCatalog
from rentdesk.billing.plans import plan_limits_cache
from rentdesk.billing.services import BillingService
from rentdesk.billing.subscriptions import check_organization_active
from rentdesk.billing.webhooks import WebhookReconciler
from rentdesk.core.api.org_scoped import CurrentOrgMixin
from rentdesk.core.api.org_scoped import OrgMembershipPermission
from rentdesk.core.api.org_scoped import OrgOwnerPermission


class StripeWebhookView(APIView):
    """
    Receive Stripe webhook events.

    The body is read raw: the signature covers the exact bytes Stripe sent.
    A 500 tells Stripe to redeliver; the failure is already recorded on the
    event's audit row.
    """

    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = []

    @extend_schema(exclude=True)
    def post(self, request):
        reconciler = WebhookReconciler()
        event = reconciler.verify(
            request.body,
            request.headers.get("Stripe-Signature"),
        )
        try:
            reconciler.process(event)
        except BillingError as exc:
            return Response(
                {"received": False, "detail": exc.detail, "code": exc.code},
                status=HTTPStatus.INTERNAL_SERVER_ERROR,
            )
        except Exception:  # noqa: BLE001
            return Response(
                {"received": False, "detail": "Webhook processing failed."},
                status=HTTPStatus.INTERNAL_SERVER_ERROR,
            )
        return Response({"received": True})


class CheckoutSessionView(CurrentOrgMixin, APIView):
    permission_classes = [OrgOwnerPermission]

    @extend_schema(
        summary="Start a Stripe Checkout session",
        request=CheckoutSerializer,
        responses={
            200: inline_serializer(
                name="CheckoutResponse",
                fields={"checkout_url": serializers.URLField()},
            ),
        },
        tags=["Billing"],
    )
    def post(self, request):
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        url = BillingService().create_checkout_session(
            org=self.get_org(),
            plan_code=data["plan"],
            seat_count=data["seat_count"],
            success_url=data["success_url"],
            cancel_url=data["cancel_url"],
        )
        return Response({"checkout_url": url})


class CustomerPortalView(CurrentOrgMixin, APIView):
    permission_classes = [OrgOwnerPermission]

    @extend_schema(
        summary="Open the Stripe Customer Portal",
        request=PortalSerializer,
        responses={
            200: inline_serializer(
                name="PortalResponse",
                fields={"portal_url": serializers.URLField()},
            ),
        },
        tags=["Billing"],
    )
    def post(self, request):
        serializer = PortalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        url = BillingService().create_portal_session(
            org=self.get_org(),
            return_url=serializer.validated_data["return_url"],
        )
        return Response({"portal_url": url})


class PaymentIntentView(CurrentOrgMixin, APIView):
    permission_classes = [OrgOwnerPermission, ActiveOrganizationRequired]

    @extend_schema(
        summary="Create a one-time charge",
        request=PaymentIntentSerializer,
        responses={
            201: inline_serializer(
                name="PaymentIntentResponse",
                fields={
                    "client_secret": serializers.CharField(),
                    "payment_intent_id": serializers.CharField(),
                },
            ),
        },
        tags=["Billing"],
    )
    def post(self, request):
        serializer = PaymentIntentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        metadata = {"description": data["description"]} if data["description"] else {}
        intent = BillingService().create_payment_intent(
            self.get_org(),
            data["amount_cents"],
            currency=data["currency"],
            metadata=metadata,
        )
        return Response(intent, status=HTTPStatus.CREATED)


class SeatQuantityView(CurrentOrgMixin, APIView):
    permission_classes = [OrgOwnerPermission, ActiveOrganizationRequired]

    @extend_schema(
        summary="Change the number of paid seats",
        request=SeatQuantitySerializer,
        tags=["Billing"],
    )
    def patch(self, request):
        serializer = SeatQuantitySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = BillingService().update_seat_quantity(
            self.get_org(),
            serializer.validated_data["seat_count"],
        )
        return Response(
            {"plan": subscription.plan_id, "seat_count": subscription.seat_count},
        )


class CancelSubscriptionView(CurrentOrgMixin, APIView):
    permission_classes = [OrgOwnerPermission]

    @extend_schema(
        summary="Cancel the subscription",
        description=(
            "Cancels at the end of the billing period unless "
            "cancel_immediately is true, which also cancels the organization."
        ),
        request=CancelSubscriptionSerializer,
        tags=["Billing"],
    )
    def post(self, request):
        serializer = CancelSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        org = self.get_org()
        subscription = BillingService().cancel_subscription(
            org,
            cancel_immediately=serializer.validated_data["cancel_immediately"],
        )
        return Response(
            {
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "status": org.status,
            },
        )


class BillingHistoryView(CurrentOrgMixin, APIView):
    permission_classes = [OrgOwnerPermission]

    @extend_schema(
        summary="List billing events",
        parameters=[OpenApiParameter("limit", int, required=False)],
        responses=BillingEventSerializer(many=True),
        tags=["Billing"],
    )
    def get(self, request):
        query = HistoryQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        history = BillingService().get_billing_history(
            self.get_org(),
            limit=query.validated_data["limit"],
        )
        return Response(BillingEventSerializer(history, many=True).data)


class BillingStatsView(APIView):
    """Platform-wide billing aggregates for staff."""

    permission_classes = [IsAdminUser]

    @extend_schema(
        summary="Platform billing statistics",
        parameters=[OpenApiParameter("months", int, required=False)],
        tags=["Billing"],
    )
    def get(self, request):
        query = StatsQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        return Response(get_billing_stats(months=query.validated_data["months"]))


class PlanUsageView(CurrentOrgMixin, APIView):
    permission_classes = [OrgMembershipPermission]

    @extend_schema(summary="Current plan usage", tags=["Billing"])
    def get(self, request):
        return Response(BillingService().get_plan_usage(self.get_org()))


class OrganizationStatusView(CurrentOrgMixin, APIView):
    permission_classes = [OrgMembershipPermission]

    @extend_schema(summary="Organization billing status", tags=["Billing"])
    def get(self, request):
        result = check_organization_active(self.get_org())
        subscription = result.subscription
        return Response(
            {
                "status": result.status,
                "is_active": result.is_active,
                "plan": subscription.plan_id if subscription else None,
                "current_period_end": (
                    subscription.current_period_end if subscription else None
                ),
                "cancel_at_period_end": (
                    subscription.cancel_at_period_end if subscription else False
                ),
            },
        )


class PlanViewSet(viewsets.ViewSet):
    """
    Plan catalog.

    Anyone can read the active plans; reads are served from the plan limits
    cache. Creating, editing and retiring plans is reserved to staff.
    ``DELETE`` retires a plan instead of deleting it.
    """

    lookup_field = "code"
    lookup_value_regex = "[a-z0-9_]+"

    def get_permissions(self):
        if self.request.method in SAFE_METHODS and not self._wants_inactive():
            return [AllowAny()]
        return [IsAdminUser()]

    def _wants_inactive(self) -> bool:
        return self.request.query_params.get("include_inactive") in {"1", "true"}

    @extend_schema(responses=PlanLimitsSerializer(many=True), tags=["Plans"])
    def list(self, request):
        if self._wants_inactive():
            plans = PlanCatalog().find_all(include_inactive=True)
            return Response(PlanSerializer(plans, many=True).data)
        limits = plan_limits_cache.get_all().values()
        return Response(PlanLimitsSerializer(limits, many=True).data)

    @extend_schema(responses=PlanLimitsSerializer, tags=["Plans"])
    def retrieve(self, request, code=None):
        return Response(PlanLimitsSerializer(plan_limits_cache.get_limits(code)).data)

    @extend_schema(request=PlanSerializer, responses=PlanSerializer, tags=["Plans"])
    def create(self, request):
        serializer = PlanSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        plan = PlanCatalog().create(**serializer.validated_data)
        return Response(PlanSerializer(plan).data, status=HTTPStatus.CREATED)

    @extend_schema(request=PlanSerializer, responses=PlanSerializer, tags=["Plans"])
    def partial_update(self, request, code=None):
        catalog = PlanCatalog()
        serializer = PlanSerializer(catalog.get(code), data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        plan = catalog.update(code, **serializer.validated_data)
        return Response(PlanSerializer(plan).data)

    @extend_schema(responses={204: None}, tags=["Plans"])
    def destroy(self, request, code=None):
        PlanCatalog().deactivate(code)
        return Response(status=HTTPStatus.NO_CONTENT)
