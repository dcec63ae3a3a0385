"""
URL configuration for the billing API.

Routes (mounted under /api/v1/billing/):
- webhook/   - Stripe webhook receiver (signature authenticated)
- checkout/  - Start Stripe Checkout
- portal/    - Stripe Customer Portal session
- seats/     - Change the paid seat quantity
- payments/  - One-time charge on the Stripe customer
- cancel/    - Cancel the subscription
- history/   - Billing event history
- usage/     - Plan usage for seats and catalog items
- status/    - Organization billing status
- stats/     - Platform-wide billing statistics (staff)
"""

from django.urls import path

from rentdesk.billing.api.views import BillingHistoryView
from rentdesk.billing.api.views import BillingStatsView
from rentdesk.billing.api.views import CancelSubscriptionView
from rentdesk.billing.api.views import CheckoutSessionView
from rentdesk.billing.api.views import CustomerPortalView
from rentdesk.billing.api.views import OrganizationStatusView
from rentdesk.billing.api.views import PaymentIntentView
from rentdesk.billing.api.views import PlanUsageView
from rentdesk.billing.api.views import SeatQuantityView
from rentdesk.billing.api.views import StripeWebhookView

app_name = "billing"

urlpatterns = [
    path("webhook/", StripeWebhookView.as_view(), name="webhook"),
    path("checkout/", CheckoutSessionView.as_view(), name="checkout"),
    path("portal/", CustomerPortalView.as_view(), name="portal"),
    path("seats/", SeatQuantityView.as_view(), name="seats"),
    path("payments/", PaymentIntentView.as_view(), name="payments"),
    path("cancel/", CancelSubscriptionView.as_view(), name="cancel"),
    path("history/", BillingHistoryView.as_view(), name="history"),
    path("usage/", PlanUsageView.as_view(), name="usage"),
    path("status/", OrganizationStatusView.as_view(), name="status"),
    path("stats/", BillingStatsView.as_view(), name="stats"),
]
