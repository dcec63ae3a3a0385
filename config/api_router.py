"""
Public API router.

Billing endpoints (checkout, portal, seats, history, Stripe webhook) and the
plan catalog live here. Organization-scoped CRUD routers for the rental domain
are mounted by their own apps.
"""

from django.conf import settings
from django.urls import include
from django.urls import path
from rest_framework.routers import DefaultRouter
from rest_framework.routers import SimpleRouter

from rentdesk.billing.api.views import PlanViewSet

router = DefaultRouter() if settings.DEBUG else SimpleRouter()

router.register("plans", PlanViewSet, basename="plan")

app_name = "api"
urlpatterns = [
    path("billing/", include("rentdesk.billing.urls")),
    *router.urls,
]
