"""
Ensure the public API routes resolve to the billing and plan views.
"""

from django.test import SimpleTestCase
from django.urls import Resolver404
from django.urls import resolve
from django.urls import reverse


class ApiRoutingTests(SimpleTestCase):
    def test_billing_routes_are_namespaced(self):
        self.assertEqual(reverse("api:billing:webhook"), "/api/v1/billing/webhook/")
        match = resolve("/api/v1/billing/checkout/")
        self.assertEqual(match.namespace, "api:billing")
        self.assertEqual(match.url_name, "checkout")

    def test_plan_routes_use_plan_code(self):
        self.assertEqual(
            reverse("api:plan-detail", args=["starter"]),
            "/api/v1/plans/starter/",
        )
        with self.assertRaises(Resolver404):
            resolve("/api/v1/plans/Not A Code/")

    def test_schema_and_docs_are_exposed(self):
        self.assertEqual(resolve("/api/schema/").url_name, "api-schema")
        self.assertEqual(resolve("/api/docs/").url_name, "api-docs")
