from django.apps import AppConfig


class BillingConfig(AppConfig):
    """
    Django app configuration for the billing app.

    Handles the plan catalog, quota metering, Stripe checkout and webhook
    reconciliation.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "rentdesk.billing"

    def ready(self):
        """Connect the receiver that gives new organizations a subscription."""
        from rentdesk.billing import signals  # noqa: F401
