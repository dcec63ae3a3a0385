"""
Management command to seed billing plans and provision Stripe prices.

Creates or updates the default plans (Free, Starter, Professional,
Enterprise). With --provision-stripe it also creates the missing Stripe
base and per-seat prices for every paid plan, which production needs
because lazy provisioning is disabled there.

Usage:
    python manage.py seed_plans                      # Create missing plans
    python manage.py seed_plans --force              # Update existing plans
    python manage.py seed_plans --provision-stripe   # Also create Stripe prices
"""

from django.conf import settings
from django.core.management.base import BaseCommand

from rentdesk.billing.constants import DEFAULT_PLANS
from rentdesk.billing.constants import UNLIMITED
from rentdesk.billing.exceptions import BillingError
from rentdesk.billing.models import Plan
from rentdesk.billing.plans import plan_limits_cache
from rentdesk.billing.services import BillingService


class Command(BaseCommand):
    help = "Seed billing plans and optionally provision Stripe prices"

    def add_arguments(self, parser):
        parser.add_argument(
            "--force",
            action="store_true",
            help="Update existing plans with the default configuration",
        )
        parser.add_argument(
            "--provision-stripe",
            action="store_true",
            help="Create missing Stripe prices for paid plans",
        )

    def handle(self, *args, **options):
        self._seed_plans(force_update=options["force"])
        plan_limits_cache.invalidate()

        if options["provision_stripe"]:
            self._provision_stripe_prices()

        self._show_summary()

    def _seed_plans(self, force_update: bool):
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write("Step 1: Seeding Plans")
        self.stdout.write("=" * 60)

        for plan_code, config in DEFAULT_PLANS.items():
            plan, created = Plan.objects.get_or_create(
                code=plan_code,
                defaults=config,
            )

            if created:
                self.stdout.write(self.style.SUCCESS(f"  Created: {plan.name}"))
            elif force_update:
                # Stripe price ids are preserved
                for field, value in config.items():
                    setattr(plan, field, value)
                plan.save()
                self.stdout.write(self.style.SUCCESS(f"  Updated: {plan.name}"))
            else:
                self.stdout.write(
                    f"  Exists: {plan.name} (use --force to update)",
                )

    def _provision_stripe_prices(self):
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write("Step 2: Provisioning Stripe Prices")
        self.stdout.write("=" * 60)

        service = BillingService()
        plans = Plan.objects.exclude(code=settings.BILLING_FREE_PLAN_CODE).order_by(
            "display_order",
        )
        for plan in plans:
            if plan.stripe_base_price_id and plan.stripe_seat_price_id:
                self.stdout.write(f"  {plan.name}: Already provisioned")
                continue
            try:
                refs = service.get_or_create_price_refs(plan, allow_create=True)
            except BillingError as exc:
                self.stdout.write(self.style.ERROR(f"  {plan.name}: {exc.detail}"))
                continue
            self.stdout.write(
                self.style.SUCCESS(
                    f"  {plan.name}: base {refs['base']}, seat {refs['seat']}",
                ),
            )

    def _show_summary(self):
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write("Summary")
        self.stdout.write("=" * 60)

        for plan in Plan.objects.all().order_by("display_order"):
            seats = plan.max_seats
            items = plan.max_catalog_items
            if seats == UNLIMITED:
                seats = "unlimited"
            if items == UNLIMITED:
                items = "unlimited"
            price = f"${plan.base_cost_cents / 100:.0f}/mo"
            stripe = "yes" if plan.stripe_base_price_id else "no"
            self.stdout.write(
                f"  {plan.name} [{plan.status}]: {seats} seats, {items} items, "
                f"{price}, Stripe: {stripe}",
            )

        self.stdout.write(self.style.SUCCESS("\nDone!"))
