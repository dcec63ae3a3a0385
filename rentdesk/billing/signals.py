from __future__ import annotations

from django.db.models.signals import post_save
from django.dispatch import receiver

from rentdesk.billing.subscriptions import get_or_create_subscription
from rentdesk.users.models import Organization


@receiver(post_save, sender=Organization)
def create_subscription_for_new_org(sender, instance, created, **kwargs):
    """New organizations start on the free plan."""
    if kwargs.get("raw") or not created:
        return
    get_or_create_subscription(instance)
