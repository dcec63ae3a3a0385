from django.db import models
from django.utils.translation import gettext_lazy as _


class RoleCode(models.TextChoices):
    """
    Role of a user within an organization.
    """

    # Owner of an organization. All ADMIN permissions plus billing and
    # subscription management.
    OWNER = "OWNER", _("Owner")

    # Admin of an organization. Manages members and the rental catalog.
    ADMIN = "ADMIN", _("Admin")

    MEMBER = "MEMBER", _("Member")


class OrganizationStatus(models.TextChoices):
    """
    Entitlement status of an organization.

        ACTIVE → SUSPENDED (payment failed, or billing period lapsed)
        SUSPENDED → ACTIVE (payment succeeded, or explicit reactivation)
        ACTIVE → CANCELLED (immediate cancellation)

    CANCELLED is terminal.
    """

    ACTIVE = "active", _("Active")
    SUSPENDED = "suspended", _("Suspended")
    CANCELLED = "cancelled", _("Cancelled")
