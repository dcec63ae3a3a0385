from __future__ import annotations

from uuid import uuid4

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import CharField
from django.utils.text import slugify
from django.utils.translation import gettext_lazy as _
from model_utils.models import TimeStampedModel

from rentdesk.users.constants import OrganizationStatus
from rentdesk.users.constants import RoleCode


def _generate_unique_slug(model, base: str) -> str:
    base_slug = slugify(base) or uuid4().hex[:10]
    slug = base_slug
    counter = 2
    while model.objects.filter(slug=slug).exists():
        slug = f"{base_slug}-{counter}"
        counter += 1
    return slug


class Organization(TimeStampedModel):
    """
    A tenant of the rental-management system.

    Every organization owns exactly one billing Subscription, created by a
    post_save receiver in the billing app. ``status`` is the entitlement
    state that gates mutating requests; only the webhook reconciler and the
    lazy period-end check move it.
    """

    name = CharField(
        max_length=255,
        help_text=_("Name of the organization, e.g. 'Harbour Tool Hire'"),
    )
    slug = models.SlugField(unique=True, blank=True)
    email = models.EmailField(
        blank=True,
        help_text=_("Billing contact address passed to Stripe."),
    )
    status = models.CharField(
        max_length=20,
        choices=OrganizationStatus.choices,
        default=OrganizationStatus.ACTIVE,
    )

    class Meta:
        indexes = [models.Index(fields=["status"], name="users_org_status_idx")]

    def __str__(self):
        return self.name

    def save(self, *args, **kwargs):
        if not self.slug:
            self.slug = _generate_unique_slug(Organization, self.name)
        super().save(*args, **kwargs)

    @property
    def is_active(self) -> bool:
        return self.status == OrganizationStatus.ACTIVE

    def get_owner(self) -> User | None:
        membership = (
            self.memberships.filter(role=RoleCode.OWNER, is_active=True)
            .select_related("user")
            .first()
        )
        return membership.user if membership else None


class User(AbstractUser):
    """
    Default custom user model for RentDesk.
    """

    # First and last name do not cover name patterns around the globe
    name = CharField(_("Name of User"), blank=True, max_length=255)
    first_name = None  # type: ignore[assignment]
    last_name = None  # type: ignore[assignment]

    orgs = models.ManyToManyField(
        Organization,
        through="Membership",
        related_name="users",
        blank=True,
    )

    # Organization the user is currently working in. Nullable because a
    # brand-new user may not belong to one yet.
    current_org = models.ForeignKey(
        Organization,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="current_users",
    )

    def get_current_org(self) -> Organization | None:
        """
        Return current_org if the user still has an active membership in it,
        otherwise the first organization with an active membership.
        """
        if (
            self.current_org_id
            and self.memberships.filter(
                org_id=self.current_org_id,
                is_active=True,
            ).exists()
        ):
            return self.current_org

        membership = (
            self.memberships.filter(is_active=True)
            .select_related("org")
            .order_by("created")
            .first()
        )
        return membership.org if membership else None

    def membership_for(self, org: Organization) -> Membership | None:
        return self.memberships.filter(org=org, is_active=True).first()


class Membership(TimeStampedModel):
    """
    A user's seat in an organization. Active memberships consume seats.
    """

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="memberships",
    )
    org = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="memberships",
    )
    role = models.CharField(
        max_length=20,
        choices=RoleCode.choices,
        default=RoleCode.MEMBER,
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["user", "org"],
                name="unique_membership_per_org",
            ),
        ]

    def __str__(self):
        return f"user '{self.user.username}' in org '{self.org.name}'"

    @property
    def is_owner(self) -> bool:
        return self.role == RoleCode.OWNER
