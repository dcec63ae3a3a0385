import pytest
from rest_framework.test import APIClient

from rentdesk.users.models import User
from rentdesk.users.tests.factories import UserFactory


@pytest.fixture(autouse=True)
def _ensure_billing_plans(db) -> None:
    """
    Ensure the default billing Plans exist and start every test with an
    empty plan limits cache.

    Organization creation attaches a free-plan subscription, so the free plan
    must exist before any factory runs. The cache is module level and would
    otherwise carry plans across rolled-back test transactions.
    """
    from rentdesk.billing.constants import DEFAULT_PLANS
    from rentdesk.billing.models import Plan
    from rentdesk.billing.plans import plan_limits_cache

    for code, defaults in DEFAULT_PLANS.items():
        Plan.objects.get_or_create(code=code, defaults=defaults)
    plan_limits_cache.invalidate()


@pytest.fixture
def user(db) -> User:
    return UserFactory()


@pytest.fixture
def api_client() -> APIClient:
    return APIClient()
