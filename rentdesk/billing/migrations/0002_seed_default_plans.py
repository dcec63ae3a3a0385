from django.db import migrations

from rentdesk.billing.constants import DEFAULT_PLANS


def seed_plans(apps, schema_editor):
    Plan = apps.get_model("billing", "Plan")
    for code, config in DEFAULT_PLANS.items():
        Plan.objects.get_or_create(code=str(code), defaults=dict(config))


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(seed_plans, migrations.RunPython.noop),
    ]
