from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="ProfessionalProfile",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("business_name", models.CharField(blank=True, max_length=200)),
                ("timezone", models.CharField(default="UTC", max_length=64)),
                ("requires_deposit", models.BooleanField(default=False)),
                (
                    "deposit_type",
                    models.CharField(
                        choices=[("percentage", "Percentage"), ("fixed", "Fixed amount")],
                        default="percentage",
                        max_length=20,
                    ),
                ),
                (
                    "deposit_value",
                    models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True),
                ),
                ("cancellation_policy_enabled", models.BooleanField(default=False)),
                ("cancellation_24h_charge_percentage", models.PositiveSmallIntegerField(default=50)),
                ("cancellation_48h_charge_percentage", models.PositiveSmallIntegerField(default=25)),
                (
                    "stripe_account_id",
                    models.CharField(blank=True, max_length=255, null=True, unique=True),
                ),
                (
                    "stripe_connect_status",
                    models.CharField(
                        choices=[
                            ("not_connected", "Not connected"),
                            ("pending", "Pending"),
                            ("in_review", "In review"),
                            ("complete", "Complete"),
                        ],
                        default="not_connected",
                        max_length=20,
                    ),
                ),
                ("charges_enabled", models.BooleanField(default=False)),
                ("payouts_enabled", models.BooleanField(default=False)),
                ("details_submitted", models.BooleanField(default=False)),
                ("onboarding_link_url", models.URLField(blank=True)),
                ("onboarding_expires_at", models.DateTimeField(blank=True, null=True)),
                ("services_sync_requested_at", models.DateTimeField(blank=True, null=True)),
                ("last_webhook_received_at", models.DateTimeField(blank=True, null=True)),
                ("last_webhook_error_at", models.DateTimeField(blank=True, null=True)),
                ("last_webhook_error_message", models.CharField(blank=True, max_length=500)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="professional_profile",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
    ]
