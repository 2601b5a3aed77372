from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


def money(default=None):
    if default is None:
        return models.DecimalField(decimal_places=2, max_digits=10)
    return models.DecimalField(decimal_places=2, default=default, max_digits=10)


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("bookings", "0001_initial"),
        ("support", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="BookingPayment",
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
                ("amount", money()),
                ("deposit_amount", money(0)),
                ("balance_amount", money(0)),
                ("tip_amount", money(0)),
                ("service_fee", money(0)),
                ("refunded_amount", money(0)),
                (
                    "payment_type",
                    models.CharField(
                        choices=[("full", "Full"), ("deposit", "Deposit"), ("balance", "Balance")],
                        default="full",
                        max_length=20,
                    ),
                ),
                (
                    "capture_method",
                    models.CharField(
                        choices=[("automatic", "Automatic"), ("manual", "Manual")],
                        default="automatic",
                        max_length=20,
                    ),
                ),
                ("requires_balance_payment", models.BooleanField(default=False)),
                ("is_online_payment", models.BooleanField(default=True)),
                (
                    "payment_flow",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("deposit_scheduled", "Deposit now, balance pre-authorized later"),
                            ("deposit_immediate", "Deposit now, balance held now"),
                            ("setup_for_future_auth", "Card saved for later authorization"),
                            ("immediate_full_payment", "Full amount held now"),
                            ("immediate_service_fee_only", "Service fee held now"),
                        ],
                        max_length=40,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("authorized", "Authorized"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                            ("refunded", "Refunded"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("stripe_checkout_session_id", models.CharField(blank=True, db_index=True, max_length=255)),
                ("stripe_payment_intent_id", models.CharField(blank=True, db_index=True, max_length=255)),
                ("stripe_payment_method_id", models.CharField(blank=True, max_length=255)),
                ("stripe_customer_id", models.CharField(blank=True, max_length=255)),
                ("deposit_payment_intent_id", models.CharField(blank=True, db_index=True, max_length=255)),
                ("pre_auth_scheduled_for", models.DateTimeField(blank=True, null=True)),
                ("capture_scheduled_for", models.DateTimeField(blank=True, null=True)),
                ("pre_auth_placed_at", models.DateTimeField(blank=True, null=True)),
                ("captured_at", models.DateTimeField(blank=True, null=True)),
                ("deposit_captured_at", models.DateTimeField(blank=True, null=True)),
                ("authorization_expires_at", models.DateTimeField(blank=True, null=True)),
                ("balance_notification_sent_at", models.DateTimeField(blank=True, null=True)),
                ("confirmation_sent_at", models.DateTimeField(blank=True, null=True)),
                ("receipt_sent_at", models.DateTimeField(blank=True, null=True)),
                ("refund_reason", models.CharField(blank=True, max_length=500)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("refund_transaction_id", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "booking",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment",
                        to="bookings.booking",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["status", "pre_auth_scheduled_for"], name="payments_preauth_due_idx"),
                    models.Index(fields=["status", "capture_scheduled_for"], name="payments_capture_due_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="StripeCustomer",
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
                ("stripe_customer_id", models.CharField(max_length=255, unique=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="stripe_customer",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="Refund",
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
                (
                    "stripe_refund_id",
                    models.CharField(blank=True, max_length=255, null=True, unique=True),
                ),
                ("amount", money()),
                ("reason", models.CharField(blank=True, max_length=500)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                            ("canceled", "Canceled"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("failure_reason", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "booking_payment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="refunds",
                        to="payments.bookingpayment",
                    ),
                ),
                (
                    "requested_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="requested_refunds",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "support_request",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="refunds",
                        to="support.supportrequest",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
