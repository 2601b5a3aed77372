from django.conf import settings
from django.db import models


class ProfessionalProfile(models.Model):
    DEPOSIT_PERCENTAGE = "percentage"
    DEPOSIT_FIXED = "fixed"
    DEPOSIT_TYPES = [
        (DEPOSIT_PERCENTAGE, "Percentage"),
        (DEPOSIT_FIXED, "Fixed amount"),
    ]

    CONNECT_NOT_CONNECTED = "not_connected"
    CONNECT_PENDING = "pending"
    CONNECT_IN_REVIEW = "in_review"
    CONNECT_COMPLETE = "complete"
    CONNECT_STATUSES = [
        (CONNECT_NOT_CONNECTED, "Not connected"),
        (CONNECT_PENDING, "Pending"),
        (CONNECT_IN_REVIEW, "In review"),
        (CONNECT_COMPLETE, "Complete"),
    ]

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="professional_profile",
    )
    business_name = models.CharField(max_length=200, blank=True)
    timezone = models.CharField(max_length=64, default="UTC")

    requires_deposit = models.BooleanField(default=False)
    deposit_type = models.CharField(max_length=20, choices=DEPOSIT_TYPES, default=DEPOSIT_PERCENTAGE)
    deposit_value = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    cancellation_policy_enabled = models.BooleanField(default=False)
    cancellation_24h_charge_percentage = models.PositiveSmallIntegerField(default=50)
    cancellation_48h_charge_percentage = models.PositiveSmallIntegerField(default=25)

    stripe_account_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    stripe_connect_status = models.CharField(
        max_length=20,
        choices=CONNECT_STATUSES,
        default=CONNECT_NOT_CONNECTED,
    )
    charges_enabled = models.BooleanField(default=False)
    payouts_enabled = models.BooleanField(default=False)
    details_submitted = models.BooleanField(default=False)
    onboarding_link_url = models.URLField(blank=True)
    onboarding_expires_at = models.DateTimeField(null=True, blank=True)
    services_sync_requested_at = models.DateTimeField(null=True, blank=True)
    last_webhook_received_at = models.DateTimeField(null=True, blank=True)
    last_webhook_error_at = models.DateTimeField(null=True, blank=True)
    last_webhook_error_message = models.CharField(max_length=500, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.business_name or str(self.user)

    @property
    def can_accept_payments(self) -> bool:
        return bool(self.stripe_account_id) and self.stripe_connect_status == self.CONNECT_COMPLETE
