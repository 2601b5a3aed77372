from django.conf import settings
from django.db import models


class AdminConfig(models.Model):
    """Small key/value store editable from the admin (service fee, feature knobs)."""

    SERVICE_FEE = "service_fee"

    key = models.CharField(max_length=100, unique=True)
    value = models.TextField()
    description = models.CharField(max_length=255, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["key"]

    def __str__(self):
        return f"{self.key}={self.value}"


class ActivityEvent(models.Model):
    """Product analytics event recorded by server-side flows."""

    BOOKING_COMPLETED = "booking_completed"
    BOOKING_CANCELLED = "booking_cancelled"
    PAYMENT_CAPTURED = "payment_captured"
    TIP_ADDED = "tip_added"

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="activity_events",
    )
    event_type = models.CharField(max_length=60)
    booking = models.ForeignKey(
        "bookings.Booking",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="activity_events",
    )
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["event_type", "created_at"], name="core_activity_type_created_idx")]

    def __str__(self):
        return f"{self.event_type} ({self.user_id})"
