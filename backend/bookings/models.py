from django.conf import settings
from django.db import models


class Booking(models.Model):
    """A client's reservation with a professional; owns the appointment and payment."""

    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    STATUSES = [
        (PENDING_PAYMENT, "Pending payment"),
        (CONFIRMED, "Confirmed"),
        (COMPLETED, "Completed"),
        (CANCELLED, "Cancelled"),
    ]

    client = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="client_bookings",
    )
    professional = models.ForeignKey(
        "professionals.ProfessionalProfile",
        on_delete=models.CASCADE,
        related_name="bookings",
    )
    status = models.CharField(max_length=20, choices=STATUSES, default=PENDING_PAYMENT)
    # Service price plus tip plus platform fee, in currency units.
    total_price = models.DecimalField(max_digits=10, decimal_places=2)
    tip_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    is_online_payment = models.BooleanField(default=True)
    notes = models.TextField(blank=True)
    cancellation_reason = models.CharField(max_length=500, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Booking #{self.pk} ({self.status})"


class Appointment(models.Model):
    booking = models.OneToOneField("Booking", on_delete=models.CASCADE, related_name="appointment")
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["start_time"]

    def __str__(self):
        return f"Appointment for booking #{self.booking_id} at {self.start_time:%Y-%m-%d %H:%M}"
