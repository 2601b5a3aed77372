from django.conf import settings
from django.db import models


class BookingPayment(models.Model):
    """
    Authoritative local record of money owed and collected for one booking.

    Amounts are stored in currency units; services work in integer cents and
    convert through ``payments.ledger``. The row is created once with the
    complete plan and mutated in place until the booking is deleted.
    """

    TYPE_FULL = "full"
    TYPE_DEPOSIT = "deposit"
    TYPE_BALANCE = "balance"
    PAYMENT_TYPES = [
        (TYPE_FULL, "Full"),
        (TYPE_DEPOSIT, "Deposit"),
        (TYPE_BALANCE, "Balance"),
    ]

    CAPTURE_AUTOMATIC = "automatic"
    CAPTURE_MANUAL = "manual"
    CAPTURE_METHODS = [
        (CAPTURE_AUTOMATIC, "Automatic"),
        (CAPTURE_MANUAL, "Manual"),
    ]

    PENDING = "pending"
    AUTHORIZED = "authorized"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    STATUSES = [
        (PENDING, "Pending"),
        (AUTHORIZED, "Authorized"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
        (CANCELLED, "Cancelled"),
        (REFUNDED, "Refunded"),
    ]
    TERMINAL_STATUSES = (FAILED, CANCELLED, REFUNDED)

    FLOW_DEPOSIT_SCHEDULED = "deposit_scheduled"
    FLOW_DEPOSIT_IMMEDIATE = "deposit_immediate"
    FLOW_SETUP_FOR_FUTURE_AUTH = "setup_for_future_auth"
    FLOW_IMMEDIATE_FULL = "immediate_full_payment"
    FLOW_IMMEDIATE_FEE_ONLY = "immediate_service_fee_only"
    PAYMENT_FLOWS = [
        (FLOW_DEPOSIT_SCHEDULED, "Deposit now, balance pre-authorized later"),
        (FLOW_DEPOSIT_IMMEDIATE, "Deposit now, balance held now"),
        (FLOW_SETUP_FOR_FUTURE_AUTH, "Card saved for later authorization"),
        (FLOW_IMMEDIATE_FULL, "Full amount held now"),
        (FLOW_IMMEDIATE_FEE_ONLY, "Service fee held now"),
    ]

    booking = models.OneToOneField(
        "bookings.Booking",
        on_delete=models.CASCADE,
        related_name="payment",
    )

    amount = models.DecimalField(max_digits=10, decimal_places=2)
    deposit_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    balance_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    tip_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    service_fee = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    refunded_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)

    payment_type = models.CharField(max_length=20, choices=PAYMENT_TYPES, default=TYPE_FULL)
    capture_method = models.CharField(max_length=20, choices=CAPTURE_METHODS, default=CAPTURE_AUTOMATIC)
    requires_balance_payment = models.BooleanField(default=False)
    is_online_payment = models.BooleanField(default=True)
    payment_flow = models.CharField(max_length=40, choices=PAYMENT_FLOWS, blank=True)
    status = models.CharField(max_length=20, choices=STATUSES, default=PENDING)

    stripe_checkout_session_id = models.CharField(max_length=255, blank=True, db_index=True)
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True, db_index=True)
    stripe_payment_method_id = models.CharField(max_length=255, blank=True)
    stripe_customer_id = models.CharField(max_length=255, blank=True)
    deposit_payment_intent_id = models.CharField(max_length=255, blank=True, db_index=True)

    pre_auth_scheduled_for = models.DateTimeField(null=True, blank=True)
    capture_scheduled_for = models.DateTimeField(null=True, blank=True)
    pre_auth_placed_at = models.DateTimeField(null=True, blank=True)
    captured_at = models.DateTimeField(null=True, blank=True)
    deposit_captured_at = models.DateTimeField(null=True, blank=True)
    authorization_expires_at = models.DateTimeField(null=True, blank=True)
    balance_notification_sent_at = models.DateTimeField(null=True, blank=True)
    confirmation_sent_at = models.DateTimeField(null=True, blank=True)
    receipt_sent_at = models.DateTimeField(null=True, blank=True)

    refund_reason = models.CharField(max_length=500, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    refund_transaction_id = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "pre_auth_scheduled_for"], name="payments_preauth_due_idx"),
            models.Index(fields=["status", "capture_scheduled_for"], name="payments_capture_due_idx"),
        ]

    def __str__(self):
        return f"Payment for booking #{self.booking_id} ({self.status})"


class StripeCustomer(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="stripe_customer",
    )
    stripe_customer_id = models.CharField(max_length=255, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.stripe_customer_id


class Refund(models.Model):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    STATUSES = [
        (PENDING, "Pending"),
        (SUCCEEDED, "Succeeded"),
        (FAILED, "Failed"),
        (CANCELED, "Canceled"),
    ]

    booking_payment = models.ForeignKey("BookingPayment", on_delete=models.CASCADE, related_name="refunds")
    stripe_refund_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    reason = models.CharField(max_length=500, blank=True)
    status = models.CharField(max_length=20, choices=STATUSES, default=PENDING)
    failure_reason = models.CharField(max_length=255, blank=True)
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="requested_refunds",
    )
    support_request = models.ForeignKey(
        "support.SupportRequest",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="refunds",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Refund {self.stripe_refund_id or self.pk} ({self.status})"
