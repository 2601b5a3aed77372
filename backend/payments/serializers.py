from rest_framework import serializers

from .models import BookingPayment, Refund


class BookingPaymentSerializer(serializers.ModelSerializer):
    booking_status = serializers.CharField(source="booking.status", read_only=True)

    class Meta:
        model = BookingPayment
        fields = [
            "id",
            "booking",
            "booking_status",
            "status",
            "payment_type",
            "payment_flow",
            "capture_method",
            "amount",
            "deposit_amount",
            "balance_amount",
            "tip_amount",
            "service_fee",
            "refunded_amount",
            "requires_balance_payment",
            "is_online_payment",
            "pre_auth_scheduled_for",
            "capture_scheduled_for",
            "pre_auth_placed_at",
            "captured_at",
            "authorization_expires_at",
            "created_at",
        ]
        read_only_fields = fields


class RefundSerializer(serializers.ModelSerializer):
    class Meta:
        model = Refund
        fields = [
            "id",
            "booking_payment",
            "stripe_refund_id",
            "amount",
            "reason",
            "status",
            "failure_reason",
            "support_request",
            "created_at",
        ]
        read_only_fields = fields


class RefundRequestSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, required=False, allow_null=True)
    reason = serializers.CharField(max_length=500)
    support_request_id = serializers.IntegerField(required=False, allow_null=True)
