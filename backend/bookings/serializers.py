from decimal import Decimal

from rest_framework import serializers

from bookings.models import Appointment, Booking
from core.site_config import get_service_fee
from professionals.models import ProfessionalProfile


class AppointmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Appointment
        fields = ["start_time", "end_time"]


class BookingSerializer(serializers.ModelSerializer):
    appointment = AppointmentSerializer(read_only=True)
    professional_name = serializers.CharField(source="professional.__str__", read_only=True)
    payment_status = serializers.SerializerMethodField()

    class Meta:
        model = Booking
        fields = [
            "id",
            "client",
            "professional",
            "professional_name",
            "status",
            "total_price",
            "tip_amount",
            "is_online_payment",
            "notes",
            "appointment",
            "payment_status",
            "cancellation_reason",
            "cancelled_at",
            "created_at",
        ]
        read_only_fields = fields

    def get_payment_status(self, obj):
        payment = getattr(obj, "payment", None)
        return payment.status if payment else None


class BookingCreateSerializer(serializers.Serializer):
    professional_id = serializers.PrimaryKeyRelatedField(
        queryset=ProfessionalProfile.objects.all(),
        source="professional",
    )
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    service_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"))
    tip_amount = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0"), required=False, default=Decimal("0")
    )
    is_online_payment = serializers.BooleanField(default=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["end_time"] <= attrs["start_time"]:
            raise serializers.ValidationError({"end_time": "End time must be after the start time."})
        attrs["total_price"] = attrs["service_price"] + attrs["tip_amount"] + get_service_fee()
        return attrs

    def create(self, validated_data):
        booking = Booking.objects.create(
            client=self.context["request"].user,
            professional=validated_data["professional"],
            total_price=validated_data["total_price"],
            tip_amount=validated_data["tip_amount"],
            is_online_payment=validated_data["is_online_payment"],
            notes=validated_data["notes"],
        )
        Appointment.objects.create(
            booking=booking,
            start_time=validated_data["start_time"],
            end_time=validated_data["end_time"],
        )
        return booking


class BookingCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")


class TipSerializer(serializers.Serializer):
    tip_amount = serializers.DecimalField(max_digits=10, decimal_places=2)
