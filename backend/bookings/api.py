import logging

from django.db.models import Q
from django.shortcuts import get_object_or_404
from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from bookings.models import Booking
from bookings.serializers import (
    BookingCancelSerializer,
    BookingCreateSerializer,
    BookingSerializer,
    TipSerializer,
)
from bookings.services.cleanup import cancel_booking_for_failed_checkout
from payments.cancellation import CancellationService
from payments.checkout import PaymentOrchestrator
from payments.gateway import get_gateway
from payments.ledger import PaymentLedger, to_cents
from payments.refunds import RefundService
from payments.serializers import RefundRequestSerializer
from payments.tips import update_tip
from support.models import SupportRequest

logger = logging.getLogger(__name__)


def _visible_bookings(user):
    return (
        Booking.objects.filter(Q(client=user) | Q(professional__user=user))
        .select_related("professional", "appointment", "payment")
        .distinct()
    )


class BookingListCreateView(generics.ListCreateAPIView):
    permission_classes = [permissions.IsAuthenticated]
    filterset_fields = ["status"]

    def get_serializer_class(self):
        if self.request.method == "POST":
            return BookingCreateSerializer
        return BookingSerializer

    def get_queryset(self):
        return _visible_bookings(self.request.user)

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        booking = serializer.save()

        result = PaymentOrchestrator().create_booking_with_payment(booking, request.user)
        if not result.success:
            return Response(result.as_dict(), status=status.HTTP_400_BAD_REQUEST)
        return Response(result.as_dict(), status=status.HTTP_201_CREATED)


class BookingDetailView(generics.RetrieveAPIView):
    serializer_class = BookingSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return _visible_bookings(self.request.user)


class BookingCheckoutCancelView(APIView):
    """The client backed out of checkout; free the slot."""

    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, booking_id, *args, **kwargs):
        booking = get_object_or_404(Booking, pk=booking_id, client=request.user)
        if booking.status != Booking.PENDING_PAYMENT:
            return Response(
                {"detail": "Only unpaid bookings can be abandoned."},
                status=status.HTTP_409_CONFLICT,
            )
        deleted = cancel_booking_for_failed_checkout(booking.pk, gateway=get_gateway())
        return Response({"deleted": deleted})


class BookingCancelView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, booking_id, *args, **kwargs):
        booking = get_object_or_404(
            _visible_bookings(request.user).select_related("professional__user"),
            pk=booking_id,
        )
        if booking.status in (Booking.CANCELLED, Booking.COMPLETED):
            return Response(
                {"detail": f"Booking is already {booking.status}."},
                status=status.HTTP_409_CONFLICT,
            )
        serializer = BookingCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = CancellationService().cancel_booking_payment(
            booking,
            cancelled_by_professional=booking.professional.user_id == request.user.pk,
            reason=serializer.validated_data["reason"],
        )
        return Response(
            {
                "success": result.success,
                "fee_cents": result.fee_cents,
                "refunded_cents": result.refunded_cents,
                "requires_manual_reconciliation": result.requires_manual_reconciliation,
                "error": result.error,
            }
        )


class BookingTipView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, booking_id, *args, **kwargs):
        booking = get_object_or_404(Booking.objects.select_related("professional"), pk=booking_id)
        serializer = TipSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = update_tip(booking, request.user, serializer.validated_data["tip_amount"])
        if not result.success:
            code = status.HTTP_403_FORBIDDEN if booking.client_id != request.user.pk else status.HTTP_400_BAD_REQUEST
            return Response({"detail": result.error}, status=code)
        return Response(
            {
                "tip_amount": str(result.tip_amount),
                "charged_separately": result.charged_separately,
                "payment_intent_id": result.payment_intent_id,
            }
        )


class BookingRefundView(APIView):
    permission_classes = [permissions.IsAdminUser]

    def post(self, request, booking_id, *args, **kwargs):
        payment = PaymentLedger().get_for_booking(booking_id)
        if payment is None:
            return Response({"detail": "Booking has no payment record."}, status=status.HTTP_404_NOT_FOUND)
        serializer = RefundRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        support_request = None
        if data.get("support_request_id"):
            support_request = get_object_or_404(SupportRequest, pk=data["support_request_id"], booking_id=booking_id)

        amount = data.get("amount")
        result = RefundService().request_refund(
            payment,
            to_cents(amount) if amount is not None else None,
            data["reason"],
            requested_by=request.user,
            support_request=support_request,
        )
        if not result.success:
            return Response({"detail": result.error}, status=status.HTTP_400_BAD_REQUEST)
        logger.info("Refund %s requested by %s for booking %s", result.stripe_refund_id, request.user.pk, booking_id)
        return Response(
            {
                "refund_id": result.refund_id,
                "stripe_refund_id": result.stripe_refund_id,
                "amount_cents": result.amount_cents,
            },
            status=status.HTTP_201_CREATED,
        )
