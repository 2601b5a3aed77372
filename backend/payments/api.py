import json
import logging

import django_filters
import stripe
from django.conf import settings
from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from .gateway import ProcessorGateway
from .models import BookingPayment
from .serializers import BookingPaymentSerializer
from .webhooks import get_webhook_processor
from .webhooks.events import KNOWN_EVENT_TYPES

logger = logging.getLogger(__name__)


class StripeWebhookView(APIView):
    """Receive Stripe webhook events for bookings, Connect accounts and subscriptions."""

    permission_classes: list = []
    authentication_classes: list = []

    def post(self, request, *args, **kwargs):
        payload = request.body
        sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")
        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.error("Stripe webhook secret not configured.")
            return Response({"error": "Webhook secret not configured"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
        if not payload or not sig_header:
            logger.warning("Stripe webhook called without a payload or signature.")
            return Response({"error": "Missing payload or signature"}, status=status.HTTP_400_BAD_REQUEST)

        try:
            ProcessorGateway.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
        except ValueError:
            logger.warning("Invalid payload received on Stripe webhook.")
            return Response({"error": "Invalid payload"}, status=status.HTTP_400_BAD_REQUEST)
        except stripe.SignatureVerificationError:
            logger.warning("Invalid Stripe signature.")
            return Response({"error": "Invalid signature"}, status=status.HTTP_400_BAD_REQUEST)

        # Handlers work on plain dicts; the signature check above already parsed the body.
        event = json.loads(payload)
        try:
            get_webhook_processor().process(event)
        except Exception:
            logger.exception("Stripe webhook %s (%s) failed", event.get("type"), event.get("id"))
            return Response({"error": "Webhook handler failed"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        return Response({"received": True})


class StripeWebhookHealthView(APIView):
    permission_classes: list = []
    authentication_classes: list = []

    def get(self, request, *args, **kwargs):
        return Response(
            {
                "status": "ok",
                "endpoint": "stripe-webhook",
                "handled_events": sorted(KNOWN_EVENT_TYPES),
            }
        )


class BookingPaymentFilter(django_filters.FilterSet):
    captured_after = django_filters.IsoDateTimeFilter(field_name="captured_at", lookup_expr="gte")
    captured_before = django_filters.IsoDateTimeFilter(field_name="captured_at", lookup_expr="lte")

    class Meta:
        model = BookingPayment
        fields = ["status", "payment_type", "payment_flow", "booking"]


class BookingPaymentListView(generics.ListAPIView):
    serializer_class = BookingPaymentSerializer
    permission_classes = [permissions.IsAdminUser]
    filterset_class = BookingPaymentFilter
    ordering_fields = ["created_at", "capture_scheduled_for", "amount"]
    ordering = ["-created_at"]

    def get_queryset(self):
        return BookingPayment.objects.select_related("booking")
