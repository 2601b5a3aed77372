from __future__ import annotations

import logging

from django.db import transaction

from bookings.models import Booking
from payments.exceptions import GatewayError
from payments.models import BookingPayment

logger = logging.getLogger(__name__)


def delete_booking_and_related_records(booking_id: int) -> bool:
    """
    Hard-delete a booking that never got paid, freeing its time slot. The
    appointment and payment rows go with it. Bookings that already left
    ``pending_payment`` are kept. Safe to call repeatedly.
    """
    with transaction.atomic():
        booking = (
            Booking.objects.select_for_update()
            .filter(pk=booking_id, status=Booking.PENDING_PAYMENT)
            .first()
        )
        if booking is None:
            return False
        booking.delete()
    logger.info("Deleted unpaid booking %s and related records", booking_id)
    return True


def cancel_booking_for_failed_checkout(booking_id: int, *, gateway=None) -> bool:
    """
    Clean up after a checkout the client abandoned. The open Stripe session is
    expired first so it cannot be completed for a booking that no longer exists.
    """
    session_id = (
        BookingPayment.objects.filter(booking_id=booking_id)
        .values_list("stripe_checkout_session_id", flat=True)
        .first()
    )
    if session_id and gateway is not None:
        try:
            gateway.expire_checkout_session(session_id)
        except GatewayError as exc:
            logger.warning("Could not expire checkout session %s for booking %s: %s", session_id, booking_id, exc)
    return delete_booking_and_related_records(booking_id)
