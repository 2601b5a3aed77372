from __future__ import annotations

import logging

from django.utils import timezone

from bookings.models import Booking

logger = logging.getLogger(__name__)


def confirm_booking(booking_id: int) -> bool:
    """Move a booking out of ``pending_payment``; later states are left alone."""
    updated = Booking.objects.filter(pk=booking_id, status=Booking.PENDING_PAYMENT).update(
        status=Booking.CONFIRMED,
        updated_at=timezone.now(),
    )
    if updated:
        logger.info("Booking %s confirmed", booking_id)
    return bool(updated)


def complete_booking(booking_id: int) -> bool:
    return bool(
        Booking.objects.filter(pk=booking_id, status=Booking.CONFIRMED).update(
            status=Booking.COMPLETED,
            updated_at=timezone.now(),
        )
    )


def cancel_booking(booking_id: int, reason: str = "") -> bool:
    now = timezone.now()
    updated = (
        Booking.objects.filter(pk=booking_id)
        .exclude(status=Booking.CANCELLED)
        .update(
            status=Booking.CANCELLED,
            cancellation_reason=reason[:500],
            cancelled_at=now,
            updated_at=now,
        )
    )
    if updated:
        logger.info("Booking %s cancelled: %s", booking_id, reason or "no reason given")
    return bool(updated)
