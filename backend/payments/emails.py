from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Iterable

from django.conf import settings
from django.core.mail import send_mail

from .ledger import PaymentLedger
from .models import BookingPayment

logger = logging.getLogger(__name__)

# Same-process fast path only. Cross-process idempotency comes from the
# confirmation_sent_at / receipt_sent_at columns.
_sent_lock = threading.Lock()
_sent_in_process: set[tuple[str, int]] = set()


def reset_sent_cache() -> None:
    with _sent_lock:
        _sent_in_process.clear()


def _already_sent_in_process(kind: str, payment_id: int) -> bool:
    with _sent_lock:
        return (kind, payment_id) in _sent_in_process


def _remember_sent(kind: str, payment_id: int) -> None:
    with _sent_lock:
        _sent_in_process.add((kind, payment_id))


def _format_from_email(professional_name: str) -> str:
    default_from = settings.DEFAULT_FROM_EMAIL
    email_addr = default_from
    if "<" in default_from and default_from.endswith(">"):
        email_addr = default_from.split("<", 1)[1].rstrip(">")
    return f"{professional_name} via Suite <{email_addr}>"


def _money(value) -> str:
    return f"${Decimal(value or 0):.2f}"


def _booking_url(booking_id: int) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/bookings/{booking_id}"


class PaymentEmailService:
    """Confirmation, receipt and balance emails for booking payments."""

    def __init__(self, ledger: PaymentLedger | None = None):
        self.ledger = ledger or PaymentLedger()

    def _load(self, payment_id: int) -> BookingPayment | None:
        return (
            BookingPayment.objects.select_related(
                "booking",
                "booking__client",
                "booking__professional",
                "booking__professional__user",
                "booking__appointment",
            )
            .filter(pk=payment_id)
            .first()
        )

    def send_booking_confirmations(self, payment_id: int, *, is_uncaptured: bool = False) -> bool:
        """
        Send the client and professional confirmations once per payment.

        Both emails go out concurrently and fail independently. If neither
        could be delivered the claim is released so a later event can retry.
        """
        if _already_sent_in_process("confirmation", payment_id):
            return False
        if not self.ledger.claim_confirmation_email(payment_id):
            _remember_sent("confirmation", payment_id)
            return False

        payment = self._load(payment_id)
        if payment is None:
            return False
        messages = [
            self._client_confirmation(payment, is_uncaptured=is_uncaptured),
            self._professional_confirmation(payment),
        ]

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(self._deliver, messages))

        if not any(results):
            self.ledger.release_confirmation_claim(payment_id)
            return False
        _remember_sent("confirmation", payment_id)
        return True

    def send_payment_receipt(self, payment_id: int) -> bool:
        if _already_sent_in_process("receipt", payment_id):
            return False
        if not self.ledger.claim_receipt_email(payment_id):
            _remember_sent("receipt", payment_id)
            return False

        payment = self._load(payment_id)
        if payment is None:
            return False
        booking = payment.booking
        professional_name = str(booking.professional)
        body = "\n".join(
            [
                f"Hi {booking.client.label},",
                "",
                f"Your payment to {professional_name} has been processed.",
                f"Amount charged: {_money(payment.amount)}",
                f"Tip: {_money(payment.tip_amount)}",
                f"Service fee: {_money(payment.service_fee)}",
                "",
                f"View your booking: {_booking_url(booking.pk)}",
            ]
        )
        delivered = self._deliver(
            (
                f"Receipt for your booking with {professional_name}",
                body,
                _format_from_email(professional_name),
                [booking.client.email],
            )
        )
        if delivered:
            _remember_sent("receipt", payment_id)
        else:
            self.ledger.release_receipt_claim(payment_id)
        return delivered

    def send_balance_notification(self, payment: BookingPayment) -> bool:
        booking = payment.booking
        professional_name = str(booking.professional)
        if payment.is_online_payment:
            detail = f"The remaining balance of {_money(payment.balance_amount)} will be charged to your saved card."
        else:
            detail = f"Please settle the remaining balance of {_money(payment.balance_amount)} with {professional_name} directly."
        body = "\n".join(
            [
                f"Hi {booking.client.label},",
                "",
                f"Thanks for your appointment with {professional_name}.",
                detail,
                "",
                f"View your booking: {_booking_url(booking.pk)}",
            ]
        )
        return self._deliver(
            (
                f"Balance for your appointment with {professional_name}",
                body,
                _format_from_email(professional_name),
                [booking.client.email],
            )
        )

    def _client_confirmation(self, payment: BookingPayment, *, is_uncaptured: bool):
        booking = payment.booking
        professional_name = str(booking.professional)
        appointment = getattr(booking, "appointment", None)
        lines = [f"Hi {booking.client.label},", "", f"Your booking with {professional_name} is confirmed."]
        if appointment is not None:
            lines.append(f"Appointment: {appointment.start_time:%B %d, %Y at %H:%M} UTC")
        if is_uncaptured:
            lines.append(
                f"We've placed a hold of {_money(payment.amount)} on your card. "
                "You will only be charged after your appointment."
            )
        elif payment.deposit_captured_at:
            lines.append(f"Deposit paid: {_money(payment.deposit_amount)}")
            if payment.requires_balance_payment:
                lines.append(f"Remaining balance: {_money(payment.balance_amount)}")
        else:
            lines.append(f"Total: {_money(payment.amount)}")
        lines.extend(["", f"View your booking: {_booking_url(booking.pk)}"])
        return (
            f"Booking confirmed with {professional_name}",
            "\n".join(lines),
            _format_from_email(professional_name),
            [booking.client.email],
        )

    def _professional_confirmation(self, payment: BookingPayment):
        booking = payment.booking
        professional = booking.professional
        appointment = getattr(booking, "appointment", None)
        lines = [f"Hi {professional.user.label},", "", f"{booking.client.label} booked an appointment with you."]
        if appointment is not None:
            lines.append(f"Appointment: {appointment.start_time:%B %d, %Y at %H:%M} UTC")
        lines.append(f"Booking total: {_money(booking.total_price)}")
        if not payment.is_online_payment:
            lines.append("The client will pay the service amount in person.")
        return (
            f"New booking from {booking.client.label}",
            "\n".join(lines),
            _format_from_email(str(professional)),
            [professional.user.email],
        )

    @staticmethod
    def _deliver(message: tuple[str, str, str, Iterable[str]]) -> bool:
        subject, body, from_email, recipients = message
        recipients = [email for email in recipients if email]
        if not recipients:
            return False
        try:
            send_mail(subject, body, from_email, recipients, fail_silently=False)
        except Exception:
            logger.exception("Failed to send email %r to %s", subject, recipients)
            return False
        return True
