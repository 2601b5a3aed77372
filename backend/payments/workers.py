"""
Cron-driven payment jobs.

Each job polls the ledger for due rows, pushes the next step to Stripe and
records the outcome through the ledger's conditional transitions, so a row
picked up by two overlapping runs still moves only once. One row failing
never stops the batch.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

from bookings.models import Booking
from bookings.services import lifecycle
from bookings.services.cleanup import cancel_booking_for_failed_checkout
from core.activity import track_activity
from core.models import ActivityEvent

from .emails import PaymentEmailService
from .exceptions import GatewayError
from .gateway import ProcessorGateway, get_gateway
from .ledger import PaymentLedger, to_cents
from .models import BookingPayment

logger = logging.getLogger(__name__)

AUTHORIZATION_WINDOW = timedelta(days=7)


@dataclass
class WorkerReport:
    processed: int = 0
    errors: int = 0
    error_details: list[dict] = field(default_factory=list)
    duration_ms: int = 0

    def record_error(self, payment_id: int, booking_id: int, message: str) -> None:
        self.errors += 1
        self.error_details.append({"payment_id": payment_id, "booking_id": booking_id, "error": message})

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "error_details": self.error_details,
            "duration_ms": self.duration_ms,
        }


def _batch_size(batch_size: Optional[int]) -> int:
    return batch_size or getattr(settings, "PAYMENT_WORKER_BATCH_SIZE", 100)


def _finish(report: WorkerReport, started: float, job: str) -> WorkerReport:
    report.duration_ms = int((time.monotonic() - started) * 1000)
    log = logger.warning if report.errors else logger.info
    log("%s finished: %s processed, %s errors in %sms", job, report.processed, report.errors, report.duration_ms)
    return report


def pre_auth_amounts(payment: BookingPayment) -> tuple[int, int]:
    """
    Cents to hold and cents to route to the professional. A deposit booking
    holds only its balance; the platform fee was collected with the deposit.
    """
    if payment.payment_type == BookingPayment.TYPE_DEPOSIT:
        balance = to_cents(payment.balance_amount)
        return balance, balance
    amount = to_cents(payment.amount)
    return amount, max(amount - to_cents(payment.service_fee), 0)


def run_pre_auth(
    *,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    ledger: Optional[PaymentLedger] = None,
    gateway: Optional[ProcessorGateway] = None,
) -> WorkerReport:
    started = time.monotonic()
    now = now or timezone.now()
    ledger = ledger or PaymentLedger()
    gateway = gateway or get_gateway()
    report = WorkerReport()

    for payment in ledger.due_for_pre_auth(now, _batch_size(batch_size)):
        amount, transfer = pre_auth_amounts(payment)
        if amount <= 0:
            logger.info("Payment %s has nothing to authorize; skipping", payment.pk)
            continue
        if not payment.stripe_payment_method_id or not payment.stripe_customer_id:
            report.record_error(payment.pk, payment.booking_id, "No saved payment method")
            ledger.mark_failed(payment.pk)
            continue
        try:
            intent = gateway.create_uncaptured_payment_intent(
                amount_cents=amount,
                customer_id=payment.stripe_customer_id,
                payment_method_id=payment.stripe_payment_method_id,
                destination=payment.booking.professional.stripe_account_id,
                transfer_amount_cents=transfer,
                description=f"Booking #{payment.booking_id}",
                metadata={"booking_id": payment.booking_id, "payment_id": payment.pk},
                idempotency_key=f"pre-auth-{payment.pk}",
            )
        except GatewayError as exc:
            report.record_error(payment.pk, payment.booking_id, str(exc))
            if not exc.retryable:
                ledger.mark_failed(payment.pk)
            logger.error("Pre-authorization failed for booking %s: %s", payment.booking_id, exc)
            continue

        if ledger.mark_authorized(
            payment.pk,
            payment_intent_id=intent.id,
            amount_cents=amount,
            authorization_expires_at=now + AUTHORIZATION_WINDOW,
        ):
            report.processed += 1

    return _finish(report, started, "Pre-authorization run")


def run_captures(
    *,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    ledger: Optional[PaymentLedger] = None,
    gateway: Optional[ProcessorGateway] = None,
    emails: Optional[PaymentEmailService] = None,
) -> WorkerReport:
    started = time.monotonic()
    now = now or timezone.now()
    ledger = ledger or PaymentLedger()
    gateway = gateway or get_gateway()
    emails = emails or PaymentEmailService(ledger=ledger)
    report = WorkerReport()

    for payment in ledger.due_for_capture(now, _batch_size(batch_size)):
        if not payment.stripe_payment_intent_id:
            report.record_error(payment.pk, payment.booking_id, "No payment intent to capture")
            continue
        try:
            intent = gateway.capture_payment_intent(payment.stripe_payment_intent_id)
        except GatewayError as exc:
            report.record_error(payment.pk, payment.booking_id, str(exc))
            if not exc.retryable:
                ledger.mark_failed(payment.pk)
            logger.error("Capture failed for booking %s: %s", payment.booking_id, exc)
            continue

        received = getattr(intent, "amount_received", None) or None
        if not ledger.mark_captured(payment.pk, amount_cents=received):
            # A webhook recorded the capture first.
            continue
        report.processed += 1
        lifecycle.complete_booking(payment.booking_id)
        track_activity(
            event_type=ActivityEvent.PAYMENT_CAPTURED,
            user_id=payment.booking.client_id,
            booking_id=payment.booking_id,
            metadata={"payment_intent_id": payment.stripe_payment_intent_id, "source": "capture_worker"},
        )
        try:
            emails.send_payment_receipt(payment.pk)
        except Exception:
            logger.exception("Receipt email failed for payment %s", payment.pk)

    return _finish(report, started, "Capture run")


def send_balance_notifications(
    *,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    ledger: Optional[PaymentLedger] = None,
    emails: Optional[PaymentEmailService] = None,
) -> WorkerReport:
    """Tell clients of finished appointments about a balance still owed."""
    started = time.monotonic()
    now = now or timezone.now()
    ledger = ledger or PaymentLedger()
    emails = emails or PaymentEmailService(ledger=ledger)
    report = WorkerReport()

    due = (
        BookingPayment.objects.filter(
            requires_balance_payment=True,
            balance_notification_sent_at__isnull=True,
            booking__appointment__end_time__lte=now,
            booking__status__in=[Booking.CONFIRMED, Booking.COMPLETED],
        )
        .exclude(status__in=BookingPayment.TERMINAL_STATUSES)
        .select_related("booking", "booking__client", "booking__professional")
        .order_by("booking__appointment__end_time")[: _batch_size(batch_size)]
    )
    notified = []
    for payment in due:
        if emails.send_balance_notification(payment):
            notified.append(payment.pk)
        else:
            report.record_error(payment.pk, payment.booking_id, "Balance notification not delivered")
    report.processed = ledger.mark_balance_notified(notified) if notified else 0
    return _finish(report, started, "Balance notification run")


def cleanup_expired_checkouts(
    *,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    gateway: Optional[ProcessorGateway] = None,
) -> WorkerReport:
    """Release time slots held by checkouts the client never finished."""
    started = time.monotonic()
    now = now or timezone.now()
    gateway = gateway or get_gateway()
    cutoff = now - timedelta(hours=getattr(settings, "CHECKOUT_SESSION_TTL_HOURS", 24))
    report = WorkerReport()

    stale = (
        BookingPayment.objects.filter(
            status=BookingPayment.PENDING,
            created_at__lte=cutoff,
            booking__status=Booking.PENDING_PAYMENT,
        )
        .exclude(stripe_checkout_session_id="")
        .values_list("pk", "booking_id")[: _batch_size(batch_size)]
    )
    for payment_id, booking_id in list(stale):
        try:
            if cancel_booking_for_failed_checkout(booking_id, gateway=gateway):
                report.processed += 1
        except Exception as exc:
            logger.exception("Could not clean up expired checkout for booking %s", booking_id)
            report.record_error(payment_id, booking_id, str(exc))
    return _finish(report, started, "Expired checkout cleanup")
