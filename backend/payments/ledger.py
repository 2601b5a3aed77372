"""
Database layer over ``BookingPayment``.

Callers pass integer cents; conversion to currency units happens only here.
Every status transition is a conditional ``UPDATE ... WHERE status IN (...)``
and returns whether a row actually moved, so duplicate or concurrent webhook
deliveries become no-ops instead of lost updates.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .calculator import PaymentPlan
from .exceptions import LedgerError
from .models import BookingPayment, StripeCustomer

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Statuses from which each transition is allowed. Nothing moves backward
# except completed -> refunded. A pending row whose deposit was already
# captured is refundable too (see ``mark_refunded``).
AUTHORIZABLE = (BookingPayment.PENDING,)
CAPTURABLE = (BookingPayment.PENDING, BookingPayment.AUTHORIZED)
FAILABLE = (BookingPayment.PENDING, BookingPayment.AUTHORIZED)
CANCELLABLE = (BookingPayment.PENDING, BookingPayment.AUTHORIZED)
REFUNDABLE = (BookingPayment.AUTHORIZED, BookingPayment.COMPLETED, BookingPayment.REFUNDED)


def to_cents(amount) -> int:
    if amount is None:
        return 0
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def from_cents(cents: Optional[int]) -> Decimal:
    return (Decimal(int(cents or 0)) / Decimal(100)).quantize(CENT)


class PaymentLedger:
    """Reads and conditional writes for booking payment rows."""

    # Reads

    def get(self, payment_id: int) -> Optional[BookingPayment]:
        return BookingPayment.objects.filter(pk=payment_id).first()

    def get_for_booking(self, booking_id: int) -> Optional[BookingPayment]:
        return BookingPayment.objects.filter(booking_id=booking_id).first()

    def require_for_booking(self, booking_id: int) -> BookingPayment:
        payment = self.get_for_booking(booking_id)
        if payment is None:
            raise LedgerError(f"No payment record for booking {booking_id}")
        return payment

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[BookingPayment]:
        if not payment_intent_id:
            return None
        return (
            BookingPayment.objects.filter(
                Q(stripe_payment_intent_id=payment_intent_id) | Q(deposit_payment_intent_id=payment_intent_id)
            )
            .order_by("pk")
            .first()
        )

    def find_by_checkout_session(self, session_id: str) -> Optional[BookingPayment]:
        if not session_id:
            return None
        return BookingPayment.objects.filter(stripe_checkout_session_id=session_id).first()

    def due_for_pre_auth(self, now: datetime, limit: int) -> list[BookingPayment]:
        return list(
            BookingPayment.objects.filter(
                pre_auth_scheduled_for__lte=now,
                status=BookingPayment.PENDING,
                pre_auth_placed_at__isnull=True,
            )
            .select_related("booking", "booking__professional")
            .order_by("pre_auth_scheduled_for")[:limit]
        )

    def due_for_capture(self, now: datetime, limit: int) -> list[BookingPayment]:
        return list(
            BookingPayment.objects.filter(
                capture_scheduled_for__lte=now,
                status=BookingPayment.AUTHORIZED,
                captured_at__isnull=True,
            )
            .select_related("booking", "booking__professional")
            .order_by("capture_scheduled_for")[:limit]
        )

    # Creation

    def create_from_plan(self, *, booking, plan: PaymentPlan) -> BookingPayment:
        """Write the complete plan as a single row."""
        return BookingPayment.objects.create(
            booking=booking,
            amount=from_cents(plan.amount),
            deposit_amount=from_cents(plan.deposit_amount),
            balance_amount=from_cents(plan.balance_amount),
            tip_amount=from_cents(plan.tip_amount),
            service_fee=from_cents(plan.service_fee),
            payment_type=plan.payment_type,
            capture_method=plan.capture_method,
            requires_balance_payment=plan.requires_balance_payment,
            is_online_payment=plan.is_online_payment,
            payment_flow=plan.payment_flow,
            status=BookingPayment.PENDING,
            pre_auth_scheduled_for=plan.pre_auth_scheduled_for,
            capture_scheduled_for=plan.capture_scheduled_for,
        )

    def attach_checkout_session(self, payment_id: int, session_id: str, customer_id: str = "") -> None:
        fields = {"stripe_checkout_session_id": session_id, "updated_at": timezone.now()}
        if customer_id:
            fields["stripe_customer_id"] = customer_id
        BookingPayment.objects.filter(pk=payment_id).update(**fields)

    def update_plan_amounts(
        self,
        payment_id: int,
        *,
        amount: int,
        balance_amount: int,
        tip_amount: int,
    ) -> bool:
        return bool(
            BookingPayment.objects.filter(pk=payment_id, status=BookingPayment.PENDING).update(
                amount=from_cents(amount),
                balance_amount=from_cents(balance_amount),
                tip_amount=from_cents(tip_amount),
                updated_at=timezone.now(),
            )
        )

    def get_or_create_customer_id(self, user, create_remote) -> str:
        """
        Return the Stripe customer for ``user``; ``create_remote`` is called
        only when no mapping exists yet.
        """
        existing = StripeCustomer.objects.filter(user=user).values_list("stripe_customer_id", flat=True).first()
        if existing:
            return existing
        customer_id = create_remote(user)
        with transaction.atomic():
            record, created = StripeCustomer.objects.get_or_create(
                user=user, defaults={"stripe_customer_id": customer_id}
            )
        if not created:
            logger.info("Stripe customer for user %s created concurrently; keeping %s", user.pk, record.stripe_customer_id)
        return record.stripe_customer_id

    # Transitions

    def mark_pending(self, payment_id: int) -> bool:
        """``payment_intent.requires_action``: only applies while still pending."""
        return bool(
            BookingPayment.objects.filter(pk=payment_id, status=BookingPayment.PENDING).update(
                updated_at=timezone.now()
            )
        )

    def record_deposit_captured(
        self,
        payment_id: int,
        *,
        payment_intent_id: str,
        payment_method_id: str = "",
        customer_id: str = "",
    ) -> bool:
        """
        Record the deposit charge once. The card and customer are filled in
        whenever still blank: the charge event can land before the checkout
        session that carries them.
        """
        now = timezone.now()
        recorded = BookingPayment.objects.filter(pk=payment_id, deposit_captured_at__isnull=True).update(
            deposit_payment_intent_id=payment_intent_id,
            deposit_captured_at=now,
            updated_at=now,
        )
        if payment_method_id:
            BookingPayment.objects.filter(pk=payment_id, stripe_payment_method_id="").update(
                stripe_payment_method_id=payment_method_id, updated_at=now
            )
        if customer_id:
            BookingPayment.objects.filter(pk=payment_id, stripe_customer_id="").update(
                stripe_customer_id=customer_id, updated_at=now
            )
        return bool(recorded)

    def mark_deposit_fully_paid(self, payment_id: int) -> bool:
        """Deposit covered everything: the record is complete at checkout."""
        now = timezone.now()
        return bool(
            BookingPayment.objects.filter(pk=payment_id, status=BookingPayment.PENDING).update(
                status=BookingPayment.COMPLETED,
                captured_at=now,
                pre_auth_scheduled_for=None,
                updated_at=now,
            )
        )

    def save_payment_method(self, payment_id: int, *, payment_method_id: str, customer_id: str = "") -> bool:
        fields = {"stripe_payment_method_id": payment_method_id, "updated_at": timezone.now()}
        if customer_id:
            fields["stripe_customer_id"] = customer_id
        return bool(
            BookingPayment.objects.filter(pk=payment_id)
            .exclude(status__in=BookingPayment.TERMINAL_STATUSES)
            .update(**fields)
        )

    def mark_authorized(
        self,
        payment_id: int,
        *,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        authorization_expires_at: Optional[datetime] = None,
        payment_method_id: str = "",
    ) -> bool:
        now = timezone.now()
        fields = {
            "status": BookingPayment.AUTHORIZED,
            "stripe_payment_intent_id": payment_intent_id,
            "pre_auth_placed_at": now,
            "capture_method": BookingPayment.CAPTURE_MANUAL,
            "updated_at": now,
        }
        if amount_cents is not None:
            fields["amount"] = from_cents(amount_cents)
        if authorization_expires_at is not None:
            fields["authorization_expires_at"] = authorization_expires_at
        if payment_method_id:
            fields["stripe_payment_method_id"] = payment_method_id
        updated = BookingPayment.objects.filter(pk=payment_id, status__in=AUTHORIZABLE).update(**fields)
        if updated:
            logger.info("Payment %s authorized with intent %s", payment_id, payment_intent_id)
        return bool(updated)

    def mark_captured(self, payment_id: int, *, amount_cents: Optional[int] = None, payment_intent_id: str = "") -> bool:
        """
        Idempotent capture: a row that already has ``captured_at`` is never
        touched again.
        """
        now = timezone.now()
        fields = {
            "status": BookingPayment.COMPLETED,
            "captured_at": now,
            "updated_at": now,
        }
        if amount_cents is not None:
            fields["amount"] = from_cents(amount_cents)
        if payment_intent_id:
            fields["stripe_payment_intent_id"] = payment_intent_id
        updated = BookingPayment.objects.filter(
            pk=payment_id,
            status__in=CAPTURABLE,
            captured_at__isnull=True,
        ).update(**fields)
        if updated:
            logger.info("Payment %s captured", payment_id)
        return bool(updated)

    def mark_failed(self, payment_id: int) -> bool:
        return bool(
            BookingPayment.objects.filter(pk=payment_id, status__in=FAILABLE).update(
                status=BookingPayment.FAILED,
                updated_at=timezone.now(),
            )
        )

    def mark_cancelled(self, payment_id: int, *, reason: str = "") -> bool:
        fields = {"status": BookingPayment.CANCELLED, "updated_at": timezone.now()}
        if reason:
            fields["refund_reason"] = reason[:500]
        return bool(BookingPayment.objects.filter(pk=payment_id, status__in=CANCELLABLE).update(**fields))

    def mark_refunded(
        self,
        payment_id: int,
        *,
        refunded_amount_cents: int,
        reason: str = "",
        refund_transaction_id: str = "",
    ) -> bool:
        """
        Move to ``refunded`` with the processor's cumulative refunded total.
        A repeat delivery carrying the same total is a no-op. A captured
        deposit on a still-pending row counts as money taken, and its
        scheduled balance pre-authorization is dropped.
        """
        now = timezone.now()
        refunded_amount = from_cents(refunded_amount_cents)
        fields = {
            "status": BookingPayment.REFUNDED,
            "refunded_amount": refunded_amount,
            "refunded_at": now,
            "pre_auth_scheduled_for": None,
            "updated_at": now,
        }
        if reason:
            fields["refund_reason"] = reason[:500]
        if refund_transaction_id:
            fields["refund_transaction_id"] = refund_transaction_id
        refundable = Q(status__in=REFUNDABLE) | Q(status=BookingPayment.PENDING, deposit_captured_at__isnull=False)
        updated = (
            BookingPayment.objects.filter(refundable, pk=payment_id)
            .exclude(status=BookingPayment.REFUNDED, refunded_amount=refunded_amount)
            .update(**fields)
        )
        return bool(updated)

    def mark_balance_notified(self, payment_ids: Iterable[int]) -> int:
        return BookingPayment.objects.filter(
            pk__in=list(payment_ids),
            balance_notification_sent_at__isnull=True,
        ).update(balance_notification_sent_at=timezone.now())

    def claim_confirmation_email(self, payment_id: int) -> bool:
        """Check-and-set ``confirmation_sent_at``; only one caller ever wins."""
        return bool(
            BookingPayment.objects.filter(pk=payment_id, confirmation_sent_at__isnull=True).update(
                confirmation_sent_at=timezone.now()
            )
        )

    def claim_receipt_email(self, payment_id: int) -> bool:
        return bool(
            BookingPayment.objects.filter(pk=payment_id, receipt_sent_at__isnull=True).update(
                receipt_sent_at=timezone.now()
            )
        )

    def release_confirmation_claim(self, payment_id: int) -> None:
        BookingPayment.objects.filter(pk=payment_id).update(confirmation_sent_at=None)

    def release_receipt_claim(self, payment_id: int) -> None:
        BookingPayment.objects.filter(pk=payment_id).update(receipt_sent_at=None)
