from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.db.models import F
from django.utils import timezone

from bookings.models import Booking
from core.activity import track_activity
from core.models import ActivityEvent

from .exceptions import GatewayError
from .gateway import ProcessorGateway, get_gateway
from .ledger import PaymentLedger, from_cents, to_cents
from .models import BookingPayment

logger = logging.getLogger(__name__)


@dataclass
class TipResult:
    success: bool
    tip_amount: Optional[Decimal] = None
    charged_separately: bool = False
    payment_intent_id: Optional[str] = None
    error: Optional[str] = None


def _parse_tip(value) -> Optional[Decimal]:
    try:
        tip = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not tip.is_finite() or tip < 0:
        return None
    return tip.quantize(Decimal("0.01"))


def update_tip(
    booking: Booking,
    user,
    tip_amount,
    *,
    ledger: Optional[PaymentLedger] = None,
    gateway: Optional[ProcessorGateway] = None,
) -> TipResult:
    """
    Change the tip on a booking.

    While the payment is still pending the tip is folded into the amount that
    will be authorized later. Once funds are held or captured, only increases
    are accepted and the difference is charged off-session with the whole tip
    transferred to the professional.
    """
    ledger = ledger or PaymentLedger()

    if user is None or booking.client_id != user.pk:
        return TipResult(success=False, error="Only the client who made the booking can change the tip")
    tip = _parse_tip(tip_amount)
    if tip is None:
        return TipResult(success=False, error="Tip must be a non-negative amount")
    if booking.status == Booking.CANCELLED:
        return TipResult(success=False, error="Cannot tip on a cancelled booking")

    payment = ledger.get_for_booking(booking.pk)
    if payment is None:
        return TipResult(success=False, error="Booking has no payment record")

    delta_cents = to_cents(tip) - to_cents(booking.tip_amount)
    if delta_cents == 0:
        return TipResult(success=True, tip_amount=tip)

    if payment.status == BookingPayment.PENDING and payment.pre_auth_placed_at is None:
        return _fold_into_plan(booking, payment, tip, delta_cents, ledger)

    if payment.status not in (BookingPayment.AUTHORIZED, BookingPayment.COMPLETED):
        return TipResult(success=False, error=f"Cannot add a tip to a {payment.status} payment")
    if delta_cents < 0:
        return TipResult(success=False, error="Tips can only be increased once the payment is authorized")
    return _charge_separately(booking, payment, tip, delta_cents, gateway or get_gateway())


def _fold_into_plan(booking, payment, tip: Decimal, delta_cents: int, ledger: PaymentLedger) -> TipResult:
    amount = to_cents(payment.amount)
    balance = to_cents(payment.balance_amount)
    if not payment.is_online_payment:
        # Cash bookings collect the tip in person with the service.
        balance += delta_cents
    elif payment.payment_type == BookingPayment.TYPE_DEPOSIT:
        balance += delta_cents
    else:
        amount += delta_cents

    if amount < 0 or balance < 0:
        return TipResult(success=False, error="Tip change would make the payment negative")
    if not ledger.update_plan_amounts(
        payment.pk,
        amount=amount,
        balance_amount=balance,
        tip_amount=to_cents(tip),
    ):
        return TipResult(success=False, error="Payment changed while updating the tip; please retry")

    Booking.objects.filter(pk=booking.pk).update(
        tip_amount=tip,
        total_price=F("total_price") + from_cents(delta_cents),
        updated_at=timezone.now(),
    )
    logger.info("Tip for booking %s set to %s (folded into plan)", booking.pk, tip)
    return TipResult(success=True, tip_amount=tip)


def _charge_separately(booking, payment, tip: Decimal, delta_cents: int, gateway: ProcessorGateway) -> TipResult:
    if not payment.stripe_customer_id or not payment.stripe_payment_method_id:
        return TipResult(success=False, error="No saved card is available to charge the tip")
    destination = booking.professional.stripe_account_id
    try:
        intent = gateway.create_off_session_charge(
            amount_cents=delta_cents,
            customer_id=payment.stripe_customer_id,
            payment_method_id=payment.stripe_payment_method_id,
            destination=destination,
            transfer_amount_cents=delta_cents,
            description=f"Tip for booking #{booking.pk}",
            metadata={"booking_id": booking.pk, "charge_kind": "tip"},
            idempotency_key=f"tip-{booking.pk}-{to_cents(tip)}",
        )
    except GatewayError as exc:
        logger.error("Tip charge for booking %s failed: %s", booking.pk, exc)
        return TipResult(success=False, error=str(exc))

    now = timezone.now()
    BookingPayment.objects.filter(pk=payment.pk).update(
        tip_amount=F("tip_amount") + from_cents(delta_cents),
        updated_at=now,
    )
    Booking.objects.filter(pk=booking.pk).update(
        tip_amount=tip,
        total_price=F("total_price") + from_cents(delta_cents),
        updated_at=now,
    )
    track_activity(
        event_type=ActivityEvent.TIP_ADDED,
        user_id=booking.client_id,
        booking_id=booking.pk,
        metadata={"amount_cents": delta_cents, "payment_intent_id": intent.id},
    )
    logger.info("Charged %s cents tip for booking %s (%s)", delta_cents, booking.pk, intent.id)
    return TipResult(success=True, tip_amount=tip, charged_separately=True, payment_intent_id=intent.id)
