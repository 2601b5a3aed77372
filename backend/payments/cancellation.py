"""
Cancellation fees.

Stripe does not let a hold's ``transfer_data`` be changed before a partial
capture, so a fee on an authorized hold is collected with two fresh charges
instead: the hold is cancelled, the platform's service fee is charged, and the
professional's share is charged with a transfer to their account.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from django.utils import timezone

from bookings.services.lifecycle import cancel_booking
from core.activity import track_activity
from core.models import ActivityEvent

from .exceptions import CancellationError, GatewayError
from .gateway import ProcessorGateway, get_gateway
from .ledger import PaymentLedger, to_cents
from .models import BookingPayment

logger = logging.getLogger(__name__)

STEP_HOLD_CANCELLED = "hold_cancelled"
STEP_SERVICE_FEE_CHARGED = "service_fee_charged"
STEP_CANCELLATION_FEE_CHARGED = "cancellation_fee_charged"
STEP_DEPOSIT_REFUNDED = "deposit_refunded"
STEP_CAPTURE_REFUNDED = "capture_refunded"


@dataclass
class CancellationResult:
    success: bool
    fee_cents: int = 0
    refunded_cents: int = 0
    completed_steps: list[str] = field(default_factory=list)
    requires_manual_reconciliation: bool = False
    error: Optional[str] = None


def cancellation_fee_percentage(profile, start_time: datetime, now: datetime, *, cancelled_by_professional: bool) -> int:
    """Policy percentage for a cancellation made at ``now``."""
    if cancelled_by_professional or not profile.cancellation_policy_enabled:
        return 0
    hours_until = (start_time - now).total_seconds() / 3600
    if hours_until < 24:
        return profile.cancellation_24h_charge_percentage or 50
    if hours_until < 48:
        return profile.cancellation_48h_charge_percentage or 25
    return 0


def split_fee(total_fee_cents: int, deposit_base_cents: int, service_price_cents: int) -> tuple[int, int]:
    """Split a fee between the captured deposit and the balance, in proportion."""
    if total_fee_cents <= 0:
        return 0, 0
    if deposit_base_cents <= 0 or service_price_cents <= 0:
        return 0, total_fee_cents
    deposit_share = int(
        (Decimal(deposit_base_cents) / Decimal(service_price_cents) * Decimal(total_fee_cents)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )
    deposit_share = min(deposit_share, deposit_base_cents, total_fee_cents)
    return deposit_share, total_fee_cents - deposit_share


class CancellationService:
    def __init__(self, ledger: Optional[PaymentLedger] = None, gateway: Optional[ProcessorGateway] = None):
        self.ledger = ledger or PaymentLedger()
        self.gateway = gateway or get_gateway()

    def cancel_booking_payment(
        self,
        booking,
        *,
        cancelled_by_professional: bool,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        now = now or timezone.now()
        payment = self.ledger.get_for_booking(booking.pk)
        appointment = getattr(booking, "appointment", None)

        if payment is None or appointment is None:
            cancel_booking(booking.pk, reason)
            return CancellationResult(success=True)
        if payment.status in (BookingPayment.CANCELLED, BookingPayment.FAILED, BookingPayment.REFUNDED):
            cancel_booking(booking.pk, reason)
            return CancellationResult(success=True)

        service_fee = to_cents(payment.service_fee)
        service_price = max(to_cents(booking.total_price) - service_fee, 0)
        percentage = cancellation_fee_percentage(
            booking.professional,
            appointment.start_time,
            now,
            cancelled_by_professional=cancelled_by_professional,
        )
        total_fee = int(
            (Decimal(service_price) * Decimal(percentage) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
        deposit_base = 0
        if payment.deposit_captured_at and payment.deposit_payment_intent_id:
            deposit_base = max(to_cents(payment.deposit_amount) - service_fee, 0)
        deposit_fee, balance_fee = split_fee(total_fee, deposit_base, service_price)

        result = CancellationResult(success=True, fee_cents=total_fee)
        try:
            if deposit_base:
                self._refund_deposit(payment, deposit_fee, cancelled_by_professional, reason, result)
            self._settle_balance(booking, payment, balance_fee, deposit_base > 0, reason, result)
        except CancellationError as exc:
            result.success = False
            result.error = str(exc)
            result.requires_manual_reconciliation = True
            result.completed_steps = exc.completed_steps
            logger.error(
                "Cancellation of booking %s stopped after steps %s: %s; manual reconciliation required",
                booking.pk,
                exc.completed_steps,
                exc,
            )
        finally:
            self.ledger.mark_cancelled(payment.pk, reason=reason)
            cancel_booking(booking.pk, reason)

        track_activity(
            event_type=ActivityEvent.BOOKING_CANCELLED,
            user_id=booking.client_id,
            booking_id=booking.pk,
            metadata={
                "cancelled_by_professional": cancelled_by_professional,
                "fee_cents": total_fee,
                "refunded_cents": result.refunded_cents,
                "steps": result.completed_steps,
            },
        )
        return result

    def _refund_deposit(self, payment, deposit_fee: int, cancelled_by_professional: bool, reason: str, result):
        refund_cents = to_cents(payment.deposit_amount) - deposit_fee
        if not cancelled_by_professional and deposit_fee > 0:
            # The platform keeps its fee when the client cancels inside the policy window.
            refund_cents -= to_cents(payment.service_fee)
        if refund_cents <= 0:
            return
        try:
            self.gateway.create_refund(
                payment_intent_id=payment.deposit_payment_intent_id,
                amount_cents=refund_cents,
                metadata={"booking_id": payment.booking_id, "reason": f"Cancellation: {reason}"[:200]},
            )
        except GatewayError as exc:
            raise CancellationError(
                f"Deposit refund failed: {exc}", completed_steps=list(result.completed_steps)
            ) from exc
        result.refunded_cents += refund_cents
        result.completed_steps.append(STEP_DEPOSIT_REFUNDED)

    def _settle_balance(self, booking, payment, balance_fee: int, service_fee_collected: bool, reason: str, result):
        held = payment.status == BookingPayment.AUTHORIZED and payment.stripe_payment_intent_id
        captured = payment.status == BookingPayment.COMPLETED and payment.stripe_payment_intent_id

        if captured:
            refund_cents = to_cents(payment.amount) - balance_fee
            if refund_cents <= 0:
                return
            try:
                self.gateway.create_refund(
                    payment_intent_id=payment.stripe_payment_intent_id,
                    amount_cents=refund_cents,
                    metadata={"booking_id": booking.pk, "reason": f"Cancellation: {reason}"[:200]},
                )
            except GatewayError as exc:
                raise CancellationError(
                    f"Refund of captured payment failed: {exc}", completed_steps=list(result.completed_steps)
                ) from exc
            result.refunded_cents += refund_cents
            result.completed_steps.append(STEP_CAPTURE_REFUNDED)
            return

        if held:
            try:
                self.gateway.cancel_payment_intent(payment.stripe_payment_intent_id)
            except GatewayError as exc:
                raise CancellationError(
                    f"Could not release the authorization hold: {exc}",
                    completed_steps=list(result.completed_steps),
                ) from exc
            result.completed_steps.append(STEP_HOLD_CANCELLED)

        if balance_fee > 0 and (held or payment.stripe_payment_method_id):
            self._charge_fees(booking, payment, balance_fee, service_fee_collected, reason, result)

    def _charge_fees(self, booking, payment, fee_cents: int, service_fee_collected: bool, reason: str, result):
        customer_id = payment.stripe_customer_id
        payment_method_id = payment.stripe_payment_method_id
        if not customer_id or not payment_method_id:
            raise CancellationError(
                "No saved card to charge the cancellation fee",
                completed_steps=list(result.completed_steps),
            )

        service_fee = to_cents(payment.service_fee)
        if not service_fee_collected and service_fee > 0:
            try:
                self.gateway.create_off_session_charge(
                    amount_cents=service_fee,
                    customer_id=customer_id,
                    payment_method_id=payment_method_id,
                    description=f"Service fee for cancelled booking #{booking.pk}",
                    metadata={"booking_id": booking.pk, "charge_kind": "cancellation_service_fee"},
                    idempotency_key=f"cancel-service-fee-{booking.pk}",
                )
            except GatewayError as exc:
                raise CancellationError(
                    f"Service fee charge failed: {exc}", completed_steps=list(result.completed_steps)
                ) from exc
            result.completed_steps.append(STEP_SERVICE_FEE_CHARGED)

        try:
            self.gateway.create_off_session_charge(
                amount_cents=fee_cents,
                customer_id=customer_id,
                payment_method_id=payment_method_id,
                destination=booking.professional.stripe_account_id,
                transfer_amount_cents=fee_cents,
                description=f"Cancellation fee for booking #{booking.pk}",
                metadata={
                    "booking_id": booking.pk,
                    "charge_kind": "cancellation_fee",
                    "reason": reason[:200],
                },
                idempotency_key=f"cancel-fee-{booking.pk}",
            )
        except GatewayError as exc:
            raise CancellationError(
                f"Cancellation fee charge failed: {exc}", completed_steps=list(result.completed_steps)
            ) from exc
        result.completed_steps.append(STEP_CANCELLATION_FEE_CHARGED)
