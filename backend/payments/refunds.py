"""
Refund requests and the ``refund.*`` webhook events.

Requesting a refund only creates the Stripe refund and a local ``Refund``
row; the booking payment moves to ``refunded`` when ``charge.refunded``
arrives, so Stripe stays the source of truth for refunded totals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from django.db import transaction

from .exceptions import GatewayError, PaymentValidationError
from .gateway import ProcessorGateway, get_gateway
from .ledger import PaymentLedger, from_cents, to_cents
from .models import BookingPayment, Refund

logger = logging.getLogger(__name__)

REFUND_STATUS_MAP = {
    "pending": Refund.PENDING,
    "requires_action": Refund.PENDING,
    "succeeded": Refund.SUCCEEDED,
    "failed": Refund.FAILED,
    "canceled": Refund.CANCELED,
}


@dataclass
class RefundResult:
    success: bool
    refund_id: Optional[int] = None
    stripe_refund_id: Optional[str] = None
    amount_cents: int = 0
    error: Optional[str] = None


def refundable_intent(payment: BookingPayment) -> tuple[Optional[str], int]:
    """The captured intent to refund and how many cents it still holds."""
    already_refunded = to_cents(payment.refunded_amount)
    if payment.captured_at and payment.stripe_payment_intent_id:
        return payment.stripe_payment_intent_id, max(to_cents(payment.amount) - already_refunded, 0)
    if payment.deposit_captured_at and payment.deposit_payment_intent_id:
        return payment.deposit_payment_intent_id, max(to_cents(payment.deposit_amount) - already_refunded, 0)
    return None, 0


class RefundService:
    def __init__(self, ledger: Optional[PaymentLedger] = None, gateway: Optional[ProcessorGateway] = None):
        self.ledger = ledger or PaymentLedger()
        self.gateway = gateway or get_gateway()

    def request_refund(
        self,
        payment: BookingPayment,
        amount_cents: Optional[int],
        reason: str,
        requested_by=None,
        support_request=None,
    ) -> RefundResult:
        """Refund ``amount_cents`` (everything refundable when ``None``)."""
        try:
            payment_intent_id, refundable = refundable_intent(payment)
            if not payment_intent_id or refundable <= 0:
                raise PaymentValidationError("Nothing has been captured for this booking yet")
            amount = refundable if amount_cents is None else int(amount_cents)
            if amount <= 0:
                raise PaymentValidationError("Refund amount must be positive")
            if amount > refundable:
                raise PaymentValidationError(
                    f"Refund amount exceeds the refundable balance of ${refundable / 100:.2f}"
                )
        except PaymentValidationError as exc:
            return RefundResult(success=False, error=str(exc))

        refund = Refund.objects.create(
            booking_payment=payment,
            amount=from_cents(amount),
            reason=reason[:500],
            requested_by=requested_by,
            support_request=support_request,
        )
        try:
            stripe_refund = self.gateway.create_refund(
                payment_intent_id=payment_intent_id,
                amount_cents=amount,
                metadata={
                    "booking_id": payment.booking_id,
                    "refund_record_id": refund.pk,
                    "reason": reason[:200],
                },
            )
        except GatewayError as exc:
            logger.error("Refund for booking %s failed: %s", payment.booking_id, exc)
            refund.status = Refund.FAILED
            refund.failure_reason = str(exc)[:255]
            refund.save(update_fields=["status", "failure_reason", "updated_at"])
            return RefundResult(success=False, refund_id=refund.pk, amount_cents=amount, error=str(exc))

        refund.stripe_refund_id = stripe_refund.id
        refund.status = REFUND_STATUS_MAP.get(getattr(stripe_refund, "status", "pending"), Refund.PENDING)
        refund.save(update_fields=["stripe_refund_id", "status", "updated_at"])
        logger.info(
            "Refund %s of %s cents requested for booking %s",
            stripe_refund.id,
            amount,
            payment.booking_id,
        )
        return RefundResult(
            success=True,
            refund_id=refund.pk,
            stripe_refund_id=stripe_refund.id,
            amount_cents=amount,
        )

    @transaction.atomic
    def handle_refund_event(self, event_type: str, stripe_refund: dict[str, Any]) -> Optional[Refund]:
        """
        Sync a ``refund.created/updated/failed`` payload onto the local row,
        creating one for refunds issued from the Stripe dashboard.
        """
        refund_id = stripe_refund.get("id")
        metadata = stripe_refund.get("metadata") or {}
        refund = None
        if refund_id:
            refund = Refund.objects.select_for_update().filter(stripe_refund_id=refund_id).first()
        if refund is None and metadata.get("refund_record_id"):
            refund = Refund.objects.select_for_update().filter(pk=metadata["refund_record_id"]).first()
        if refund is None:
            payment = self.ledger.find_by_payment_intent(stripe_refund.get("payment_intent") or "")
            if payment is None:
                logger.info("Refund %s does not belong to a booking payment", refund_id)
                return None
            refund = Refund.objects.create(
                booking_payment=payment,
                stripe_refund_id=refund_id,
                amount=from_cents(stripe_refund.get("amount") or 0),
                reason=metadata.get("reason", "")[:500],
            )

        if event_type == "refund.failed":
            status = Refund.FAILED
        else:
            status = REFUND_STATUS_MAP.get(stripe_refund.get("status") or "", refund.status)
        refund.stripe_refund_id = refund_id or refund.stripe_refund_id
        refund.status = status
        if status == Refund.FAILED:
            refund.failure_reason = (stripe_refund.get("failure_reason") or "unknown")[:255]
        refund.save(update_fields=["stripe_refund_id", "status", "failure_reason", "updated_at"])
        logger.info("Refund %s is now %s", refund_id, status)
        return refund
