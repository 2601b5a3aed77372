"""
Find the booking payment an event refers to.

Events created by our own checkout carry ``booking_id`` metadata; actions
taken in the Stripe dashboard (manual capture, refunds) do not. Lookups try
the metadata first and fall back to the processor ids.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..ledger import PaymentLedger
from ..models import BookingPayment


@dataclass(frozen=True)
class ResolvedPayment:
    payment_id: int
    booking_id: int
    strategy: str


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def booking_id_from_metadata(obj: dict[str, Any]) -> Optional[int]:
    raw = _metadata(obj).get("booking_id")
    try:
        return int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        return None


def payment_intent_id_of(obj: dict[str, Any]) -> Optional[str]:
    """The payment intent id for a payment intent, charge, dispute or refund object."""
    if obj.get("object") == "payment_intent":
        return obj.get("id")
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


def _resolved(payment: Optional[BookingPayment], strategy: str) -> Optional[ResolvedPayment]:
    if payment is None:
        return None
    return ResolvedPayment(payment_id=payment.pk, booking_id=payment.booking_id, strategy=strategy)


def resolve_by_metadata(obj: dict[str, Any], ledger: PaymentLedger) -> Optional[ResolvedPayment]:
    booking_id = booking_id_from_metadata(obj)
    if booking_id is None:
        return None
    return _resolved(ledger.get_for_booking(booking_id), "metadata")


def resolve_by_processor_id(obj: dict[str, Any], ledger: PaymentLedger) -> Optional[ResolvedPayment]:
    payment_intent_id = payment_intent_id_of(obj)
    if payment_intent_id:
        found = _resolved(ledger.find_by_payment_intent(payment_intent_id), "payment_intent")
        if found:
            return found
    if obj.get("object") == "checkout.session":
        return _resolved(ledger.find_by_checkout_session(obj.get("id")), "checkout_session")
    return None


def resolve_payment(obj: dict[str, Any], ledger: PaymentLedger) -> Optional[ResolvedPayment]:
    return resolve_by_metadata(obj, ledger) or resolve_by_processor_id(obj, ledger)
