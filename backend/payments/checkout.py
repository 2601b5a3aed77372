"""
Booking-time payment orchestration.

Given a freshly created booking, compute the complete payment plan, persist it
as one ledger row and open the Stripe checkout session for the matching
scenario: deposit now, card saved for later, or an uncaptured hold now.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from django.conf import settings

from bookings.services.cleanup import delete_booking_and_related_records
from core.site_config import get_service_fee_cents

from .calculator import (
    SCENARIO_DEPOSIT,
    DepositPolicy,
    PaymentPlan,
    calculate_complete_payment_data,
)
from .exceptions import PaymentError, PaymentValidationError
from .gateway import ProcessorGateway, get_gateway
from .ledger import PaymentLedger

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    success: bool
    booking_id: Optional[int] = None
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None
    requires_payment: bool = False
    payment_type: str = "full"
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


def _dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


def _day(value: datetime) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def build_submit_message(plan: PaymentPlan) -> str:
    """
    Text shown under the checkout button explaining what is charged and when.
    Varies by timing (far/near), payment method (card/cash) and deposit.
    """
    far = not plan.schedule.should_pre_auth_now
    fee = _dollars(plan.service_fee)

    if plan.scenario == SCENARIO_DEPOSIT:
        deposit = _dollars(plan.deposit_amount)
        balance = _dollars(plan.balance_amount)
        if plan.is_online_payment and far:
            return (
                f"Your deposit of {deposit} (including the {fee} service fee) is charged now. "
                f"The remaining {balance} will be authorized on {_day(plan.schedule.pre_auth_date)} "
                "and charged after your appointment."
            )
        if plan.is_online_payment:
            return (
                f"Your deposit of {deposit} (including the {fee} service fee) is charged now. "
                f"The remaining {balance} is held on your card and charged after your appointment."
            )
        if far:
            return (
                f"Your deposit of {deposit} (including the {fee} service fee) is charged now. "
                f"The remaining {balance} is paid in cash at your appointment on {_day(plan.capture_scheduled_for)}."
            )
        return (
            f"Your deposit of {deposit} (including the {fee} service fee) is charged now. "
            f"The remaining {balance} is paid in cash at your appointment."
        )

    amount = _dollars(plan.amount)
    if plan.is_online_payment and far:
        return (
            f"Your card is saved now and nothing is charged today. {amount} will be authorized on "
            f"{_day(plan.schedule.pre_auth_date)} and charged after your appointment."
        )
    if plan.is_online_payment:
        return f"A hold of {amount} is placed on your card now. You are only charged after your appointment."
    if far:
        return (
            f"Your card is saved for the {fee} service fee, authorized on "
            f"{_day(plan.schedule.pre_auth_date)}. The service itself is paid in cash at your appointment."
        )
    return (
        f"A hold of {fee} for the service fee is placed on your card now. "
        "The service itself is paid in cash at your appointment."
    )


class PaymentOrchestrator:
    def __init__(
        self,
        ledger: Optional[PaymentLedger] = None,
        gateway: Optional[ProcessorGateway] = None,
    ):
        self.ledger = ledger or PaymentLedger()
        self.gateway = gateway or get_gateway()

    def create_booking_with_payment(self, booking, client) -> CheckoutResult:
        """
        Run the checkout scenario for ``booking``. Never raises: failures come
        back as ``CheckoutResult(success=False, error=...)`` after the unpaid
        booking has been cleaned up.
        """
        if self.ledger.get_for_booking(booking.pk) is not None:
            # A live checkout already belongs to this booking; leave it alone.
            return CheckoutResult(success=False, booking_id=booking.pk, error="Booking already has a payment record")
        try:
            return self._create(booking, client)
        except PaymentValidationError as exc:
            logger.info("Checkout rejected for booking %s: %s", booking.pk, exc)
            self._cleanup(booking.pk)
            return CheckoutResult(success=False, booking_id=booking.pk, error=str(exc))
        except PaymentError as exc:
            logger.error("Checkout failed for booking %s: %s", booking.pk, exc)
            self._cleanup(booking.pk)
            return CheckoutResult(success=False, booking_id=booking.pk, error=str(exc))
        except Exception:
            logger.exception("Unexpected checkout failure for booking %s", booking.pk)
            self._cleanup(booking.pk)
            return CheckoutResult(
                success=False,
                booking_id=booking.pk,
                error="Unable to start checkout. Please try again.",
            )

    def _create(self, booking, client) -> CheckoutResult:
        profile = booking.professional
        if not profile.stripe_account_id:
            raise PaymentValidationError("Professional has not connected their Stripe account")
        if not profile.can_accept_payments:
            raise PaymentValidationError("Professional has not finished Stripe onboarding")
        if client is None or client.pk != booking.client_id:
            raise PaymentValidationError("Only the booking client can start checkout")

        appointment = getattr(booking, "appointment", None)
        if appointment is None:
            raise PaymentValidationError("Booking has no appointment")

        plan = calculate_complete_payment_data(
            total_price=booking.total_price,
            tip_amount=booking.tip_amount,
            service_fee_cents=get_service_fee_cents(),
            policy=DepositPolicy.from_profile(profile),
            start=appointment.start_time,
            end=appointment.end_time,
            is_online_payment=booking.is_online_payment,
            threshold_days=settings.PAYMENT_PRE_AUTH_THRESHOLD_DAYS,
        )
        if plan.checkout.amount <= 0:
            raise PaymentValidationError("Booking total must cover the service fee")

        payment = self.ledger.create_from_plan(booking=booking, plan=plan)
        customer_id = self.ledger.get_or_create_customer_id(
            client,
            lambda user: self.gateway.create_customer(
                email=user.email,
                name=user.label,
                metadata={"user_id": user.pk},
            ),
        )

        base_url = settings.FRONTEND_URL.rstrip("/")
        session = self.gateway.create_checkout_session(
            mode=plan.checkout.mode,
            amount_cents=plan.checkout.amount,
            product_name=f"Appointment with {profile}",
            success_url=f"{base_url}/booking/success?booking_id={booking.pk}&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/booking/cancel?booking_id={booking.pk}",
            metadata=self._metadata(booking, plan),
            destination=profile.stripe_account_id,
            transfer_amount_cents=plan.checkout.transfer_amount,
            customer_id=customer_id,
            capture_method=plan.checkout.capture_method,
            setup_future_usage=plan.checkout.setup_future_usage,
            submit_message=build_submit_message(plan),
        )
        self.ledger.attach_checkout_session(payment.pk, session.id, customer_id)
        logger.info(
            "Checkout session %s created for booking %s (%s)",
            session.id,
            booking.pk,
            plan.payment_flow,
        )

        return CheckoutResult(
            success=True,
            booking_id=booking.pk,
            checkout_url=session.url,
            session_id=session.id,
            requires_payment=True,
            payment_type=plan.payment_type,
        )

    @staticmethod
    def _metadata(booking, plan: PaymentPlan) -> dict:
        return {
            "booking_id": booking.pk,
            "client_id": booking.client_id,
            "professional_profile_id": booking.professional_id,
            "professional_stripe_account_id": booking.professional.stripe_account_id,
            "payment_flow": plan.payment_flow,
            "payment_type": plan.payment_type,
            "payment_method_type": "card" if plan.is_online_payment else "cash",
            "deposit_amount": plan.deposit_amount,
            "balance_amount": plan.balance_amount,
            "service_fee": plan.service_fee,
            "capture_scheduled_for": plan.capture_scheduled_for.isoformat(),
            "appointment_timing": "immediate" if plan.schedule.should_pre_auth_now else "scheduled",
        }

    @staticmethod
    def _cleanup(booking_id: int) -> None:
        try:
            delete_booking_and_related_records(booking_id)
        except Exception:
            logger.exception("Failed-checkout cleanup did not complete for booking %s", booking_id)
