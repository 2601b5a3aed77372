"""
Pure payment split logic. Everything here works in integer cents and has no
I/O, so identical inputs always give identical plans.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from .scheduling import PRE_AUTH_THRESHOLD_DAYS, PaymentSchedule, calculate_payment_schedule

MINIMUM_DEPOSIT_CENTS = 100

PERCENTAGE = "percentage"
FIXED = "fixed"


@dataclass(frozen=True)
class DepositPolicy:
    requires_deposit: bool = False
    deposit_type: str = PERCENTAGE
    deposit_value: Optional[Decimal] = None

    @classmethod
    def from_profile(cls, profile) -> "DepositPolicy":
        return cls(
            requires_deposit=bool(profile.requires_deposit),
            deposit_type=profile.deposit_type,
            deposit_value=profile.deposit_value,
        )

    @property
    def is_active(self) -> bool:
        return self.requires_deposit and self.deposit_value is not None and self.deposit_value > 0


@dataclass(frozen=True)
class PaymentAmounts:
    deposit_amount: int
    balance_amount: int
    requires_deposit: bool
    requires_balance_payment: bool
    is_full_payment: bool


@dataclass(frozen=True)
class CheckoutConfig:
    """How the first Stripe checkout session must be built."""

    mode: str  # "payment" or "setup"
    amount: int
    capture_method: str
    setup_future_usage: bool
    transfer_amount: int


@dataclass(frozen=True)
class PaymentPlan:
    """A complete ``BookingPayment`` record plus the checkout to create for it."""

    scenario: str
    payment_flow: str
    payment_type: str
    capture_method: str
    amount: int
    deposit_amount: int
    balance_amount: int
    tip_amount: int
    service_fee: int
    service_amount: int
    requires_balance_payment: bool
    is_online_payment: bool
    pre_auth_scheduled_for: Optional[datetime]
    capture_scheduled_for: datetime
    schedule: PaymentSchedule
    checkout: CheckoutConfig


SCENARIO_DEPOSIT = "deposit"
SCENARIO_SETUP = "setup_for_later"
SCENARIO_IMMEDIATE = "immediate_uncaptured"


def dollars_to_cents(amount) -> int:
    value = Decimal(str(amount or 0))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_payment_amounts(
    total_cents: int,
    service_amount_cents: int,
    policy: DepositPolicy,
    service_fee_cents: int,
) -> PaymentAmounts:
    """
    Split a booking total into the deposit charged at checkout and the balance
    collected later. The service fee rides on the deposit so the platform is
    paid immediately; the deposit itself never exceeds the service amount.
    """
    if not policy.is_active:
        return PaymentAmounts(
            deposit_amount=0,
            balance_amount=total_cents,
            requires_deposit=False,
            requires_balance_payment=total_cents > 0,
            is_full_payment=True,
        )

    service_amount_cents = max(service_amount_cents, 0)
    if policy.deposit_type == FIXED:
        base = dollars_to_cents(policy.deposit_value)
    else:
        base = _round_half_up(Decimal(service_amount_cents) * Decimal(policy.deposit_value) / Decimal(100))

    # The one-dollar floor never lifts the deposit above the service amount.
    base = min(max(base, MINIMUM_DEPOSIT_CENTS), service_amount_cents)
    deposit = base + service_fee_cents
    balance = max(total_cents - deposit, 0)

    return PaymentAmounts(
        deposit_amount=deposit,
        balance_amount=balance,
        requires_deposit=True,
        requires_balance_payment=balance > 0,
        is_full_payment=base >= service_amount_cents,
    )


def calculate_complete_payment_data(
    *,
    total_price,
    tip_amount,
    service_fee_cents: int,
    policy: DepositPolicy,
    start: datetime,
    end: datetime,
    is_online_payment: bool,
    now: Optional[datetime] = None,
    threshold_days: int = PRE_AUTH_THRESHOLD_DAYS,
) -> PaymentPlan:
    """
    Build the full payment plan for a new booking.

    ``total_price`` already includes the tip and the service fee. The returned
    plan is written to the ledger in one go and tells the orchestrator which of
    the three checkout scenarios to run.
    """
    total_cents = dollars_to_cents(total_price)
    tip_cents = dollars_to_cents(tip_amount)
    service_amount = max(total_cents - service_fee_cents - tip_cents, 0)
    schedule = calculate_payment_schedule(start, end, now=now, threshold_days=threshold_days)

    amounts = calculate_payment_amounts(total_cents, service_amount, policy, service_fee_cents)

    if amounts.requires_deposit:
        deferred = not schedule.should_pre_auth_now
        # Cash bookings settle the balance in person, so only card balances are scheduled.
        card_balance = amounts.requires_balance_payment and is_online_payment
        return PaymentPlan(
            scenario=SCENARIO_DEPOSIT,
            payment_flow="deposit_scheduled" if deferred else "deposit_immediate",
            payment_type="deposit",
            capture_method="automatic",
            amount=amounts.deposit_amount,
            deposit_amount=amounts.deposit_amount,
            balance_amount=amounts.balance_amount,
            tip_amount=tip_cents,
            service_fee=service_fee_cents,
            service_amount=service_amount,
            requires_balance_payment=amounts.requires_balance_payment,
            is_online_payment=is_online_payment,
            pre_auth_scheduled_for=schedule.pre_auth_date if deferred and card_balance else None,
            capture_scheduled_for=schedule.capture_date,
            schedule=schedule,
            checkout=CheckoutConfig(
                mode="payment",
                amount=amounts.deposit_amount,
                capture_method="automatic",
                setup_future_usage=card_balance,
                transfer_amount=amounts.deposit_amount - service_fee_cents,
            ),
        )

    # Cash bookings only run the platform fee through Stripe.
    charge_cents = total_cents if is_online_payment else service_fee_cents
    transfer_cents = charge_cents - service_fee_cents
    in_person_cents = total_cents - charge_cents

    if not schedule.should_pre_auth_now:
        return PaymentPlan(
            scenario=SCENARIO_SETUP,
            payment_flow="setup_for_future_auth",
            payment_type="full",
            capture_method="manual",
            amount=charge_cents,
            deposit_amount=0,
            balance_amount=in_person_cents,
            tip_amount=tip_cents,
            service_fee=service_fee_cents,
            service_amount=service_amount,
            requires_balance_payment=not is_online_payment,
            is_online_payment=is_online_payment,
            pre_auth_scheduled_for=schedule.pre_auth_date,
            capture_scheduled_for=schedule.capture_date,
            schedule=schedule,
            checkout=CheckoutConfig(
                mode="setup",
                amount=charge_cents,
                capture_method="manual",
                setup_future_usage=False,
                transfer_amount=transfer_cents,
            ),
        )

    return PaymentPlan(
        scenario=SCENARIO_IMMEDIATE,
        payment_flow="immediate_full_payment" if is_online_payment else "immediate_service_fee_only",
        payment_type="full",
        capture_method="manual",
        amount=charge_cents,
        deposit_amount=0,
        balance_amount=in_person_cents,
        tip_amount=tip_cents,
        service_fee=service_fee_cents,
        service_amount=service_amount,
        requires_balance_payment=not is_online_payment,
        is_online_payment=is_online_payment,
        pre_auth_scheduled_for=None,
        capture_scheduled_for=schedule.capture_date,
        schedule=schedule,
        checkout=CheckoutConfig(
            mode="payment",
            amount=charge_cents,
            capture_method="manual",
            setup_future_usage=False,
            transfer_amount=transfer_cents,
        ),
    )
