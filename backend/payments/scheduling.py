from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

# Far-term bookings are authorized this many days before the appointment.
PRE_AUTH_THRESHOLD_DAYS = 6


@dataclass(frozen=True)
class PaymentSchedule:
    pre_auth_date: datetime
    capture_date: datetime
    should_pre_auth_now: bool

    def as_rpc_payload(self) -> dict:
        return {
            "pre_auth_date": _iso_utc(self.pre_auth_date),
            "capture_date": _iso_utc(self.capture_date),
            "should_pre_auth_now": self.should_pre_auth_now,
        }


def _iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_until(start: datetime, now: datetime) -> int:
    return math.ceil((start - now).total_seconds() / timedelta(days=1).total_seconds())


def calculate_payment_schedule(
    start: datetime,
    end: datetime,
    now: Optional[datetime] = None,
    threshold_days: int = PRE_AUTH_THRESHOLD_DAYS,
) -> PaymentSchedule:
    """
    Decide when the hold is placed and when it is captured.

    Appointments more than ``threshold_days`` away are authorized at
    ``start - threshold_days``; anything closer (including past-due) is
    authorized now. Capture always happens at the appointment end.
    """
    start = _as_utc(start)
    end = _as_utc(end)
    now = _as_utc(now) if now is not None else datetime.now(tz=timezone.utc)

    if days_until(start, now) > threshold_days:
        return PaymentSchedule(
            pre_auth_date=start - timedelta(days=threshold_days),
            capture_date=end,
            should_pre_auth_now=False,
        )
    return PaymentSchedule(pre_auth_date=now, capture_date=end, should_pre_auth_now=True)
