"""Error types raised inside the payment core."""

from __future__ import annotations


class PaymentError(Exception):
    """Base class for payment failures surfaced to callers as ``{success: False}``."""


class PaymentValidationError(PaymentError):
    """Invalid input: missing metadata, bad amounts, unauthorized caller."""


class GatewayError(PaymentError):
    """
    A Stripe call failed. ``retryable`` marks rate-limit, connection and API
    errors that are worth retrying on the next worker pass.
    """

    def __init__(self, message: str, *, retryable: bool = False, code: str | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.code = code


class GatewayConfigurationError(GatewayError):
    """Stripe credentials are missing, invalid or unauthorized."""


class LedgerError(PaymentError):
    """A booking payment row is missing or cannot be written."""


class CancellationError(PaymentError):
    """
    The cancellation-fee protocol stopped part way through. ``completed_steps``
    lists what already happened on Stripe so staff can reconcile by hand.
    """

    def __init__(self, message: str, *, completed_steps: list[str] | None = None):
        super().__init__(message)
        self.completed_steps = completed_steps or []
