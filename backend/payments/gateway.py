"""
Stripe operations used by the payment core.

Amounts cross this boundary as integer cents. When Stripe is stubbed (no key
configured or ``STRIPE_USE_STUB``) the gateway returns predictable stand-in
objects so the booking flow can run locally without network access.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Optional
from uuid import uuid4

import stripe
from django.conf import settings

from .exceptions import GatewayConfigurationError, GatewayError

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSessionStub:
    id: str
    url: str
    mode: str
    payment_intent: Optional[str] = None
    setup_intent: Optional[str] = None
    customer: Optional[str] = None
    status: str = "open"
    payment_status: str = "unpaid"
    metadata: dict = field(default_factory=dict)


@dataclass
class PaymentIntentStub:
    id: str
    amount: int
    status: str
    amount_capturable: int = 0
    amount_received: int = 0
    customer: Optional[str] = None
    payment_method: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class RefundStub:
    id: str
    amount: int
    payment_intent: str
    status: str = "succeeded"
    metadata: dict = field(default_factory=dict)


@dataclass
class AccountStub:
    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    email: str = ""


@dataclass
class AccountLinkStub:
    url: str
    expires_at: int


def _stub_id(prefix: str) -> str:
    return f"{prefix}_test_{uuid4().hex}"


def _map_stripe_error(exc: stripe.StripeError) -> GatewayError:
    """Translate a Stripe SDK error into a ``GatewayError``."""
    code = getattr(exc, "code", None)
    user_message = getattr(exc, "user_message", None)
    if isinstance(exc, stripe.CardError):
        return GatewayError(user_message or "Your card was declined.", code=code)
    if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)):
        return GatewayError("Temporary Stripe error, please retry.", retryable=True, code=code)
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return GatewayConfigurationError("Stripe credentials are invalid or unauthorized.", code=code)
    if isinstance(exc, stripe.InvalidRequestError):
        return GatewayError(user_message or str(exc) or "Invalid payment request.", code=code)
    return GatewayError(user_message or "Stripe payment failure.", code=code)


class ProcessorGateway:
    def __init__(
        self,
        *,
        api_key: str = "",
        use_stub: bool = False,
        currency: str = "usd",
        max_network_retries: int = 2,
        timeout_seconds: int = 10,
        frontend_url: str = "",
    ):
        self.api_key = api_key
        self.use_stub = use_stub or not api_key
        self.currency = currency
        self.frontend_url = frontend_url.rstrip("/")
        if not self.use_stub:
            stripe.max_network_retries = max_network_retries
            stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    @classmethod
    def from_settings(cls) -> "ProcessorGateway":
        return cls(
            api_key=getattr(settings, "STRIPE_SECRET_KEY", "") or "",
            use_stub=getattr(settings, "STRIPE_USE_STUB", False),
            currency=getattr(settings, "STRIPE_CURRENCY", "usd"),
            max_network_retries=getattr(settings, "STRIPE_MAX_NETWORK_RETRIES", 2),
            timeout_seconds=getattr(settings, "STRIPE_TIMEOUT_SECONDS", 10),
            frontend_url=getattr(settings, "FRONTEND_URL", ""),
        )

    def _call(self, operation: str, func, *args, **params):
        try:
            return func(*args, api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            error = _map_stripe_error(exc)
            logger.warning("Stripe %s failed: %s", operation, exc)
            raise error from exc

    # Customers

    def create_customer(self, *, email: str, name: str = "", metadata: Optional[dict] = None) -> str:
        if self.use_stub:
            return _stub_id("cus")
        customer = self._call(
            "customer.create",
            stripe.Customer.create,
            email=email or None,
            name=name or None,
            metadata=metadata or {},
        )
        return customer.id

    # Checkout

    def create_checkout_session(
        self,
        *,
        mode: str,
        amount_cents: int,
        product_name: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, Any],
        destination: Optional[str] = None,
        transfer_amount_cents: int = 0,
        customer_id: Optional[str] = None,
        capture_method: Optional[str] = None,
        setup_future_usage: bool = False,
        submit_message: str = "",
    ):
        """
        Create a Checkout session in ``payment`` or ``setup`` mode.

        Payment mode charges ``amount_cents`` and routes ``transfer_amount_cents``
        to the professional's connected account. Setup mode only saves a card.
        """
        if amount_cents < 0:
            raise GatewayError("Checkout amount cannot be negative.")
        metadata = {key: str(value) for key, value in metadata.items() if value is not None}

        if self.use_stub:
            session_id = _stub_id("cs")
            return CheckoutSessionStub(
                id=session_id,
                url=f"{self.frontend_url}/payments/preview?session={session_id}&amount={amount_cents}",
                mode=mode,
                payment_intent=_stub_id("pi") if mode == "payment" else None,
                setup_intent=_stub_id("seti") if mode == "setup" else None,
                customer=customer_id,
                metadata=metadata,
            )

        params: dict[str, Any] = {
            "mode": mode,
            "payment_method_types": ["card"],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_id:
            params["customer"] = customer_id

        if mode == "setup":
            params["currency"] = self.currency
            setup_intent_data: dict[str, Any] = {"metadata": metadata}
            if destination:
                setup_intent_data["on_behalf_of"] = destination
            params["setup_intent_data"] = setup_intent_data
            if submit_message:
                params["custom_text"] = {"submit": {"message": submit_message}}
        else:
            params["line_items"] = [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": amount_cents,
                        "product_data": {"name": product_name},
                    },
                }
            ]
            payment_intent_data: dict[str, Any] = {"metadata": metadata}
            if destination and transfer_amount_cents > 0:
                payment_intent_data["transfer_data"] = {
                    "amount": transfer_amount_cents,
                    "destination": destination,
                }
                payment_intent_data["on_behalf_of"] = destination
            if capture_method == "manual":
                payment_intent_data["capture_method"] = "manual"
            if setup_future_usage:
                payment_intent_data["setup_future_usage"] = "off_session"
            params["payment_intent_data"] = payment_intent_data
            if submit_message:
                params["custom_text"] = {"submit": {"message": submit_message}}

        return self._call("checkout.session.create", stripe.checkout.Session.create, **params)

    def retrieve_checkout_session(self, session_id: str):
        if self.use_stub:
            return CheckoutSessionStub(id=session_id, url="", mode="payment", status="complete")
        return self._call(
            "checkout.session.retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["payment_intent", "setup_intent"],
        )

    def expire_checkout_session(self, session_id: str):
        if self.use_stub:
            return CheckoutSessionStub(id=session_id, url="", mode="payment", status="expired")
        return self._call("checkout.session.expire", stripe.checkout.Session.expire, session_id)

    # Payment intents

    def create_uncaptured_payment_intent(
        self,
        *,
        amount_cents: int,
        customer_id: str,
        payment_method_id: str,
        metadata: dict[str, Any],
        destination: Optional[str] = None,
        transfer_amount_cents: int = 0,
        description: str = "",
        idempotency_key: Optional[str] = None,
    ):
        """Place an off-session authorization hold on a saved card."""
        return self._create_off_session_intent(
            amount_cents=amount_cents,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            metadata=metadata,
            destination=destination,
            transfer_amount_cents=transfer_amount_cents,
            description=description,
            idempotency_key=idempotency_key,
            capture_method="manual",
        )

    def create_off_session_charge(
        self,
        *,
        amount_cents: int,
        customer_id: str,
        payment_method_id: str,
        metadata: dict[str, Any],
        destination: Optional[str] = None,
        transfer_amount_cents: int = 0,
        description: str = "",
        idempotency_key: Optional[str] = None,
    ):
        """Charge a saved card immediately; used for tips and cancellation fees."""
        return self._create_off_session_intent(
            amount_cents=amount_cents,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            metadata=metadata,
            destination=destination,
            transfer_amount_cents=transfer_amount_cents,
            description=description,
            idempotency_key=idempotency_key,
            capture_method="automatic",
        )

    def _create_off_session_intent(
        self,
        *,
        amount_cents: int,
        customer_id: str,
        payment_method_id: str,
        metadata: dict[str, Any],
        destination: Optional[str],
        transfer_amount_cents: int,
        description: str,
        capture_method: str,
        idempotency_key: Optional[str] = None,
    ):
        if amount_cents <= 0:
            raise GatewayError("Charge amount must be positive.")
        if not customer_id or not payment_method_id:
            raise GatewayError("A saved customer and payment method are required for off-session charges.")
        metadata = {key: str(value) for key, value in metadata.items() if value is not None}

        if self.use_stub:
            manual = capture_method == "manual"
            return PaymentIntentStub(
                id=_stub_id("pi"),
                amount=amount_cents,
                status="requires_capture" if manual else "succeeded",
                amount_capturable=amount_cents if manual else 0,
                amount_received=0 if manual else amount_cents,
                customer=customer_id,
                payment_method=payment_method_id,
                metadata=metadata,
            )

        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "off_session": True,
            "confirm": True,
            "capture_method": capture_method,
            "metadata": metadata,
        }
        if description:
            params["description"] = description
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        if destination and transfer_amount_cents > 0:
            params["transfer_data"] = {"amount": transfer_amount_cents, "destination": destination}
            params["on_behalf_of"] = destination
        return self._call("payment_intent.create", stripe.PaymentIntent.create, **params)

    def retrieve_payment_intent(self, payment_intent_id: str):
        if self.use_stub:
            return PaymentIntentStub(id=payment_intent_id, amount=0, status="requires_capture")
        return self._call("payment_intent.retrieve", stripe.PaymentIntent.retrieve, payment_intent_id)

    def capture_payment_intent(self, payment_intent_id: str, amount_to_capture: Optional[int] = None):
        if self.use_stub:
            return PaymentIntentStub(
                id=payment_intent_id,
                amount=amount_to_capture or 0,
                status="succeeded",
                amount_received=amount_to_capture or 0,
            )
        params: dict[str, Any] = {}
        if amount_to_capture is not None:
            params["amount_to_capture"] = amount_to_capture
        return self._call(
            "payment_intent.capture",
            stripe.PaymentIntent.capture,
            payment_intent_id,
            **params,
        )

    def partial_capture(self, payment_intent_id: str, amount_cents: int):
        """Capture part of a hold; Stripe releases the rest back to the payer."""
        if amount_cents <= 0:
            raise GatewayError("Partial capture amount must be positive.")
        return self.capture_payment_intent(payment_intent_id, amount_to_capture=amount_cents)

    def cancel_payment_intent(self, payment_intent_id: str, reason: str = "requested_by_customer"):
        if self.use_stub:
            return PaymentIntentStub(id=payment_intent_id, amount=0, status="canceled")
        return self._call(
            "payment_intent.cancel",
            stripe.PaymentIntent.cancel,
            payment_intent_id,
            cancellation_reason=reason,
        )

    def retrieve_setup_intent(self, setup_intent_id: str):
        if self.use_stub:
            return PaymentIntentStub(id=setup_intent_id, amount=0, status="succeeded")
        return self._call("setup_intent.retrieve", stripe.SetupIntent.retrieve, setup_intent_id)

    # Refunds

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
        reverse_transfer: bool = True,
    ):
        """
        Refund a captured intent. Destination charges pull the professional's
        share back with ``reverse_transfer``; the platform fee is not refunded.
        """
        if amount_cents is not None and amount_cents <= 0:
            raise GatewayError("Refund amount must be positive.")
        metadata = {key: str(value) for key, value in (metadata or {}).items() if value is not None}
        if self.use_stub:
            return RefundStub(
                id=_stub_id("re"),
                amount=amount_cents or 0,
                payment_intent=payment_intent_id,
                metadata=metadata,
            )
        params: dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "metadata": metadata,
            "reverse_transfer": reverse_transfer,
        }
        if amount_cents is not None:
            params["amount"] = amount_cents
        return self._call("refund.create", stripe.Refund.create, **params)

    # Connected accounts

    def create_connected_account(self, *, email: str = ""):
        if self.use_stub:
            return AccountStub(id=_stub_id("acct"), email=email)
        return self._call(
            "account.create",
            stripe.Account.create,
            type="express",
            email=email or None,
        )

    def retrieve_account(self, account_id: str):
        if self.use_stub:
            return AccountStub(id=account_id)
        return self._call("account.retrieve", stripe.Account.retrieve, account_id)

    def create_account_link(self, *, account_id: str, refresh_url: str, return_url: str):
        if self.use_stub:
            expires_at = datetime.now(tz=timezone.utc) + timedelta(minutes=5)
            return AccountLinkStub(
                url=f"{self.frontend_url}/stripe/onboarding-preview?account={account_id}",
                expires_at=int(expires_at.timestamp()),
            )
        return self._call(
            "account_link.create",
            stripe.AccountLink.create,
            account=account_id,
            type="account_onboarding",
            refresh_url=refresh_url,
            return_url=return_url,
        )

    # Webhooks

    @staticmethod
    def construct_event(payload: bytes, sig_header: str, secret: str):
        """
        Verify the signature header. Raises ``ValueError`` for a malformed
        payload and ``stripe.SignatureVerificationError`` for a bad signature.
        """
        return stripe.Webhook.construct_event(payload, sig_header, secret)


@lru_cache(maxsize=1)
def get_gateway() -> ProcessorGateway:
    return ProcessorGateway.from_settings()
