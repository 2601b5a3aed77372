"""
Stripe webhook state machine.

Each event type maps to one handler. Stripe delivers at least once and in no
particular order, so every handler relies on the ledger's conditional
transitions and is safe to re-run. Side effects (emails, activity, cache,
support messages) run after the ledger write and never fail the event.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any, Callable, Optional

from django.core.cache import cache
from django.core.exceptions import ImproperlyConfigured
from django.utils import timezone

from bookings.models import Booking
from bookings.services import lifecycle
from bookings.services.cleanup import delete_booking_and_related_records
from core.activity import track_activity
from core.models import ActivityEvent
from professionals import connect
from professionals.models import ProfessionalProfile
from subscriptions import services as subscription_services
from support import services as support_services

from ..emails import PaymentEmailService
from ..exceptions import GatewayError
from ..gateway import ProcessorGateway, get_gateway
from ..ledger import PaymentLedger, from_cents, to_cents
from ..models import BookingPayment
from ..refunds import RefundService
from . import events
from .resolution import ResolvedPayment, payment_intent_id_of, resolve_by_metadata, resolve_payment

logger = logging.getLogger(__name__)

Handler = Callable[[dict, dict], None]

# Manual-capture holds expire after seven days on Stripe.
AUTHORIZATION_WINDOW = timedelta(days=7)


def booking_cache_keys(booking_id: int) -> list[str]:
    return [f"booking:{booking_id}", f"booking-payment:{booking_id}", "bookings:list"]


def revalidate_booking(booking_id: int) -> None:
    cache.delete_many(booking_cache_keys(booking_id))


class WebhookProcessor:
    def __init__(
        self,
        *,
        ledger: PaymentLedger,
        gateway: ProcessorGateway,
        refunds: RefundService,
        emails: PaymentEmailService,
        track: Callable[..., Any] = track_activity,
        subscriptions=subscription_services,
        support=support_services,
        connect_sync=connect,
        revalidate: Callable[[int], None] = revalidate_booking,
        delete_booking: Callable[[int], bool] = delete_booking_and_related_records,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.refunds = refunds
        self.emails = emails
        self.track = track
        self.subscriptions = subscriptions
        self.support = support
        self.connect = connect_sync
        self.revalidate = revalidate
        self.delete_booking = delete_booking

        self.handlers: dict[str, Handler] = {
            events.CHECKOUT_SESSION_COMPLETED: self.handle_checkout_completed,
            events.CHECKOUT_SESSION_EXPIRED: self.handle_checkout_expired,
            events.PAYMENT_INTENT_REQUIRES_ACTION: self.handle_requires_action,
            events.PAYMENT_INTENT_PAYMENT_FAILED: self.handle_payment_failed,
            events.PAYMENT_INTENT_CANCELED: self.handle_payment_canceled,
            events.PAYMENT_INTENT_SUCCEEDED: self.handle_captured,
            events.PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED: self.handle_amount_capturable,
            events.CHARGE_SUCCEEDED: self.handle_captured,
            events.CHARGE_CAPTURED: self.handle_captured,
            events.CHARGE_REFUNDED: self.handle_refunded,
            events.CHARGE_DISPUTE_CREATED: self.handle_refunded,
            events.REFUND_CREATED: self.handle_refund_event,
            events.REFUND_UPDATED: self.handle_refund_event,
            events.REFUND_FAILED: self.handle_refund_event,
            events.SETUP_INTENT_SUCCEEDED: self.handle_setup_succeeded,
            events.SETUP_INTENT_SETUP_FAILED: self.handle_setup_failed,
            events.ACCOUNT_UPDATED: self.handle_account_event,
            events.CAPABILITY_UPDATED: self.handle_account_event,
            events.PERSON_UPDATED: self.handle_account_event,
            events.PRICE_UPDATED: self.handle_price_updated,
        }
        missing = events.KNOWN_EVENT_TYPES - set(self.handlers)
        if missing:
            raise ImproperlyConfigured(f"No webhook handler registered for: {', '.join(sorted(missing))}")

    # Dispatch

    def process(self, event: dict) -> bool:
        """
        Dispatch one verified event. Returns False for event types we do not
        handle. Handler exceptions propagate so Stripe retries the delivery.
        """
        event_type = event.get("type", "")
        event_id = event.get("id", "")
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring unhandled Stripe event %s (%s)", event_type, event_id)
            return False

        obj = (event.get("data") or {}).get("object") or {}
        booking_id = (obj.get("metadata") or {}).get("booking_id")
        logger.info("Processing Stripe event %s (%s) booking=%s", event_type, event_id, booking_id)
        try:
            handler(obj, event)
        except Exception as exc:
            logger.error(
                "Stripe event %s (%s) failed for booking %s: %s",
                event_type,
                event_id,
                booking_id,
                exc,
            )
            raise
        return True

    # Helpers

    def _resolve(self, obj: dict, event: dict, *, fetch_intent: bool = False) -> Optional[ResolvedPayment]:
        resolved = resolve_payment(obj, self.ledger)
        if resolved is None and fetch_intent:
            resolved = self._resolve_via_intent(obj)
        if resolved is None:
            logger.info(
                "No booking payment found for %s (%s); nothing to do",
                event.get("type"),
                payment_intent_id_of(obj) or obj.get("id"),
            )
        return resolved

    def _resolve_via_intent(self, obj: dict) -> Optional[ResolvedPayment]:
        """
        Charges and disputes may carry no metadata and may arrive before the
        checkout handler stored the intent id. The intent itself has the
        booking metadata our checkout put there.
        """
        intent_id = payment_intent_id_of(obj)
        if not intent_id or obj.get("object") == "payment_intent":
            return None
        intent = self.gateway.retrieve_payment_intent(intent_id)
        metadata = dict(_value(intent, "metadata") or {})
        if metadata.get("charge_kind") in events.ANCILLARY_CHARGE_KINDS:
            return None
        return resolve_by_metadata({"metadata": metadata}, self.ledger)

    @staticmethod
    def _is_ancillary(obj: dict) -> bool:
        kind = (obj.get("metadata") or {}).get("charge_kind")
        return kind in events.ANCILLARY_CHARGE_KINDS

    def _best_effort(self, description: str, func: Callable, *args, **kwargs) -> None:
        try:
            func(*args, **kwargs)
        except Exception:
            logger.exception("Non-fatal webhook side effect failed: %s", description)

    def _send_confirmations(self, payment_id: int, *, is_uncaptured: bool = False) -> None:
        self._best_effort(
            f"confirmation emails for payment {payment_id}",
            self.emails.send_booking_confirmations,
            payment_id,
            is_uncaptured=is_uncaptured,
        )

    def _fail_or_delete(self, resolved: ResolvedPayment, *, cancel_booking: bool = False) -> None:
        """
        Free the slot of a booking that never got paid. When the booking is
        already past ``pending_payment`` (or deletion fails) the payment is
        marked failed instead, so nothing is left silently pending.
        """
        is_unpaid = Booking.objects.filter(
            pk=resolved.booking_id, status=Booking.PENDING_PAYMENT
        ).exists()
        if is_unpaid:
            try:
                if self.delete_booking(resolved.booking_id):
                    self._best_effort("cache revalidation", self.revalidate, resolved.booking_id)
                    return
            except Exception:
                logger.exception(
                    "Could not delete unpaid booking %s; marking its payment failed",
                    resolved.booking_id,
                )
        self.ledger.mark_failed(resolved.payment_id)
        if cancel_booking:
            lifecycle.cancel_booking(resolved.booking_id, "Payment was canceled")
        self._best_effort("cache revalidation", self.revalidate, resolved.booking_id)

    # Checkout

    def handle_checkout_completed(self, session: dict, event: dict) -> None:
        metadata = session.get("metadata") or {}
        if session.get("mode") == "subscription" or (metadata.get("plan_id") and not metadata.get("booking_id")):
            self.subscriptions.handle_subscription_checkout(session)
            return

        resolved = self._resolve(session, event)
        if resolved is None:
            return
        payment = self.ledger.get(resolved.payment_id)
        if payment is None:
            return

        if session.get("mode") == "setup":
            self._complete_setup_session(session, payment)
        elif payment.payment_type == BookingPayment.TYPE_DEPOSIT:
            self._complete_deposit_session(session, payment)
        else:
            self._complete_hold_session(session, payment)
        self._best_effort("cache revalidation", self.revalidate, payment.booking_id)

    def _complete_setup_session(self, session: dict, payment: BookingPayment) -> None:
        setup_intent = session.get("setup_intent")
        if isinstance(setup_intent, str):
            setup_intent = self.gateway.retrieve_setup_intent(setup_intent)
        payment_method = _value(setup_intent, "payment_method")
        customer = session.get("customer") or _value(setup_intent, "customer")
        if not payment_method:
            logger.warning("Setup session %s completed without a payment method", session.get("id"))
            return
        self._complete_setup(payment.pk, payment.booking_id, _id_of(payment_method), _id_of(customer))

    def _complete_deposit_session(self, session: dict, payment: BookingPayment) -> None:
        intent_id = _id_of(session.get("payment_intent"))
        if not intent_id:
            logger.warning("Deposit session %s has no payment intent", session.get("id"))
            return
        intent = self.gateway.retrieve_payment_intent(intent_id)
        payment_method = _id_of(_value(intent, "payment_method"))
        customer = _id_of(session.get("customer") or _value(intent, "customer"))

        self.ledger.record_deposit_captured(
            payment.pk,
            payment_intent_id=intent_id,
            payment_method_id=payment_method or "",
            customer_id=customer or "",
        )
        payment.refresh_from_db()

        if not payment.requires_balance_payment or not payment.is_online_payment:
            self.ledger.mark_deposit_fully_paid(payment.pk)
        elif payment.pre_auth_scheduled_for is None and payment.pre_auth_placed_at is None:
            try:
                self._place_balance_hold(payment, customer, payment_method)
            except GatewayError as exc:
                if exc.retryable:
                    raise
                logger.error("Balance hold for booking %s declined: %s", payment.booking_id, exc)

        if lifecycle.confirm_booking(payment.booking_id):
            self._best_effort(
                "activity tracking",
                self.track,
                event_type=ActivityEvent.BOOKING_COMPLETED,
                user_id=payment.booking.client_id,
                booking_id=payment.booking_id,
                metadata={"payment_flow": payment.payment_flow},
            )
        self._send_confirmations(payment.pk)

    def _place_balance_hold(self, payment: BookingPayment, customer: Optional[str], payment_method: Optional[str]) -> None:
        """Near-term deposit bookings hold the balance right after the deposit."""
        balance_cents = to_cents(payment.balance_amount)
        if balance_cents <= 0:
            return
        intent = self.gateway.create_uncaptured_payment_intent(
            amount_cents=balance_cents,
            customer_id=customer or payment.stripe_customer_id,
            payment_method_id=payment_method or payment.stripe_payment_method_id,
            destination=payment.booking.professional.stripe_account_id,
            transfer_amount_cents=balance_cents,
            description=f"Balance for booking #{payment.booking_id}",
            metadata={"booking_id": payment.booking_id, "charge_kind": "balance_hold"},
            idempotency_key=f"balance-hold-{payment.pk}",
        )
        self.ledger.mark_authorized(
            payment.pk,
            payment_intent_id=intent.id,
            amount_cents=balance_cents,
            authorization_expires_at=timezone.now() + AUTHORIZATION_WINDOW,
        )

    def _complete_hold_session(self, session: dict, payment: BookingPayment) -> None:
        intent_id = _id_of(session.get("payment_intent"))
        if not intent_id:
            logger.warning("Checkout session %s has no payment intent", session.get("id"))
            return
        customer = _id_of(session.get("customer"))
        if customer:
            self.ledger.attach_checkout_session(payment.pk, session.get("id") or payment.stripe_checkout_session_id, customer)

        if payment.capture_method == BookingPayment.CAPTURE_MANUAL:
            self.ledger.mark_authorized(
                payment.pk,
                payment_intent_id=intent_id,
                authorization_expires_at=timezone.now() + AUTHORIZATION_WINDOW,
            )
        else:
            self.ledger.mark_captured(payment.pk, payment_intent_id=intent_id)

        if lifecycle.confirm_booking(payment.booking_id):
            self._best_effort(
                "activity tracking",
                self.track,
                event_type=ActivityEvent.BOOKING_COMPLETED,
                user_id=payment.booking.client_id,
                booking_id=payment.booking_id,
                metadata={"payment_flow": payment.payment_flow},
            )
        self._send_confirmations(payment.pk, is_uncaptured=payment.capture_method == BookingPayment.CAPTURE_MANUAL)

    def handle_checkout_expired(self, session: dict, event: dict) -> None:
        if session.get("mode") == "subscription":
            return
        resolved = self._resolve(session, event)
        if resolved is None:
            return
        self._fail_or_delete(resolved)

    # Payment intents

    def handle_requires_action(self, intent: dict, event: dict) -> None:
        if self._is_ancillary(intent):
            return
        resolved = self._resolve(intent, event)
        if resolved:
            self.ledger.mark_pending(resolved.payment_id)

    def handle_payment_failed(self, intent: dict, event: dict) -> None:
        if self._is_ancillary(intent):
            logger.warning(
                "Off-session %s charge failed for booking %s",
                (intent.get("metadata") or {}).get("charge_kind"),
                (intent.get("metadata") or {}).get("booking_id"),
            )
            return
        resolved = self._resolve(intent, event)
        if resolved:
            self._fail_or_delete(resolved)

    def handle_payment_canceled(self, intent: dict, event: dict) -> None:
        if self._is_ancillary(intent):
            return
        resolved = self._resolve(intent, event)
        if resolved:
            self._fail_or_delete(resolved, cancel_booking=True)

    def handle_amount_capturable(self, intent: dict, event: dict) -> None:
        if intent.get("status") != "requires_capture" or self._is_ancillary(intent):
            return
        resolved = self._resolve(intent, event)
        if resolved:
            self._send_confirmations(resolved.payment_id, is_uncaptured=True)

    def handle_captured(self, obj: dict, event: dict) -> None:
        """
        ``payment_intent.succeeded``, ``charge.succeeded`` and ``charge.captured``.
        Dashboard captures carry no metadata, so the processor id lookup matters.
        """
        if obj.get("object") == "charge" and not obj.get("captured", True):
            # charge.succeeded also fires when a manual-capture hold is placed.
            return
        if self._is_ancillary(obj):
            return
        resolved = self._resolve(obj, event, fetch_intent=True)
        if resolved is None:
            return
        payment = self.ledger.get(resolved.payment_id)
        if payment is None:
            return

        intent_id = payment_intent_id_of(obj)
        if payment.payment_type == BookingPayment.TYPE_DEPOSIT and intent_id and intent_id != payment.stripe_payment_intent_id:
            # The deposit charge, not the balance hold.
            self.ledger.record_deposit_captured(payment.pk, payment_intent_id=intent_id)
            return

        if payment.status == BookingPayment.COMPLETED and payment.captured_at is not None:
            logger.info("Payment %s already captured; skipping duplicate %s", payment.pk, event.get("type"))
            return

        amount = obj.get("amount_received") if obj.get("object") == "payment_intent" else obj.get("amount_captured")
        if not self.ledger.mark_captured(payment.pk, amount_cents=amount or None, payment_intent_id=intent_id or ""):
            return

        lifecycle.confirm_booking(payment.booking_id)
        self._best_effort(
            "activity tracking",
            self.track,
            event_type=ActivityEvent.PAYMENT_CAPTURED,
            user_id=payment.booking.client_id,
            booking_id=payment.booking_id,
            metadata={"payment_intent_id": intent_id, "amount_cents": amount},
        )
        self._send_confirmations(payment.pk)
        self._best_effort(f"receipt for payment {payment.pk}", self.emails.send_payment_receipt, payment.pk)
        self._best_effort("cache revalidation", self.revalidate, payment.booking_id)

    # Refunds and disputes

    def handle_refunded(self, obj: dict, event: dict) -> None:
        if self._is_ancillary(obj):
            return
        resolved = self._resolve(obj, event, fetch_intent=True)
        if resolved is None:
            return

        if event.get("type") == events.CHARGE_DISPUTE_CREATED:
            refunded_cents = int(obj.get("amount") or 0)
            reason = f"Dispute: {obj.get('reason') or 'unspecified'}"
            transaction_id = obj.get("id") or ""
        else:
            refunded_cents = int(obj.get("amount_refunded") or 0)
            reason = "Refunded via Stripe"
            refunds = (obj.get("refunds") or {}).get("data") or []
            transaction_id = refunds[0].get("id", "") if refunds else ""

        if not self.ledger.mark_refunded(
            resolved.payment_id,
            refunded_amount_cents=refunded_cents,
            reason=reason,
            refund_transaction_id=transaction_id,
        ):
            logger.info("Payment %s refund already recorded", resolved.payment_id)
            return

        booking_id = resolved.booking_id
        self._best_effort("booking cancellation", lifecycle.cancel_booking, booking_id, reason)
        self._best_effort(
            "support request resolution",
            self.support.resolve_support_requests_for_refund,
            booking_id,
            from_cents(refunded_cents),
        )
        self._best_effort("cache revalidation", self.revalidate, booking_id)

    def handle_refund_event(self, refund: dict, event: dict) -> None:
        record = self.refunds.handle_refund_event(event.get("type", ""), refund)
        if record is not None and record.status == record.SUCCEEDED and record.support_request_id:
            self._best_effort(
                "support page revalidation",
                self.support.revalidate_support_request,
                record.support_request_id,
            )

    # Setup intents

    def handle_setup_succeeded(self, setup_intent: dict, event: dict) -> None:
        metadata = setup_intent.get("metadata") or {}
        payment_method = _id_of(setup_intent.get("payment_method"))
        customer = _id_of(setup_intent.get("customer"))
        if not metadata.get("booking_id") or not payment_method or not customer:
            logger.warning(
                "Setup intent %s missing booking, customer or payment method",
                setup_intent.get("id"),
            )
            return
        resolved = self._resolve(setup_intent, event)
        if resolved is None:
            return
        self._complete_setup(resolved.payment_id, resolved.booking_id, payment_method, customer)

    def _complete_setup(self, payment_id: int, booking_id: int, payment_method: str, customer: Optional[str]) -> None:
        self.ledger.save_payment_method(payment_id, payment_method_id=payment_method, customer_id=customer or "")
        self.ledger.mark_pending(payment_id)
        if lifecycle.confirm_booking(booking_id):
            client_id = Booking.objects.filter(pk=booking_id).values_list("client_id", flat=True).first()
            self._best_effort(
                "activity tracking",
                self.track,
                event_type=ActivityEvent.BOOKING_COMPLETED,
                user_id=client_id,
                booking_id=booking_id,
                metadata={"payment_method_saved": True},
            )
        self._send_confirmations(payment_id)
        self._best_effort("cache revalidation", self.revalidate, booking_id)

    def handle_setup_failed(self, setup_intent: dict, event: dict) -> None:
        error = (setup_intent.get("last_setup_error") or {}).get("message", "unknown error")
        logger.warning(
            "Card setup failed for booking %s: %s; booking left unchanged",
            (setup_intent.get("metadata") or {}).get("booking_id"),
            error,
        )

    # Connected accounts

    def handle_account_event(self, obj: dict, event: dict) -> None:
        if event.get("type") == events.ACCOUNT_UPDATED:
            account_id = obj.get("id")
            account = obj
        else:
            account_id = obj.get("account") or event.get("account")
            account = None

        profile = None
        if account_id:
            profile = ProfessionalProfile.objects.filter(stripe_account_id=account_id).first()
        if profile is None:
            profile_id = (obj.get("metadata") or {}).get("professional_profile_id")
            if profile_id:
                profile = ProfessionalProfile.objects.filter(pk=profile_id).first()
        if profile is None:
            logger.info("No professional linked to Stripe account %s", account_id)
            return

        try:
            if account is None:
                account = self.gateway.retrieve_account(profile.stripe_account_id)
            became_complete = self.connect.sync_profile_from_stripe_account(profile, account)
        except GatewayError as exc:
            logger.error("Could not refresh Stripe account %s: %s", account_id, exc)
            self._best_effort("webhook heartbeat", self.connect.record_webhook_heartbeat, profile, str(exc))
            return

        self._best_effort("webhook heartbeat", self.connect.record_webhook_heartbeat, profile)
        if became_complete:
            self._best_effort("service resync", self.connect.request_service_resync, profile)

    # Subscriptions

    def handle_price_updated(self, price: dict, event: dict) -> None:
        self.subscriptions.update_plan_price(price)


def _value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _value(value, "id")


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    ledger = PaymentLedger()
    gateway = get_gateway()
    return WebhookProcessor(
        ledger=ledger,
        gateway=gateway,
        refunds=RefundService(ledger=ledger, gateway=gateway),
        emails=PaymentEmailService(ledger=ledger),
    )
