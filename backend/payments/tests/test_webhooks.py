from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from django.core.cache import cache
from django.utils import timezone

from bookings.models import Booking
from core.models import ActivityEvent
from payments import workers
from payments.emails import PaymentEmailService, reset_sent_cache
from payments.exceptions import GatewayError
from payments.ledger import PaymentLedger
from payments.models import BookingPayment, Refund
from payments.refunds import RefundService
from payments.webhooks import WebhookProcessor
from payments.webhooks import events
from professionals.models import ProfessionalProfile
from subscriptions.models import Subscription, SubscriptionPlan
from support.models import Conversation, Message, SupportRequest


def build_processor(gateway, **overrides):
    ledger = PaymentLedger()
    options = {
        "ledger": ledger,
        "gateway": gateway,
        "refunds": RefundService(ledger=ledger, gateway=gateway),
        "emails": PaymentEmailService(ledger=ledger),
    }
    options.update(overrides)
    return WebhookProcessor(**options)


@pytest.fixture
def processor(fake_gateway):
    return build_processor(fake_gateway)


def event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def checkout_completed(booking, **fields):
    session = {
        "id": f"cs_{booking.pk}",
        "object": "checkout.session",
        "mode": "payment",
        "payment_intent": f"pi_hold_{booking.pk}",
        "customer": "cus_1",
        "metadata": {"booking_id": str(booking.pk)},
    }
    session.update(fields)
    return event(events.CHECKOUT_SESSION_COMPLETED, session)


def charge_captured(payment_intent_id, amount_cents=5100, **fields):
    charge = {
        "id": "ch_1",
        "object": "charge",
        "captured": True,
        "amount_captured": amount_cents,
        "payment_intent": payment_intent_id,
        "metadata": {},
    }
    charge.update(fields)
    return event(events.CHARGE_CAPTURED, charge)


def intent_event(event_type, booking, intent_id="pi_main", **metadata):
    return event(
        event_type,
        {
            "id": intent_id,
            "object": "payment_intent",
            "metadata": {"booking_id": str(booking.pk), **metadata},
        },
    )


def receipts(outbox):
    return [message for message in outbox if message.subject.startswith("Receipt")]


def test_unknown_event_types_are_ignored(processor):
    assert processor.process(event("customer.created", {"id": "cus_1"})) is False


def test_every_known_event_type_has_a_handler(processor):
    assert set(processor.handlers) == events.KNOWN_EVENT_TYPES


@pytest.mark.django_db
def test_checkout_completed_authorizes_and_confirms(processor, make_booking, make_payment, mailoutbox):
    booking = make_booking()
    payment = make_payment(booking)

    assert processor.process(checkout_completed(booking)) is True

    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.status == BookingPayment.AUTHORIZED
    assert payment.stripe_payment_intent_id == f"pi_hold_{booking.pk}"
    assert payment.stripe_customer_id == "cus_1"
    assert payment.authorization_expires_at > timezone.now() + timedelta(days=6)
    assert booking.status == Booking.CONFIRMED
    assert len(mailoutbox) == 2
    client_email = next(m for m in mailoutbox if m.to == ["client@example.com"])
    assert "hold of $51.00" in client_email.body
    assert client_email.from_email == "Parker Hair Studio via Suite <notifications@suite.test>"
    assert ActivityEvent.objects.filter(event_type=ActivityEvent.BOOKING_COMPLETED, booking=booking).count() == 1


@pytest.mark.django_db
def test_redelivered_checkout_sends_nothing_new(processor, make_booking, make_payment, mailoutbox):
    booking = make_booking()
    make_payment(booking)

    processor.process(checkout_completed(booking))
    processor.process(checkout_completed(booking))

    assert len(mailoutbox) == 2
    assert ActivityEvent.objects.filter(event_type=ActivityEvent.BOOKING_COMPLETED).count() == 1


@pytest.mark.django_db
def test_failing_email_does_not_fail_the_event(fake_gateway, make_booking, make_payment):
    class BrokenEmails:
        def send_booking_confirmations(self, *args, **kwargs):
            raise RuntimeError("smtp down")

    processor = build_processor(fake_gateway, emails=BrokenEmails())
    booking = make_booking()
    payment = make_payment(booking)

    assert processor.process(checkout_completed(booking)) is True

    payment.refresh_from_db()
    assert payment.status == BookingPayment.AUTHORIZED


@pytest.mark.django_db
def test_duplicate_capture_sends_one_receipt(fake_gateway, processor, make_booking, make_payment, mailoutbox):
    booking = make_booking(status=Booking.CONFIRMED)
    payment = make_payment(booking, status=BookingPayment.AUTHORIZED, stripe_payment_intent_id="pi_hold")

    processor.process(charge_captured("pi_hold"))
    payment.refresh_from_db()
    first_capture = payment.captured_at
    processor.process(charge_captured("pi_hold"))
    # A fresh worker process has no in-memory record of what was sent.
    reset_sent_cache()
    build_processor(fake_gateway).process(charge_captured("pi_hold"))

    payment.refresh_from_db()
    assert payment.status == BookingPayment.COMPLETED
    assert payment.captured_at == first_capture
    assert payment.amount == Decimal("51.00")
    assert len(receipts(mailoutbox)) == 1
    assert ActivityEvent.objects.filter(event_type=ActivityEvent.PAYMENT_CAPTURED).count() == 1


@pytest.mark.django_db
def test_dashboard_capture_resolves_by_payment_intent(fake_gateway, processor, make_booking, make_payment):
    booking = make_booking(status=Booking.CONFIRMED)
    payment = make_payment(booking, status=BookingPayment.AUTHORIZED, stripe_payment_intent_id="pi_dash")

    processor.process(charge_captured("pi_dash", amount_cents=4000))

    payment.refresh_from_db()
    assert payment.status == BookingPayment.COMPLETED
    assert payment.amount == Decimal("40.00")
    assert fake_gateway.calls_to("retrieve_payment_intent") == []


@pytest.mark.django_db
@pytest.mark.parametrize("capture_first", [False, True])
def test_delivery_order_does_not_change_final_state(fake_gateway, processor, make_booking, make_payment, capture_first):
    booking = make_booking()
    payment = make_payment(booking)
    intent_id = f"pi_hold_{booking.pk}"
    fake_gateway.intent_metadata[intent_id] = {"booking_id": str(booking.pk)}

    deliveries = [checkout_completed(booking), charge_captured(intent_id)]
    if capture_first:
        deliveries.reverse()
    for delivery in deliveries:
        processor.process(delivery)

    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.status == BookingPayment.COMPLETED
    assert payment.captured_at is not None
    assert payment.stripe_payment_intent_id == intent_id
    assert payment.amount == Decimal("51.00")
    assert payment.confirmation_sent_at is not None
    assert booking.status == Booking.CONFIRMED


@pytest.mark.django_db
def test_ancillary_intent_events_do_not_move_the_ledger(processor, make_booking, make_payment):
    booking = make_booking(status=Booking.CONFIRMED)
    payment = make_payment(booking, status=BookingPayment.AUTHORIZED, stripe_payment_intent_id="pi_main")

    processor.process(intent_event(events.PAYMENT_INTENT_SUCCEEDED, booking, "pi_tip", charge_kind="tip"))
    processor.process(
        intent_event(events.PAYMENT_INTENT_PAYMENT_FAILED, booking, "pi_fee", charge_kind="cancellation_fee")
    )

    payment.refresh_from_db()
    assert payment.status == BookingPayment.AUTHORIZED
    assert payment.captured_at is None


@pytest.mark.django_db
def test_uncaptured_charge_succeeded_is_not_a_capture(processor, make_booking, make_payment):
    booking = make_booking(status=Booking.CONFIRMED)
    payment = make_payment(booking, status=BookingPayment.AUTHORIZED, stripe_payment_intent_id="pi_hold")

    processor.process(event(events.CHARGE_SUCCEEDED, {"id": "ch_1", "object": "charge", "captured": False, "payment_intent": "pi_hold"}))

    payment.refresh_from_db()
    assert payment.status == BookingPayment.AUTHORIZED


@pytest.mark.django_db
def test_failed_payment_deletes_unpaid_booking(processor, make_booking, make_payment):
    booking = make_booking()
    make_payment(booking)

    processor.process(intent_event(events.PAYMENT_INTENT_PAYMENT_FAILED, booking))

    assert not Booking.objects.filter(pk=booking.pk).exists()
    assert not BookingPayment.objects.filter(booking_id=booking.pk).exists()


@pytest.mark.django_db
def test_failed_deletion_marks_payment_failed(fake_gateway, make_booking, make_payment):
    def broken_delete(booking_id):
        raise RuntimeError("database locked")

    processor = build_processor(fake_gateway, delete_booking=broken_delete)
    booking = make_booking()
    payment = make_payment(booking)

    processor.process(intent_event(events.PAYMENT_INTENT_PAYMENT_FAILED, booking))

    payment.refresh_from_db()
    assert payment.status == BookingPayment.FAILED
    assert Booking.objects.filter(pk=booking.pk).exists()


@pytest.mark.django_db
def test_expired_checkout_frees_the_slot(processor, make_booking, make_payment):
    booking = make_booking()
    make_payment(booking)

    processor.process(
        event(
            events.CHECKOUT_SESSION_EXPIRED,
            {"id": "cs_old", "object": "checkout.session", "mode": "payment", "metadata": {"booking_id": str(booking.pk)}},
        )
    )

    assert not Booking.objects.filter(pk=booking.pk).exists()


@pytest.mark.django_db
def test_failure_on_confirmed_booking_keeps_booking(processor, make_booking, make_payment):
    booking = make_booking(status=Booking.CONFIRMED)
    payment = make_payment(booking, status=BookingPayment.AUTHORIZED)

    processor.process(intent_event(events.PAYMENT_INTENT_PAYMENT_FAILED, booking))

    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.status == BookingPayment.FAILED
    assert booking.status == Booking.CONFIRMED


@pytest.mark.django_db
def test_canceled_intent_cancels_confirmed_booking(processor, make_booking, make_payment):
    booking = make_booking(status=Booking.CONFIRMED)
    payment = make_payment(booking, status=BookingPayment.AUTHORIZED)

    processor.process(intent_event(events.PAYMENT_INTENT_CANCELED, booking))

    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.status == BookingPayment.FAILED
    assert booking.status == Booking.CANCELLED
    assert booking.cancellation_reason == "Payment was canceled"


def deposit_payment(make_payment, booking, **overrides):
    fields = {
        "amount": Decimal("100.00"),
        "deposit_amount": Decimal("20.80"),
        "balance_amount": Decimal("79.20"),
        "payment_type": BookingPayment.TYPE_DEPOSIT,
        "capture_method": BookingPayment.CAPTURE_AUTOMATIC,
        "requires_balance_payment": True,
        "payment_flow": BookingPayment.FLOW_DEPOSIT_IMMEDIATE,
    }
    fields.update(overrides)
    return make_payment(booking, **fields)


@pytest.mark.django_db
def test_near_term_deposit_holds_the_balance(fake_gateway, processor, make_booking, make_payment):
    booking = make_booking(total="100.00")
    payment = deposit_payment(make_payment, booking)

    processor.process(checkout_completed(booking, payment_intent="pi_deposit"))

    hold_call = fake_gateway.calls_to("create_uncaptured_payment_intent")[0]
    assert hold_call["amount_cents"] == 7920
    assert hold_call["payment_method_id"] == "pm_card_saved"
    assert hold_call["idempotency_key"] == f"balance-hold-{payment.pk}"
    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.status == BookingPayment.AUTHORIZED
    assert payment.amount == Decimal("79.20")
    assert payment.deposit_payment_intent_id == "pi_deposit"
    assert payment.deposit_captured_at is not None
    assert payment.stripe_payment_intent_id.startswith("pi_fake_")
    assert booking.status == Booking.CONFIRMED


@pytest.mark.django_db
def test_deposit_intent_success_only_records_the_deposit(fake_gateway, processor, make_booking, make_payment):
    booking = make_booking(total="100.00")
    payment = deposit_payment(make_payment, booking)
    processor.process(checkout_completed(booking, payment_intent="pi_deposit"))

    processor.process(intent_event(events.PAYMENT_INTENT_SUCCEEDED, booking, "pi_deposit"))

    payment.refresh_from_db()
    assert payment.status == BookingPayment.AUTHORIZED
    assert payment.captured_at is None


@pytest.mark.django_db
def test_deposit_covering_everything_completes_payment(processor, make_booking, make_payment):
    booking = make_booking(total="20.80")
    payment = deposit_payment(
        make_payment,
        booking,
        amount=Decimal("20.80"),
        balance_amount=Decimal("0.00"),
        requires_balance_payment=False,
    )

    processor.process(checkout_completed(booking, payment_intent="pi_deposit"))

    payment.refresh_from_db()
    assert payment.status == BookingPayment.COMPLETED
    assert payment.captured_at is not None


@pytest.mark.django_db
def test_retryable_balance_hold_failure_fails_the_event(fake_gateway, processor, make_booking, make_payment):
    fake_gateway.fail_on["create_uncaptured_payment_intent"] = GatewayError("timeout", retryable=True)
    booking = make_booking(total="100.00")
    deposit_payment(make_payment, booking)

    with pytest.raises(GatewayError):
        processor.process(checkout_completed(booking, payment_intent="pi_deposit"))


@pytest.mark.django_db
def test_declined_balance_hold_still_confirms(fake_gateway, processor, make_booking, make_payment):
    fake_gateway.fail_on["create_uncaptured_payment_intent"] = GatewayError("card declined", code="card_declined")
    booking = make_booking(total="100.00")
    payment = deposit_payment(make_payment, booking)

    processor.process(checkout_completed(booking, payment_intent="pi_deposit"))

    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.status == BookingPayment.PENDING
    assert payment.deposit_captured_at is not None
    assert booking.status == Booking.CONFIRMED


def scheduled_deposit_payment(make_payment, booking, **overrides):
    fields = {
        "payment_flow": BookingPayment.FLOW_DEPOSIT_SCHEDULED,
        "pre_auth_scheduled_for": timezone.now() - timedelta(minutes=1),
    }
    fields.update(overrides)
    return deposit_payment(make_payment, booking, **fields)


@pytest.mark.django_db
@pytest.mark.parametrize("charge_first", [False, True])
def test_far_term_deposit_keeps_the_card_in_any_delivery_order(
    fake_gateway, processor, make_booking, make_payment, charge_first
):
    booking = make_booking(total="100.00", days_out=10)
    payment = scheduled_deposit_payment(make_payment, booking)
    fake_gateway.intent_metadata["pi_deposit"] = {"booking_id": str(booking.pk)}
    deposit_charge = charge_captured("pi_deposit", amount_cents=2080)["data"]["object"]

    deliveries = [
        checkout_completed(booking, payment_intent="pi_deposit"),
        event(events.CHARGE_SUCCEEDED, deposit_charge, event_id="evt_2"),
    ]
    if charge_first:
        deliveries.reverse()
    for delivery in deliveries:
        processor.process(delivery)

    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.deposit_payment_intent_id == "pi_deposit"
    assert payment.deposit_captured_at is not None
    assert payment.stripe_payment_method_id == "pm_card_saved"
    assert payment.stripe_customer_id == "cus_1"
    assert payment.status == BookingPayment.PENDING
    assert booking.status == Booking.CONFIRMED

    report = workers.run_pre_auth(gateway=fake_gateway)

    assert report.errors == 0
    assert report.processed == 1
    assert fake_gateway.calls_to("create_uncaptured_payment_intent")[0]["amount_cents"] == 7920
    payment.refresh_from_db()
    assert payment.status == BookingPayment.AUTHORIZED


@pytest.mark.django_db
def test_refunded_deposit_stops_the_balance_pre_auth(fake_gateway, processor, make_booking, make_payment):
    booking = make_booking(total="100.00", days_out=10, status=Booking.CONFIRMED)
    payment = scheduled_deposit_payment(
        make_payment,
        booking,
        deposit_payment_intent_id="pi_deposit",
        deposit_captured_at=timezone.now(),
        stripe_payment_method_id="pm_saved",
        stripe_customer_id="cus_saved",
    )

    processor.process(
        event(
            events.CHARGE_REFUNDED,
            {
                "id": "ch_deposit",
                "object": "charge",
                "payment_intent": "pi_deposit",
                "amount_refunded": 2080,
                "refunds": {"data": [{"id": "re_deposit"}]},
            },
        )
    )

    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.status == BookingPayment.REFUNDED
    assert payment.refunded_amount == Decimal("20.80")
    assert payment.refund_transaction_id == "re_deposit"
    assert payment.pre_auth_scheduled_for is None
    assert booking.status == Booking.CANCELLED

    report = workers.run_pre_auth(gateway=fake_gateway)

    assert report.processed == 0
    assert fake_gateway.calls_to("create_uncaptured_payment_intent") == []


@pytest.mark.django_db
def test_setup_session_saves_card(fake_gateway, processor, make_booking, make_payment, mailoutbox):
    booking = make_booking(days_out=12)
    payment = make_payment(booking, payment_flow=BookingPayment.FLOW_SETUP_FOR_FUTURE_AUTH)

    processor.process(checkout_completed(booking, mode="setup", payment_intent=None, setup_intent="seti_1"))

    assert fake_gateway.calls_to("retrieve_setup_intent") == [{"setup_intent_id": "seti_1"}]
    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.status == BookingPayment.PENDING
    assert payment.stripe_payment_method_id == "pm_card_saved"
    assert payment.stripe_customer_id == "cus_1"
    assert booking.status == Booking.CONFIRMED
    assert len(mailoutbox) == 2


@pytest.mark.django_db
def test_setup_intent_succeeded_saves_card(processor, make_booking, make_payment):
    booking = make_booking(days_out=12)
    payment = make_payment(booking, payment_flow=BookingPayment.FLOW_SETUP_FOR_FUTURE_AUTH)

    processor.process(
        event(
            events.SETUP_INTENT_SUCCEEDED,
            {
                "id": "seti_2",
                "object": "setup_intent",
                "payment_method": "pm_2",
                "customer": "cus_2",
                "metadata": {"booking_id": str(booking.pk)},
            },
        )
    )

    payment.refresh_from_db()
    booking.refresh_from_db()
    assert payment.stripe_payment_method_id == "pm_2"
    assert booking.status == Booking.CONFIRMED


@pytest.fixture
def paid_booking(make_booking, make_payment):
    booking = make_booking(status=Booking.CONFIRMED)
    payment = make_payment(
        booking,
        status=BookingPayment.COMPLETED,
        stripe_payment_intent_id="pi_paid",
        captured_at=timezone.now(),
    )
    return booking, payment


@pytest.mark.django_db
def test_refund_cascades_once(processor, paid_booking, client_user, pro_user):
    booking, payment = paid_booking
    conversation = Conversation.objects.create(client=client_user, professional=pro_user)
    support_request = SupportRequest.objects.create(
        booking=booking,
        client=client_user,
        conversation=conversation,
        title="Haircut was cut short",
        status=SupportRequest.IN_PROGRESS,
    )
    refunded = event(
        events.CHARGE_REFUNDED,
        {
            "id": "ch_1",
            "object": "charge",
            "payment_intent": "pi_paid",
            "amount_refunded": 5100,
            "refunds": {"data": [{"id": "re_1"}]},
        },
    )

    processor.process(refunded)
    processor.process(refunded)

    payment.refresh_from_db()
    booking.refresh_from_db()
    support_request.refresh_from_db()
    assert payment.status == BookingPayment.REFUNDED
    assert payment.refunded_amount == Decimal("51.00")
    assert payment.refund_transaction_id == "re_1"
    assert booking.status == Booking.CANCELLED
    assert support_request.status == SupportRequest.RESOLVED
    messages = Message.objects.filter(conversation=conversation)
    assert messages.count() == 1
    assert messages.get().is_system is True
    assert "$51.00" in messages.get().content


@pytest.mark.django_db
def test_dispute_is_recorded_as_refund(processor, paid_booking):
    booking, payment = paid_booking

    processor.process(
        event(
            events.CHARGE_DISPUTE_CREATED,
            {"id": "dp_1", "object": "dispute", "payment_intent": "pi_paid", "amount": 5100, "reason": "fraudulent"},
        )
    )

    payment.refresh_from_db()
    assert payment.status == BookingPayment.REFUNDED
    assert payment.refund_reason == "Dispute: fraudulent"
    assert payment.refund_transaction_id == "dp_1"


@pytest.mark.django_db
def test_refund_updated_syncs_row_and_support_page(processor, paid_booking, client_user):
    booking, payment = paid_booking
    support_request = SupportRequest.objects.create(booking=booking, client=client_user, title="Refund please")
    refund = Refund.objects.create(
        booking_payment=payment,
        stripe_refund_id="re_9",
        amount=Decimal("10.00"),
        support_request=support_request,
    )
    cache.set(f"support-request:{support_request.pk}", "stale")

    processor.process(
        event(
            events.REFUND_UPDATED,
            {"id": "re_9", "object": "refund", "status": "succeeded", "payment_intent": "pi_paid", "amount": 1000},
        )
    )

    refund.refresh_from_db()
    assert refund.status == Refund.SUCCEEDED
    assert cache.get(f"support-request:{support_request.pk}") is None


@pytest.mark.django_db
def test_account_update_completes_onboarding(processor, professional):
    professional.stripe_connect_status = ProfessionalProfile.CONNECT_PENDING
    professional.charges_enabled = False
    professional.save()

    processor.process(
        event(
            events.ACCOUNT_UPDATED,
            {
                "id": "acct_pro_123",
                "object": "account",
                "charges_enabled": True,
                "payouts_enabled": True,
                "details_submitted": True,
            },
        )
    )

    professional.refresh_from_db()
    assert professional.stripe_connect_status == ProfessionalProfile.CONNECT_COMPLETE
    assert professional.services_sync_requested_at is not None
    assert professional.last_webhook_received_at is not None


@pytest.mark.django_db
def test_capability_update_records_gateway_errors(fake_gateway, processor, professional):
    fake_gateway.fail_on["retrieve_account"] = GatewayError("Stripe is down", retryable=True)

    processor.process(
        event(events.CAPABILITY_UPDATED, {"id": "card_payments", "object": "capability", "account": "acct_pro_123"})
    )

    professional.refresh_from_db()
    assert professional.last_webhook_error_message == "Stripe is down"


@pytest.mark.django_db
def test_capability_update_refetches_account(fake_gateway, processor, professional):
    fake_gateway.account = SimpleNamespace(
        id="acct_pro_123", charges_enabled=False, payouts_enabled=False, details_submitted=True
    )

    processor.process(
        event(events.CAPABILITY_UPDATED, {"id": "card_payments", "object": "capability", "account": "acct_pro_123"})
    )

    professional.refresh_from_db()
    assert professional.stripe_connect_status == ProfessionalProfile.CONNECT_PENDING
    assert professional.charges_enabled is False


@pytest.mark.django_db
def test_subscription_checkout_and_price_update(processor, pro_user):
    plan = SubscriptionPlan.objects.create(name="Pro", price=Decimal("29.00"), stripe_price_id="price_pro")

    processor.process(
        event(
            events.CHECKOUT_SESSION_COMPLETED,
            {
                "id": "cs_sub",
                "object": "checkout.session",
                "mode": "subscription",
                "subscription": "sub_1",
                "customer": "cus_9",
                "metadata": {"plan_id": str(plan.pk), "user_id": str(pro_user.pk)},
            },
        )
    )
    processor.process(event(events.PRICE_UPDATED, {"id": "price_pro", "object": "price", "unit_amount": 3900}))

    subscription = Subscription.objects.get(stripe_subscription_id="sub_1")
    assert subscription.user == pro_user
    assert subscription.status == Subscription.ACTIVE
    plan.refresh_from_db()
    assert plan.price == Decimal("39.00")
