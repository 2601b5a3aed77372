from datetime import timedelta
from decimal import Decimal
from io import StringIO

import pytest
from django.core.management import call_command
from django.utils import timezone

from bookings.models import Booking
from core.models import ActivityEvent
from payments import workers
from payments.exceptions import GatewayError
from payments.models import BookingPayment


def due_for_pre_auth(make_booking, make_payment, **overrides):
    booking = make_booking(days_out=5, status=Booking.CONFIRMED)
    fields = {
        "payment_flow": BookingPayment.FLOW_SETUP_FOR_FUTURE_AUTH,
        "pre_auth_scheduled_for": timezone.now() - timedelta(minutes=1),
        "stripe_payment_method_id": "pm_saved",
        "stripe_customer_id": "cus_saved",
    }
    fields.update(overrides)
    return make_payment(booking, **fields)


@pytest.mark.django_db
def test_pre_auth_places_hold_with_idempotency_key(fake_gateway, make_booking, make_payment):
    payment = due_for_pre_auth(make_booking, make_payment)

    report = workers.run_pre_auth(gateway=fake_gateway)

    assert report.processed == 1
    assert report.errors == 0
    call = fake_gateway.calls_to("create_uncaptured_payment_intent")[0]
    assert call["amount_cents"] == 5100
    assert call["transfer_amount_cents"] == 5000
    assert call["idempotency_key"] == f"pre-auth-{payment.pk}"
    payment.refresh_from_db()
    assert payment.status == BookingPayment.AUTHORIZED
    assert payment.pre_auth_placed_at is not None
    assert payment.authorization_expires_at is not None


@pytest.mark.django_db
def test_second_run_does_not_hold_again(fake_gateway, make_booking, make_payment):
    due_for_pre_auth(make_booking, make_payment)

    workers.run_pre_auth(gateway=fake_gateway)
    report = workers.run_pre_auth(gateway=fake_gateway)

    assert report.processed == 0
    assert len(fake_gateway.calls_to("create_uncaptured_payment_intent")) == 1


@pytest.mark.django_db
def test_deposit_pre_auth_holds_only_the_balance(fake_gateway, make_booking, make_payment):
    payment = due_for_pre_auth(
        make_booking,
        make_payment,
        amount=Decimal("100.00"),
        deposit_amount=Decimal("20.80"),
        balance_amount=Decimal("79.20"),
        payment_type=BookingPayment.TYPE_DEPOSIT,
        requires_balance_payment=True,
        deposit_captured_at=timezone.now(),
    )

    workers.run_pre_auth(gateway=fake_gateway)

    call = fake_gateway.calls_to("create_uncaptured_payment_intent")[0]
    assert call["amount_cents"] == 7920
    assert call["transfer_amount_cents"] == 7920
    payment.refresh_from_db()
    assert payment.amount == Decimal("79.20")


@pytest.mark.django_db
def test_missing_card_fails_row_but_not_batch(fake_gateway, make_booking, make_payment):
    broken = due_for_pre_auth(make_booking, make_payment, stripe_payment_method_id="")
    healthy = due_for_pre_auth(make_booking, make_payment)

    report = workers.run_pre_auth(gateway=fake_gateway)

    assert report.processed == 1
    assert report.errors == 1
    assert report.error_details[0]["booking_id"] == broken.booking_id
    broken.refresh_from_db()
    healthy.refresh_from_db()
    assert broken.status == BookingPayment.FAILED
    assert healthy.status == BookingPayment.AUTHORIZED


@pytest.mark.django_db
def test_retryable_pre_auth_error_leaves_row_for_next_run(fake_gateway, make_booking, make_payment):
    fake_gateway.fail_on["create_uncaptured_payment_intent"] = GatewayError("rate limited", retryable=True)
    payment = due_for_pre_auth(make_booking, make_payment)

    report = workers.run_pre_auth(gateway=fake_gateway)

    assert report.errors == 1
    payment.refresh_from_db()
    assert payment.status == BookingPayment.PENDING


@pytest.mark.django_db
def test_declined_pre_auth_fails_the_payment(fake_gateway, make_booking, make_payment):
    fake_gateway.fail_on["create_uncaptured_payment_intent"] = GatewayError("declined", code="card_declined")
    payment = due_for_pre_auth(make_booking, make_payment)

    workers.run_pre_auth(gateway=fake_gateway)

    payment.refresh_from_db()
    assert payment.status == BookingPayment.FAILED


@pytest.fixture
def due_capture(make_booking, make_payment):
    booking = make_booking(days_out=-1, status=Booking.CONFIRMED)
    return make_payment(
        booking,
        status=BookingPayment.AUTHORIZED,
        stripe_payment_intent_id="pi_hold",
        capture_scheduled_for=timezone.now() - timedelta(minutes=5),
    )


@pytest.mark.django_db
def test_capture_completes_booking_and_sends_receipt(fake_gateway, due_capture, mailoutbox):
    report = workers.run_captures(gateway=fake_gateway)

    assert report.processed == 1
    assert fake_gateway.calls_to("capture_payment_intent") == [
        {"payment_intent_id": "pi_hold", "amount_to_capture": None}
    ]
    due_capture.refresh_from_db()
    assert due_capture.status == BookingPayment.COMPLETED
    assert due_capture.amount == Decimal("51.00")
    assert Booking.objects.get(pk=due_capture.booking_id).status == Booking.COMPLETED
    assert ActivityEvent.objects.filter(event_type=ActivityEvent.PAYMENT_CAPTURED).count() == 1
    assert [m.subject for m in mailoutbox] == ["Receipt for your booking with Parker Hair Studio"]


@pytest.mark.django_db
def test_capture_already_recorded_by_webhook_is_skipped(fake_gateway, due_capture, mailoutbox):
    BookingPayment.objects.filter(pk=due_capture.pk).update(status=BookingPayment.COMPLETED, captured_at=timezone.now())

    report = workers.run_captures(gateway=fake_gateway)

    assert report.processed == 0
    assert fake_gateway.calls_to("capture_payment_intent") == []
    assert mailoutbox == []


@pytest.mark.django_db
def test_balance_notification_sent_once(make_booking, make_payment, mailoutbox):
    booking = make_booking(days_out=-1, status=Booking.CONFIRMED, online=False)
    payment = make_payment(
        booking,
        status=BookingPayment.COMPLETED,
        balance_amount=Decimal("49.00"),
        requires_balance_payment=True,
    )

    first = workers.send_balance_notifications()
    second = workers.send_balance_notifications()

    assert first.processed == 1
    assert second.processed == 0
    assert len(mailoutbox) == 1
    assert "$49.00" in mailoutbox[0].body
    payment.refresh_from_db()
    assert payment.balance_notification_sent_at is not None


@pytest.mark.django_db
def test_future_appointments_get_no_balance_notice(make_booking, make_payment, mailoutbox):
    booking = make_booking(days_out=3, status=Booking.CONFIRMED)
    make_payment(booking, requires_balance_payment=True, balance_amount=Decimal("10.00"))

    assert workers.send_balance_notifications().processed == 0
    assert mailoutbox == []


@pytest.mark.django_db
def test_stale_checkouts_are_cleaned_up(fake_gateway, make_booking, make_payment):
    stale = make_booking()
    make_payment(stale, stripe_checkout_session_id="cs_stale")
    confirmed = make_booking(status=Booking.CONFIRMED)
    make_payment(confirmed)

    report = workers.cleanup_expired_checkouts(now=timezone.now() + timedelta(hours=25), gateway=fake_gateway)

    assert report.processed == 1
    assert fake_gateway.calls_to("expire_checkout_session") == [{"session_id": "cs_stale"}]
    assert not Booking.objects.filter(pk=stale.pk).exists()
    assert Booking.objects.filter(pk=confirmed.pk).exists()


@pytest.mark.django_db
def test_fresh_checkouts_are_kept(fake_gateway, make_booking, make_payment):
    booking = make_booking()
    make_payment(booking)

    report = workers.cleanup_expired_checkouts(gateway=fake_gateway)

    assert report.processed == 0
    assert Booking.objects.filter(pk=booking.pk).exists()


@pytest.mark.django_db
def test_pre_auth_command_reports_summary(fake_gateway, make_booking, make_payment):
    due_for_pre_auth(make_booking, make_payment)
    out = StringIO()

    call_command("run_pre_auth_payments", "--batch-size", "10", stdout=out)

    assert "Authorized 1 payments (0 errors" in out.getvalue()
