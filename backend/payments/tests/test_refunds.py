from decimal import Decimal

import pytest
from django.utils import timezone

from bookings.models import Booking
from payments.exceptions import GatewayError
from payments.models import BookingPayment, Refund
from payments.refunds import RefundService, refundable_intent


@pytest.fixture
def service(fake_gateway):
    return RefundService(gateway=fake_gateway)


@pytest.fixture
def captured_payment(make_booking, make_payment):
    booking = make_booking(status=Booking.CONFIRMED)
    return make_payment(
        booking,
        status=BookingPayment.COMPLETED,
        stripe_payment_intent_id="pi_paid",
        captured_at=timezone.now(),
    )


@pytest.mark.django_db
def test_refundable_intent_prefers_the_capture(captured_payment):
    captured_payment.refunded_amount = Decimal("11.00")

    assert refundable_intent(captured_payment) == ("pi_paid", 4000)


@pytest.mark.django_db
def test_deposit_only_payment_refunds_the_deposit(make_booking, make_payment):
    payment = make_payment(
        make_booking(total="100.00"),
        payment_type=BookingPayment.TYPE_DEPOSIT,
        deposit_amount=Decimal("20.80"),
        deposit_payment_intent_id="pi_deposit",
        deposit_captured_at=timezone.now(),
    )

    assert refundable_intent(payment) == ("pi_deposit", 2080)


@pytest.mark.django_db
def test_full_refund_request(service, fake_gateway, captured_payment, client_user):
    result = service.request_refund(captured_payment, None, "Service not delivered", requested_by=client_user)

    assert result.success is True
    assert result.amount_cents == 5100
    call = fake_gateway.calls_to("create_refund")[0]
    assert call["payment_intent_id"] == "pi_paid"
    assert call["metadata"]["refund_record_id"] == result.refund_id
    refund = Refund.objects.get(pk=result.refund_id)
    assert refund.stripe_refund_id == result.stripe_refund_id
    assert refund.status == Refund.PENDING
    assert refund.amount == Decimal("51.00")
    captured_payment.refresh_from_db()
    # The ledger waits for charge.refunded.
    assert captured_payment.status == BookingPayment.COMPLETED


@pytest.mark.django_db
def test_refund_larger_than_captured_is_rejected(service, fake_gateway, captured_payment):
    result = service.request_refund(captured_payment, 6000, "Too much")

    assert result.success is False
    assert "$51.00" in result.error
    assert fake_gateway.calls == []
    assert Refund.objects.count() == 0


@pytest.mark.django_db
def test_uncaptured_payment_cannot_be_refunded(service, make_booking, make_payment):
    payment = make_payment(make_booking(), status=BookingPayment.AUTHORIZED, stripe_payment_intent_id="pi_hold")

    result = service.request_refund(payment, 100, "Early")

    assert result.success is False
    assert result.error == "Nothing has been captured for this booking yet"


@pytest.mark.django_db
def test_stripe_failure_marks_refund_failed(service, fake_gateway, captured_payment):
    fake_gateway.fail_on["create_refund"] = GatewayError("charge already refunded", code="charge_already_refunded")

    result = service.request_refund(captured_payment, 1000, "Duplicate")

    assert result.success is False
    refund = Refund.objects.get(pk=result.refund_id)
    assert refund.status == Refund.FAILED
    assert refund.failure_reason == "charge already refunded"


@pytest.mark.django_db
def test_dashboard_refund_creates_local_row(service, captured_payment):
    refund = service.handle_refund_event(
        "refund.created",
        {"id": "re_dash", "object": "refund", "payment_intent": "pi_paid", "amount": 2500, "status": "succeeded"},
    )

    assert refund.booking_payment_id == captured_payment.pk
    assert refund.amount == Decimal("25.00")
    assert refund.status == Refund.SUCCEEDED


@pytest.mark.django_db
def test_refund_failed_event_records_reason(service, captured_payment):
    Refund.objects.create(booking_payment=captured_payment, stripe_refund_id="re_1", amount=Decimal("5.00"))

    refund = service.handle_refund_event(
        "refund.failed",
        {"id": "re_1", "object": "refund", "status": "failed", "failure_reason": "expired_or_canceled_card"},
    )

    assert refund.status == Refund.FAILED
    assert refund.failure_reason == "expired_or_canceled_card"


@pytest.mark.django_db
def test_refund_for_unknown_intent_is_ignored(service):
    assert service.handle_refund_event("refund.created", {"id": "re_x", "payment_intent": "pi_other"}) is None
