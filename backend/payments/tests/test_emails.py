from decimal import Decimal

import pytest
from django.utils import timezone

from payments.emails import PaymentEmailService, reset_sent_cache
from payments.models import BookingPayment


@pytest.fixture
def emails():
    return PaymentEmailService()


@pytest.mark.django_db
def test_confirmations_go_to_client_and_professional(emails, make_booking, make_payment, mailoutbox):
    payment = make_payment(make_booking())

    assert emails.send_booking_confirmations(payment.pk) is True

    recipients = sorted(message.to[0] for message in mailoutbox)
    assert recipients == ["client@example.com", "pro@example.com"]
    payment.refresh_from_db()
    assert payment.confirmation_sent_at is not None


@pytest.mark.django_db
def test_confirmations_are_sent_once_across_processes(emails, make_booking, make_payment, mailoutbox):
    payment = make_payment(make_booking())

    emails.send_booking_confirmations(payment.pk)
    reset_sent_cache()

    assert PaymentEmailService().send_booking_confirmations(payment.pk) is False
    assert len(mailoutbox) == 2


@pytest.mark.django_db
def test_undelivered_confirmations_release_the_claim(emails, make_booking, make_payment, monkeypatch, mailoutbox):
    payment = make_payment(make_booking())

    def broken_send_mail(*args, **kwargs):
        raise ConnectionRefusedError("smtp unreachable")

    monkeypatch.setattr("payments.emails.send_mail", broken_send_mail)

    assert emails.send_booking_confirmations(payment.pk) is False
    payment.refresh_from_db()
    assert payment.confirmation_sent_at is None


@pytest.mark.django_db
def test_deposit_confirmation_mentions_remaining_balance(emails, make_booking, make_payment, mailoutbox):
    payment = make_payment(
        make_booking(total="100.00"),
        payment_type=BookingPayment.TYPE_DEPOSIT,
        deposit_amount=Decimal("20.80"),
        balance_amount=Decimal("79.20"),
        requires_balance_payment=True,
        deposit_captured_at=timezone.now(),
    )

    emails.send_booking_confirmations(payment.pk)

    client_email = next(message for message in mailoutbox if message.to == ["client@example.com"])
    assert "Deposit paid: $20.80" in client_email.body
    assert "Remaining balance: $79.20" in client_email.body


@pytest.mark.django_db
def test_cash_booking_tells_professional_about_in_person_payment(emails, make_booking, make_payment, mailoutbox):
    payment = make_payment(make_booking(online=False))

    emails.send_booking_confirmations(payment.pk)

    pro_email = next(message for message in mailoutbox if message.to == ["pro@example.com"])
    assert "pay the service amount in person" in pro_email.body
    assert pro_email.subject == "New booking from Casey Client"


@pytest.mark.django_db
def test_receipt_sent_once(emails, make_booking, make_payment, mailoutbox):
    payment = make_payment(make_booking(), status=BookingPayment.COMPLETED, captured_at=timezone.now())

    assert emails.send_payment_receipt(payment.pk) is True
    assert emails.send_payment_receipt(payment.pk) is False

    assert len(mailoutbox) == 1
    assert "Amount charged: $51.00" in mailoutbox[0].body
