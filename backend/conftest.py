import itertools
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.models import User
from bookings.models import Appointment, Booking
from payments.emails import reset_sent_cache
from payments.gateway import get_gateway
from payments.models import BookingPayment
from payments.webhooks import get_webhook_processor
from professionals.models import ProfessionalProfile


class FakeGateway:
    """Records every Stripe call and answers with canned objects."""

    def __init__(self):
        self.calls = []
        self.fail_on = {}
        self.account = None
        self.intent_metadata = {}
        self._ids = itertools.count(1)

    def _next(self, prefix):
        return f"{prefix}_fake_{next(self._ids)}"

    def _record(self, name, /, **kwargs):
        self.calls.append((name, kwargs))
        error = self.fail_on.get(name)
        if error is not None:
            raise error

    def calls_to(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    def create_customer(self, **kwargs):
        self._record("create_customer", **kwargs)
        return self._next("cus")

    def create_checkout_session(self, **kwargs):
        self._record("create_checkout_session", **kwargs)
        session_id = self._next("cs")
        return SimpleNamespace(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def expire_checkout_session(self, session_id):
        self._record("expire_checkout_session", session_id=session_id)
        return SimpleNamespace(id=session_id, status="expired")

    def create_uncaptured_payment_intent(self, **kwargs):
        self._record("create_uncaptured_payment_intent", **kwargs)
        return SimpleNamespace(id=self._next("pi"), amount=kwargs["amount_cents"], status="requires_capture")

    def create_off_session_charge(self, **kwargs):
        self._record("create_off_session_charge", **kwargs)
        return SimpleNamespace(id=self._next("pi"), amount=kwargs["amount_cents"], status="succeeded")

    def retrieve_payment_intent(self, payment_intent_id):
        self._record("retrieve_payment_intent", payment_intent_id=payment_intent_id)
        return SimpleNamespace(
            id=payment_intent_id,
            payment_method="pm_card_saved",
            customer="cus_saved",
            metadata=self.intent_metadata.get(payment_intent_id, {}),
        )

    def capture_payment_intent(self, payment_intent_id, amount_to_capture=None):
        self._record("capture_payment_intent", payment_intent_id=payment_intent_id, amount_to_capture=amount_to_capture)
        return SimpleNamespace(id=payment_intent_id, status="succeeded", amount_received=amount_to_capture)

    def cancel_payment_intent(self, payment_intent_id, reason="requested_by_customer"):
        self._record("cancel_payment_intent", payment_intent_id=payment_intent_id, reason=reason)
        return SimpleNamespace(id=payment_intent_id, status="canceled")

    def retrieve_setup_intent(self, setup_intent_id):
        self._record("retrieve_setup_intent", setup_intent_id=setup_intent_id)
        return SimpleNamespace(id=setup_intent_id, payment_method="pm_card_saved", customer="cus_saved")

    def create_refund(self, **kwargs):
        self._record("create_refund", **kwargs)
        return SimpleNamespace(id=self._next("re"), amount=kwargs.get("amount_cents"), status="pending")

    def create_connected_account(self, *, email=""):
        self._record("create_connected_account", email=email)
        return SimpleNamespace(id=self._next("acct"), charges_enabled=False, payouts_enabled=False, details_submitted=False)

    def retrieve_account(self, account_id):
        self._record("retrieve_account", account_id=account_id)
        if self.account is not None:
            return self.account
        return SimpleNamespace(id=account_id, charges_enabled=True, payouts_enabled=True, details_submitted=True)

    def create_account_link(self, **kwargs):
        self._record("create_account_link", **kwargs)
        return SimpleNamespace(url="https://connect.stripe.test/onboarding", expires_at=1700000000)


@pytest.fixture(autouse=True)
def _reset_payment_singletons():
    reset_sent_cache()
    get_gateway.cache_clear()
    get_webhook_processor.cache_clear()
    yield
    get_gateway.cache_clear()
    get_webhook_processor.cache_clear()


@pytest.fixture
def fake_gateway(monkeypatch):
    gateway = FakeGateway()
    for target in (
        "payments.checkout.get_gateway",
        "payments.tips.get_gateway",
        "payments.cancellation.get_gateway",
        "payments.refunds.get_gateway",
        "payments.workers.get_gateway",
        "payments.webhooks.processor.get_gateway",
        "bookings.api.get_gateway",
        "professionals.api.get_gateway",
    ):
        monkeypatch.setattr(target, lambda: gateway)
    return gateway


@pytest.fixture
def client_user(db):
    return User.objects.create_user(
        username="client@example.com",
        email="client@example.com",
        password="examplepass",
        first_name="Casey",
        last_name="Client",
    )


@pytest.fixture
def pro_user(db):
    return User.objects.create_user(
        username="pro@example.com",
        email="pro@example.com",
        password="examplepass",
        first_name="Parker",
        last_name="Pro",
    )


@pytest.fixture
def professional(pro_user):
    return ProfessionalProfile.objects.create(
        user=pro_user,
        business_name="Parker Hair Studio",
        stripe_account_id="acct_pro_123",
        stripe_connect_status=ProfessionalProfile.CONNECT_COMPLETE,
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
    )


@pytest.fixture
def api_client(client_user):
    client = APIClient()
    client.force_authenticate(client_user)
    return client


@pytest.fixture
def make_booking(client_user, professional):
    def _make(*, days_out=2, total="51.00", tip="0.00", online=True, status=Booking.PENDING_PAYMENT, hours=1):
        start = timezone.now() + timedelta(days=days_out)
        booking = Booking.objects.create(
            client=client_user,
            professional=professional,
            status=status,
            total_price=Decimal(total),
            tip_amount=Decimal(tip),
            is_online_payment=online,
        )
        Appointment.objects.create(booking=booking, start_time=start, end_time=start + timedelta(hours=hours))
        return booking

    return _make


@pytest.fixture
def make_payment():
    def _make(booking, **overrides):
        fields = {
            "amount": booking.total_price,
            "service_fee": Decimal("1.00"),
            "payment_type": BookingPayment.TYPE_FULL,
            "capture_method": BookingPayment.CAPTURE_MANUAL,
            "is_online_payment": booking.is_online_payment,
            "payment_flow": BookingPayment.FLOW_IMMEDIATE_FULL,
            "status": BookingPayment.PENDING,
            "capture_scheduled_for": booking.appointment.end_time,
            "stripe_checkout_session_id": "cs_test_existing",
        }
        fields.update(overrides)
        return BookingPayment.objects.create(booking=booking, **fields)

    return _make
