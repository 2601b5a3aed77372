from django.contrib import admin
from django.urls import path
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from bookings.api import (
    BookingCancelView,
    BookingCheckoutCancelView,
    BookingDetailView,
    BookingListCreateView,
    BookingRefundView,
    BookingTipView,
)
from payments.api import BookingPaymentListView, StripeWebhookHealthView, StripeWebhookView
from professionals.api import StripeAccountStatusView, StripeOnboardingLinkView

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/auth/login/", TokenObtainPairView.as_view(), name="auth-login"),
    path("api/auth/refresh/", TokenRefreshView.as_view(), name="auth-refresh"),
    path("api/bookings/", BookingListCreateView.as_view(), name="booking-list"),
    path("api/bookings/<int:pk>/", BookingDetailView.as_view(), name="booking-detail"),
    path(
        "api/bookings/<int:booking_id>/cancel-checkout/",
        BookingCheckoutCancelView.as_view(),
        name="booking-cancel-checkout",
    ),
    path(
        "api/bookings/<int:booking_id>/cancel/",
        BookingCancelView.as_view(),
        name="booking-cancel",
    ),
    path("api/bookings/<int:booking_id>/tip/", BookingTipView.as_view(), name="booking-tip"),
    path(
        "api/bookings/<int:booking_id>/refunds/",
        BookingRefundView.as_view(),
        name="booking-refunds",
    ),
    path("api/payments/", BookingPaymentListView.as_view(), name="payment-list"),
    path(
        "api/professionals/me/stripe/link/",
        StripeOnboardingLinkView.as_view(),
        name="professional-stripe-link",
    ),
    path(
        "api/professionals/me/stripe/status/",
        StripeAccountStatusView.as_view(),
        name="professional-stripe-status",
    ),
    path("api/webhooks/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path(
        "api/webhooks/stripe/health/",
        StripeWebhookHealthView.as_view(),
        name="stripe-webhook-health",
    ),
]
