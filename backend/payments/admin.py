from django.contrib import admin

from .models import BookingPayment, Refund, StripeCustomer


class RefundInline(admin.TabularInline):
    model = Refund
    extra = 0
    fields = ("stripe_refund_id", "amount", "status", "reason", "created_at")
    readonly_fields = fields


@admin.register(BookingPayment)
class BookingPaymentAdmin(admin.ModelAdmin):
    list_display = (
        "booking",
        "status",
        "payment_type",
        "payment_flow",
        "amount",
        "capture_scheduled_for",
        "captured_at",
    )
    list_filter = ("status", "payment_type", "payment_flow", "is_online_payment")
    search_fields = (
        "booking__client__email",
        "stripe_payment_intent_id",
        "stripe_checkout_session_id",
        "deposit_payment_intent_id",
    )
    readonly_fields = ("created_at", "updated_at", "confirmation_sent_at", "receipt_sent_at")
    inlines = [RefundInline]


@admin.register(StripeCustomer)
class StripeCustomerAdmin(admin.ModelAdmin):
    list_display = ("user", "stripe_customer_id", "created_at")
    search_fields = ("user__email", "stripe_customer_id")


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    list_display = ("booking_payment", "stripe_refund_id", "amount", "status", "created_at")
    list_filter = ("status",)
    search_fields = ("stripe_refund_id",)
