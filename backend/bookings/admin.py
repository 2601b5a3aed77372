from django.contrib import admin

from .models import Appointment, Booking


class AppointmentInline(admin.StackedInline):
    model = Appointment
    extra = 0


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = ("id", "client", "professional", "status", "total_price", "is_online_payment", "created_at")
    list_filter = ("status", "is_online_payment")
    search_fields = ("client__email", "professional__business_name")
    readonly_fields = ("created_at", "updated_at", "cancelled_at")
    inlines = [AppointmentInline]
