from django.contrib import admin

from .models import ProfessionalProfile


@admin.register(ProfessionalProfile)
class ProfessionalProfileAdmin(admin.ModelAdmin):
    list_display = (
        "user",
        "business_name",
        "stripe_account_id",
        "stripe_connect_status",
        "requires_deposit",
        "updated_at",
    )
    list_filter = ("stripe_connect_status", "requires_deposit", "deposit_type")
    search_fields = ("business_name", "stripe_account_id", "user__email")
    readonly_fields = (
        "created_at",
        "updated_at",
        "last_webhook_received_at",
        "last_webhook_error_at",
        "last_webhook_error_message",
    )
