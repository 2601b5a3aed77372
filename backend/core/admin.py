from django.contrib import admin

from .models import ActivityEvent, AdminConfig


@admin.register(AdminConfig)
class AdminConfigAdmin(admin.ModelAdmin):
    list_display = ("key", "value", "description", "updated_at")
    search_fields = ("key", "description")


@admin.register(ActivityEvent)
class ActivityEventAdmin(admin.ModelAdmin):
    list_display = ("event_type", "user", "booking", "created_at")
    list_filter = ("event_type",)
    readonly_fields = ("created_at",)
