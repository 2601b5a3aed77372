from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from .models import User


@admin.register(User)
class PlatformUserAdmin(UserAdmin):
    list_display = ("username", "email", "first_name", "last_name", "display_name", "is_staff")
    search_fields = ("username", "email", "first_name", "last_name", "display_name")
    fieldsets = UserAdmin.fieldsets + (
        ("Profile", {"fields": ("display_name", "phone_number", "timezone")}),
    )
