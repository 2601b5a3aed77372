from django.contrib import admin

from .models import Conversation, Message, SupportRequest


class MessageInline(admin.TabularInline):
    model = Message
    extra = 0
    readonly_fields = ("created_at",)


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ("id", "client", "professional", "updated_at")
    inlines = [MessageInline]


@admin.register(SupportRequest)
class SupportRequestAdmin(admin.ModelAdmin):
    list_display = ("title", "booking", "client", "status", "resolved_at")
    list_filter = ("status",)
    search_fields = ("title", "client__email")
