from rest_framework import serializers

from .models import ProfessionalProfile


class StripeOnboardingLinkSerializer(serializers.Serializer):
    url = serializers.URLField()
    expires_at = serializers.DateTimeField()


class StripeAccountStatusSerializer(serializers.Serializer):
    connected = serializers.BooleanField()
    account_id = serializers.CharField(allow_null=True, required=False)
    status = serializers.CharField(required=False)
    charges_enabled = serializers.BooleanField(required=False)
    payouts_enabled = serializers.BooleanField(required=False)
    details_submitted = serializers.BooleanField(required=False)
    onboarding_link_url = serializers.CharField(allow_blank=True, required=False)
    onboarding_expires_at = serializers.DateTimeField(required=False, allow_null=True)
    last_webhook_received_at = serializers.DateTimeField(required=False, allow_null=True)
    last_webhook_error_at = serializers.DateTimeField(required=False, allow_null=True)
    last_webhook_error_message = serializers.CharField(allow_blank=True, required=False)

    @staticmethod
    def from_profile(profile: ProfessionalProfile) -> dict:
        if not profile.stripe_account_id:
            return {"connected": False, "status": profile.stripe_connect_status}

        return {
            "connected": True,
            "account_id": profile.stripe_account_id,
            "status": profile.stripe_connect_status,
            "charges_enabled": profile.charges_enabled,
            "payouts_enabled": profile.payouts_enabled,
            "details_submitted": profile.details_submitted,
            "onboarding_link_url": profile.onboarding_link_url or "",
            "onboarding_expires_at": profile.onboarding_expires_at,
            "last_webhook_received_at": profile.last_webhook_received_at,
            "last_webhook_error_at": profile.last_webhook_error_at,
            "last_webhook_error_message": profile.last_webhook_error_message or "",
        }
