import logging
from datetime import datetime, timezone

from django.conf import settings
from django.shortcuts import get_object_or_404
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from payments.exceptions import GatewayConfigurationError, GatewayError
from payments.gateway import get_gateway
from professionals.connect import sync_profile_from_stripe_account
from professionals.models import ProfessionalProfile
from professionals.serializers import StripeAccountStatusSerializer, StripeOnboardingLinkSerializer

logger = logging.getLogger(__name__)


class ProfessionalStripeBaseView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get_profile(self) -> ProfessionalProfile:
        return get_object_or_404(ProfessionalProfile, user=self.request.user)


class StripeOnboardingLinkView(ProfessionalStripeBaseView):
    """
    Create (or refresh) an onboarding link for the professional's Stripe Express account.
    """

    def post(self, request, *args, **kwargs):
        if not settings.STRIPE_CONNECT_RETURN_URL or not settings.STRIPE_CONNECT_REFRESH_URL:
            return Response(
                {
                    "detail": "Stripe connect return/refresh URLs are not configured. "
                    "Set STRIPE_CONNECT_RETURN_URL and STRIPE_CONNECT_REFRESH_URL."
                },
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        profile = self.get_profile()
        gateway = get_gateway()
        try:
            if not profile.stripe_account_id:
                stripe_account = gateway.create_connected_account(email=request.user.email)
                profile.stripe_account_id = stripe_account.id
                profile.save(update_fields=["stripe_account_id", "updated_at"])
            else:
                stripe_account = gateway.retrieve_account(profile.stripe_account_id)
            sync_profile_from_stripe_account(profile, stripe_account)

            link = gateway.create_account_link(
                account_id=profile.stripe_account_id,
                refresh_url=settings.STRIPE_CONNECT_REFRESH_URL,
                return_url=settings.STRIPE_CONNECT_RETURN_URL,
            )
        except GatewayConfigurationError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
        except GatewayError as exc:
            logger.exception("Failed to create Stripe onboarding link: %s", exc)
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)

        expires_at = datetime.fromtimestamp(link.expires_at, tz=timezone.utc)
        profile.onboarding_link_url = link.url
        profile.onboarding_expires_at = expires_at
        profile.save(update_fields=["onboarding_link_url", "onboarding_expires_at", "updated_at"])

        serializer = StripeOnboardingLinkSerializer({"url": link.url, "expires_at": expires_at})
        return Response(serializer.data, status=status.HTTP_201_CREATED)


class StripeAccountStatusView(ProfessionalStripeBaseView):
    """Return the current connection status for the professional's Stripe account."""

    def get(self, request, *args, **kwargs):
        profile = self.get_profile()
        if profile.stripe_account_id:
            try:
                stripe_account = get_gateway().retrieve_account(profile.stripe_account_id)
                sync_profile_from_stripe_account(profile, stripe_account)
            except GatewayError as exc:
                logger.exception("Failed to refresh Stripe account status: %s", exc)

        payload = StripeAccountStatusSerializer.from_profile(profile)
        return Response(payload)
