from __future__ import annotations

import logging
from typing import Any

from django.utils import timezone

from .models import ProfessionalProfile

logger = logging.getLogger(__name__)


def _account_value(account: Any, field: str, default: Any = None) -> Any:
    if isinstance(account, dict):
        return account.get(field, default)
    return getattr(account, field, default)


def compute_connect_status(stripe_account: Any) -> str:
    """Onboarding completeness derived from a Stripe Connect account payload."""
    charges_enabled = bool(_account_value(stripe_account, "charges_enabled", False))
    payouts_enabled = bool(_account_value(stripe_account, "payouts_enabled", False))
    details_submitted = bool(_account_value(stripe_account, "details_submitted", False))

    if charges_enabled and payouts_enabled:
        return ProfessionalProfile.CONNECT_COMPLETE
    if not details_submitted:
        return ProfessionalProfile.CONNECT_NOT_CONNECTED
    return ProfessionalProfile.CONNECT_PENDING


def sync_profile_from_stripe_account(profile: ProfessionalProfile, stripe_account: Any) -> bool:
    """
    Copy the capability flags from Stripe onto the profile and recompute the
    connect status. Returns True when the profile transitioned into ``complete``.
    """
    changed_fields: list[str] = []
    for field in ("charges_enabled", "payouts_enabled", "details_submitted"):
        value = bool(_account_value(stripe_account, field, False))
        if getattr(profile, field) != value:
            setattr(profile, field, value)
            changed_fields.append(field)

    previous_status = profile.stripe_connect_status
    new_status = compute_connect_status(stripe_account)
    if previous_status != new_status:
        profile.stripe_connect_status = new_status
        changed_fields.append("stripe_connect_status")

    if changed_fields:
        changed_fields.append("updated_at")
        profile.save(update_fields=changed_fields)
        logger.info(
            "Professional %s connect status %s -> %s",
            profile.pk,
            previous_status,
            new_status,
        )

    return (
        new_status == ProfessionalProfile.CONNECT_COMPLETE
        and previous_status != ProfessionalProfile.CONNECT_COMPLETE
    )


def request_service_resync(profile: ProfessionalProfile) -> None:
    """Flag the professional's services for re-publication to Stripe."""
    profile.services_sync_requested_at = timezone.now()
    profile.save(update_fields=["services_sync_requested_at", "updated_at"])
    logger.info("Service resync requested for professional %s", profile.pk)


def record_webhook_heartbeat(profile: ProfessionalProfile, error: str = "") -> None:
    now = timezone.now()
    if error:
        profile.last_webhook_error_at = now
        profile.last_webhook_error_message = error[:500]
        profile.save(update_fields=["last_webhook_error_at", "last_webhook_error_message", "updated_at"])
        return
    profile.last_webhook_received_at = now
    profile.last_webhook_error_at = None
    profile.last_webhook_error_message = ""
    profile.save(
        update_fields=[
            "last_webhook_received_at",
            "last_webhook_error_at",
            "last_webhook_error_message",
            "updated_at",
        ]
    )
