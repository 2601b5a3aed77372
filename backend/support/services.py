from __future__ import annotations

import logging
from decimal import Decimal

from django.core.cache import cache
from django.utils import timezone

from .models import Message, SupportRequest

logger = logging.getLogger(__name__)

SUPPORT_CACHE_PREFIX = "support-request"


def support_request_cache_keys(request_id: int) -> list[str]:
    return [
        f"{SUPPORT_CACHE_PREFIX}:{request_id}",
        f"{SUPPORT_CACHE_PREFIX}:list",
    ]


def revalidate_support_request(request_id: int) -> None:
    cache.delete_many(support_request_cache_keys(request_id))


def post_system_message(conversation_id: int, content: str) -> Message:
    return Message.objects.create(
        conversation_id=conversation_id,
        sender=None,
        is_system=True,
        content=content,
    )


def resolve_support_requests_for_refund(booking_id: int, refunded_amount: Decimal) -> list[int]:
    """
    Resolve in-progress support requests of a refunded booking and post one
    system message per request actually resolved. Requests already resolved
    are skipped so redelivered refund events do not duplicate messages.
    """
    resolved_ids: list[int] = []
    candidates = SupportRequest.objects.filter(
        booking_id=booking_id,
        status=SupportRequest.IN_PROGRESS,
    ).values_list("id", "conversation_id")

    for request_id, conversation_id in candidates:
        now = timezone.now()
        updated = SupportRequest.objects.filter(
            pk=request_id,
            status=SupportRequest.IN_PROGRESS,
        ).update(
            status=SupportRequest.RESOLVED,
            resolved_at=now,
            resolution_notes=f"Refund of ${refunded_amount:.2f} processed.",
            updated_at=now,
        )
        if not updated:
            continue
        resolved_ids.append(request_id)
        if conversation_id:
            post_system_message(
                conversation_id,
                f"A refund of ${refunded_amount:.2f} has been processed and this support request is now resolved.",
            )
        revalidate_support_request(request_id)
        logger.info("Resolved support request %s after refund of booking %s", request_id, booking_id)

    return resolved_ids
