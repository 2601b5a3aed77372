from __future__ import annotations

import logging
from typing import Any, Optional

from .models import ActivityEvent

logger = logging.getLogger(__name__)


def track_activity(
    *,
    event_type: str,
    user_id: Optional[int] = None,
    booking_id: Optional[int] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Optional[ActivityEvent]:
    """
    Record an activity event. Tracking never interrupts the calling flow, so
    failures are logged and swallowed.
    """
    try:
        return ActivityEvent.objects.create(
            event_type=event_type,
            user_id=user_id,
            booking_id=booking_id,
            metadata=metadata or {},
        )
    except Exception:
        logger.exception("Failed to track activity %s for booking %s", event_type, booking_id)
        return None
