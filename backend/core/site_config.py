from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings

from .models import AdminConfig

logger = logging.getLogger(__name__)


def get_config_value(key: str, default: str | None = None) -> str | None:
    row = AdminConfig.objects.filter(key=key).values_list("value", flat=True).first()
    return row if row is not None else default


def get_service_fee() -> Decimal:
    """Platform fee per booking in currency units."""
    default = Decimal(settings.DEFAULT_SERVICE_FEE)
    raw = get_config_value(AdminConfig.SERVICE_FEE)
    if raw is None:
        return default
    try:
        fee = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        logger.warning("Invalid service_fee config value %r; using default %s", raw, default)
        return default
    if fee < 0:
        logger.warning("Negative service_fee config value %r; using default %s", raw, default)
        return default
    return fee


def get_service_fee_cents() -> int:
    return int((get_service_fee() * 100).to_integral_value())
