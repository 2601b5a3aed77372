from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from django.contrib.auth import get_user_model

from .models import Subscription, SubscriptionPlan

logger = logging.getLogger(__name__)


def handle_subscription_checkout(session: dict[str, Any]) -> Optional[Subscription]:
    """
    Record the subscription bought through a checkout session. The session
    metadata must carry ``plan_id`` and ``user_id``; otherwise it is ignored.
    """
    metadata = session.get("metadata") or {}
    plan_id = metadata.get("plan_id")
    user_id = metadata.get("user_id")
    if not plan_id or not user_id:
        logger.warning("Subscription checkout %s missing plan/user metadata", session.get("id"))
        return None

    plan = SubscriptionPlan.objects.filter(pk=plan_id).first()
    user = get_user_model().objects.filter(pk=user_id).first()
    if plan is None or user is None:
        logger.warning(
            "Subscription checkout %s references unknown plan %s or user %s",
            session.get("id"),
            plan_id,
            user_id,
        )
        return None

    customer_id = session.get("customer") or ""
    subscription_id = session.get("subscription")
    if subscription_id:
        subscription, created = Subscription.objects.update_or_create(
            stripe_subscription_id=subscription_id,
            defaults={
                "user": user,
                "plan": plan,
                "stripe_customer_id": customer_id,
                "status": Subscription.ACTIVE,
            },
        )
    else:
        subscription = Subscription.objects.create(
            user=user,
            plan=plan,
            stripe_customer_id=customer_id,
            status=Subscription.ACTIVE,
        )
        created = True

    logger.info(
        "%s subscription %s for user %s on plan %s",
        "Created" if created else "Updated",
        subscription.pk,
        user.pk,
        plan.pk,
    )
    return subscription


def update_plan_price(price: dict[str, Any]) -> bool:
    """Apply a ``price.updated`` event to the plan that sells that price."""
    price_id = price.get("id")
    unit_amount = price.get("unit_amount")
    if not price_id or unit_amount is None:
        return False

    new_price = (Decimal(int(unit_amount)) / Decimal(100)).quantize(Decimal("0.01"))
    updated = SubscriptionPlan.objects.filter(stripe_price_id=price_id).update(price=new_price)
    if updated:
        logger.info("Updated plan price for %s to %s", price_id, new_price)
    else:
        logger.info("No subscription plan uses price %s", price_id)
    return bool(updated)
