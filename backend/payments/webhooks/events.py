"""Stripe event types the webhook processor handles."""

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"

PAYMENT_INTENT_REQUIRES_ACTION = "payment_intent.requires_action"
PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED = "payment_intent.amount_capturable_updated"

CHARGE_SUCCEEDED = "charge.succeeded"
CHARGE_CAPTURED = "charge.captured"
CHARGE_REFUNDED = "charge.refunded"
CHARGE_DISPUTE_CREATED = "charge.dispute.created"

REFUND_CREATED = "refund.created"
REFUND_UPDATED = "refund.updated"
REFUND_FAILED = "refund.failed"

SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"
SETUP_INTENT_SETUP_FAILED = "setup_intent.setup_failed"

ACCOUNT_UPDATED = "account.updated"
CAPABILITY_UPDATED = "capability.updated"
PERSON_UPDATED = "person.updated"

PRICE_UPDATED = "price.updated"

KNOWN_EVENT_TYPES = frozenset(
    {
        CHECKOUT_SESSION_COMPLETED,
        CHECKOUT_SESSION_EXPIRED,
        PAYMENT_INTENT_REQUIRES_ACTION,
        PAYMENT_INTENT_PAYMENT_FAILED,
        PAYMENT_INTENT_CANCELED,
        PAYMENT_INTENT_SUCCEEDED,
        PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED,
        CHARGE_SUCCEEDED,
        CHARGE_CAPTURED,
        CHARGE_REFUNDED,
        CHARGE_DISPUTE_CREATED,
        REFUND_CREATED,
        REFUND_UPDATED,
        REFUND_FAILED,
        SETUP_INTENT_SUCCEEDED,
        SETUP_INTENT_SETUP_FAILED,
        ACCOUNT_UPDATED,
        CAPABILITY_UPDATED,
        PERSON_UPDATED,
        PRICE_UPDATED,
    }
)

# Off-session charges that are not the booking's main payment intent. Their
# events carry booking metadata but must not move the booking ledger.
ANCILLARY_CHARGE_KINDS = frozenset({"tip", "cancellation_fee", "cancellation_service_fee"})
