"""Reconcile subscriber and usage state from Stripe webhook events."""

import enum
import logging

from .billing import first_price_id, get_billing_provider, period_end_timestamp
from .entitlements import from_timestamp, get_subscriber, tier_for_price, upsert_subscriber
from .ledger import reset_period
from .logs import log_step

logger = logging.getLogger(__name__)


class BillingEventType(enum.Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value):
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


def customer_email(customer_id):
    """Email of a Stripe customer, or None for missing/deleted customers."""
    if not customer_id:
        return None
    customer = get_billing_provider().retrieve_customer(customer_id)
    if customer is None or customer.get("deleted"):
        return None
    return customer.get("email")


def handle_subscription_change(subscription):
    customer_id = subscription.get("customer")
    status = subscription.get("status")
    log_step(
        logger,
        "Handling subscription change",
        subscription_id=subscription.get("id"),
        status=status,
    )

    email = customer_email(customer_id)
    if not email:
        log_step(logger, "No customer email found", logging.WARNING, customer_id=customer_id)
        return

    email = email.strip().lower()
    is_active = status == "active"
    previous = get_subscriber(email)
    was_active = previous is not None and bool(previous.subscribed)
    subscription_tier = None
    subscription_end = None
    if is_active:
        subscription_tier = tier_for_price(first_price_id(subscription))
        subscription_end = from_timestamp(period_end_timestamp(subscription))

    upsert_subscriber(
        email,
        stripe_customer_id=customer_id,
        subscribed=is_active,
        subscription_tier=subscription_tier,
        subscription_end=subscription_end,
    )

    # Only a transition into active starts a new billing period
    if is_active and not was_active:
        reset_period(email)


def handle_payment_succeeded(invoice):
    log_step(logger, "Handling payment succeeded", invoice_id=invoice.get("id"))
    email = customer_email(invoice.get("customer"))
    if not email:
        log_step(logger, "No customer email found", logging.WARNING, customer_id=invoice.get("customer"))
        return
    reset_period(email.strip().lower())
    log_step(logger, "Usage reset for successful payment", email=email)


def handle_payment_failed(invoice):
    # No downgrade or grace-period policy is defined for failed payments.
    log_step(
        logger,
        "Handling payment failed",
        logging.WARNING,
        invoice_id=invoice.get("id"),
        customer_id=invoice.get("customer"),
    )


def handle_unknown(_obj):
    pass


HANDLERS = {
    BillingEventType.SUBSCRIPTION_CREATED: handle_subscription_change,
    BillingEventType.SUBSCRIPTION_UPDATED: handle_subscription_change,
    BillingEventType.SUBSCRIPTION_DELETED: handle_subscription_change,
    BillingEventType.PAYMENT_SUCCEEDED: handle_payment_succeeded,
    BillingEventType.PAYMENT_FAILED: handle_payment_failed,
    BillingEventType.UNKNOWN: handle_unknown,
}


def dispatch_event(event):
    event_type = BillingEventType.parse(event["type"])
    if event_type is BillingEventType.UNKNOWN:
        log_step(logger, "Unhandled event type", event_type=event["type"])
    HANDLERS[event_type](event["data"]["object"])
    return event_type


def handle_webhook(body, signature):
    """Verify a raw webhook delivery, then apply it.

    Verification happens before anything is read or written; a bad
    signature raises ``WebhookError`` with no side effects.
    """
    event = get_billing_provider().construct_event(body, signature)
    log_step(logger, "Webhook signature verified", event_type=event["type"], event_id=event.get("id"))
    return dispatch_event(event)
