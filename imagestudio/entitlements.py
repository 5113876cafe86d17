import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .billing import first_price_id, get_billing_provider, period_end_timestamp
from .errors import StoreError
from .extensions import db
from .logs import log_step
from .models import PLAN_LIMITS, Subscriber, Tier, utcnow

logger = logging.getLogger(__name__)

# Stored when an active subscription carries a price we do not sell
UNKNOWN_TIER = "Unknown"


@dataclass(frozen=True)
class Entitlement:
    tier: Tier
    limit: int


@dataclass(frozen=True)
class SubscriptionInfo:
    subscribed: bool
    subscription_tier: str = None
    subscription_end: datetime = None
    customer_found: bool = True

    def to_dict(self):
        if not self.customer_found:
            return {"subscribed": False}
        return {
            "subscribed": self.subscribed,
            "subscription_tier": self.subscription_tier,
            "subscription_end": self.subscription_end.isoformat() if self.subscription_end else None,
        }


def tier_limit(tier_value):
    """Map a stored tier label to (Tier, limit); anything unrecognised is Free."""
    try:
        tier = Tier(tier_value)
    except ValueError:
        tier = Tier.FREE
    return tier, PLAN_LIMITS[tier]


def price_tier_table(config=None):
    config = config if config is not None else current_app.config
    return {
        config["STRIPE_PRICE_ID_PRO"]: Tier.PRO.value,
        config["STRIPE_PRICE_ID_PRO_PLUS"]: Tier.PRO_PLUS.value,
    }


def tier_for_price(price_id):
    return price_tier_table().get(price_id, UNKNOWN_TIER)


def from_timestamp(value):
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def get_subscriber(email):
    try:
        return Subscriber.query.filter_by(email=email).first()
    except SQLAlchemyError as e:
        db.session.rollback()
        log_step(logger, "Subscriber lookup failed", logging.ERROR, email=email, error=str(e))
        raise StoreError("failed to read subscriber") from e


def resolve_limit(email) -> Entitlement:
    subscriber = get_subscriber(email)
    if subscriber is None or not subscriber.subscribed:
        return Entitlement(Tier.FREE, PLAN_LIMITS[Tier.FREE])
    tier, limit = tier_limit(subscriber.subscription_tier)
    if tier is Tier.FREE and subscriber.subscription_tier != Tier.FREE.value:
        log_step(
            logger,
            "Unrecognised subscription tier, using Free limit",
            logging.WARNING,
            email=email,
            subscription_tier=subscriber.subscription_tier,
        )
    return Entitlement(tier, limit)


def upsert_subscriber(email, **fields):
    """Insert or update the subscriber keyed by email.

    ``updated_at`` only moves when a stored field actually changes, so
    replaying the same upstream state leaves the row untouched.
    """
    try:
        subscriber = Subscriber.query.filter_by(email=email).first()
        if subscriber is None:
            subscriber = Subscriber(email=email, subscribed=False)
            db.session.add(subscriber)
        changed = subscriber.id is None
        for name, value in fields.items():
            if getattr(subscriber, name) != value:
                setattr(subscriber, name, value)
                changed = True
        if changed:
            subscriber.updated_at = utcnow()
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        log_step(logger, "Error updating subscriber", logging.ERROR, email=email, error=str(e))
        raise StoreError("failed to update subscriber") from e
    log_step(
        logger,
        "Subscriber updated",
        email=email,
        subscribed=subscriber.subscribed,
        tier=subscriber.subscription_tier,
        changed=changed,
    )
    return subscriber


def refresh_from_billing_provider(identity) -> SubscriptionInfo:
    """Re-read the identity's subscription from the billing provider and store it."""
    billing = get_billing_provider()
    email = identity.email

    customers = billing.list_customers_by_email(identity.raw_email or email)
    if not customers:
        log_step(logger, "No customer found, updating unsubscribed state", email=email)
        upsert_subscriber(
            email,
            user_id=identity.user_id,
            stripe_customer_id=None,
            subscribed=False,
            subscription_tier=None,
            subscription_end=None,
        )
        return SubscriptionInfo(subscribed=False, customer_found=False)

    customer_id = customers[0]["id"]
    log_step(logger, "Found Stripe customer", customer_id=customer_id)

    subscriptions = billing.list_active_subscriptions(customer_id)
    subscription_tier = None
    subscription_end = None
    if subscriptions:
        subscription = subscriptions[0]
        price_id = first_price_id(subscription)
        subscription_tier = tier_for_price(price_id)
        subscription_end = from_timestamp(period_end_timestamp(subscription))
        log_step(
            logger,
            "Active subscription found",
            subscription_id=subscription.get("id"),
            price_id=price_id,
            subscription_tier=subscription_tier,
        )
    else:
        log_step(logger, "No active subscription found", customer_id=customer_id)

    upsert_subscriber(
        email,
        user_id=identity.user_id,
        stripe_customer_id=customer_id,
        subscribed=bool(subscriptions),
        subscription_tier=subscription_tier,
        subscription_end=subscription_end,
    )
    return SubscriptionInfo(
        subscribed=bool(subscriptions),
        subscription_tier=subscription_tier,
        subscription_end=subscription_end,
    )
