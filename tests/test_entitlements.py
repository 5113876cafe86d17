from datetime import datetime

import pytest

from conftest import PRICE_PRO, PRICE_PRO_PLUS, make_token
from imagestudio.entitlements import (
    UNKNOWN_TIER,
    refresh_from_billing_provider,
    resolve_limit,
    tier_limit,
    upsert_subscriber,
)
from imagestudio.errors import ProviderError
from imagestudio.extensions import db
from imagestudio.identity import Identity, resolve_identity
from imagestudio.models import Subscriber, Tier

USER = Identity(user_id="user_123", email="user@example.com")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("Free", (Tier.FREE, 5)),
        ("Pro", (Tier.PRO, 25)),
        ("Pro Plus", (Tier.PRO_PLUS, 500)),
        ("Unknown", (Tier.FREE, 5)),
        ("Enterprise", (Tier.FREE, 5)),
        ("", (Tier.FREE, 5)),
        (None, (Tier.FREE, 5)),
    ],
)
def test_tier_limit_is_total(value, expected):
    assert tier_limit(value) == expected


def test_unknown_email_is_free(ctx):
    entitlement = resolve_limit("nobody@example.com")
    assert entitlement.tier is Tier.FREE
    assert entitlement.limit == 5


def test_unsubscribed_row_is_free(ctx):
    upsert_subscriber("user@example.com", subscribed=False, subscription_tier=None)
    assert resolve_limit("user@example.com").limit == 5


def test_subscribed_tiers(ctx):
    upsert_subscriber("pro@example.com", subscribed=True, subscription_tier="Pro")
    upsert_subscriber("plus@example.com", subscribed=True, subscription_tier="Pro Plus")
    assert resolve_limit("pro@example.com").limit == 25
    assert resolve_limit("plus@example.com").limit == 500


def test_unrecognised_tier_defaults_to_free_limit(ctx):
    upsert_subscriber("odd@example.com", subscribed=True, subscription_tier=UNKNOWN_TIER)
    entitlement = resolve_limit("odd@example.com")
    assert entitlement.tier is Tier.FREE
    assert entitlement.limit == 5


def test_refresh_without_customer_stores_unsubscribed(ctx, billing):
    # stale data from an earlier subscription must not survive
    upsert_subscriber(
        USER.email,
        stripe_customer_id="cus_old",
        subscribed=True,
        subscription_tier="Pro",
        subscription_end=datetime(2030, 1, 1),
    )

    info = refresh_from_billing_provider(USER)

    assert info.to_dict() == {"subscribed": False}
    row = Subscriber.query.filter_by(email=USER.email).one()
    assert row.subscribed is False
    assert row.subscription_tier is None
    assert row.subscription_end is None
    assert row.stripe_customer_id is None
    assert row.user_id == "user_123"


def test_refresh_with_active_subscription(ctx, billing):
    billing.add_customer("cus_1", USER.email)
    billing.add_subscription("cus_1", PRICE_PRO_PLUS, period_end=1893456000)

    info = refresh_from_billing_provider(USER)

    assert info.subscribed is True
    assert info.subscription_tier == "Pro Plus"
    assert info.subscription_end == datetime(2030, 1, 1)
    assert info.to_dict()["subscription_end"] == "2030-01-01T00:00:00"
    assert resolve_limit(USER.email).limit == 500


def test_refresh_customer_without_subscription(ctx, billing):
    billing.add_customer("cus_1", USER.email)

    info = refresh_from_billing_provider(USER)

    assert info.to_dict() == {"subscribed": False, "subscription_tier": None, "subscription_end": None}
    row = Subscriber.query.filter_by(email=USER.email).one()
    assert row.stripe_customer_id == "cus_1"
    assert row.subscribed is False


def test_refresh_unknown_price_is_stored_but_free(ctx, billing):
    billing.add_customer("cus_1", USER.email)
    billing.add_subscription("cus_1", "price_nobody_sells")

    info = refresh_from_billing_provider(USER)

    assert info.subscription_tier == UNKNOWN_TIER
    assert resolve_limit(USER.email).limit == 5


def test_refresh_is_idempotent(ctx, billing):
    billing.add_customer("cus_1", USER.email)
    billing.add_subscription("cus_1", PRICE_PRO)

    refresh_from_billing_provider(USER)
    first = Subscriber.query.filter_by(email=USER.email).one().to_dict()
    db.session.expire_all()
    refresh_from_billing_provider(USER)
    second = Subscriber.query.filter_by(email=USER.email).one().to_dict()

    assert first == second
    assert Subscriber.query.count() == 1


def test_refresh_provider_failure_leaves_row_alone(ctx, billing):
    upsert_subscriber(USER.email, subscribed=True, subscription_tier="Pro")
    billing.fail = True

    with pytest.raises(ProviderError):
        refresh_from_billing_provider(USER)

    assert resolve_limit(USER.email).limit == 25


def test_refresh_looks_up_customer_with_token_casing(ctx, billing):
    billing.add_customer("cus_9", "Jane.Doe@Example.com")
    billing.add_subscription("cus_9", PRICE_PRO)
    identity = resolve_identity(make_token(email="Jane.Doe@Example.com", sub="user_jane"))

    info = refresh_from_billing_provider(identity)

    assert info.subscribed is True
    assert info.subscription_tier == "Pro"
    row = Subscriber.query.one()
    assert row.email == "jane.doe@example.com"
    assert row.stripe_customer_id == "cus_9"
    assert resolve_limit("jane.doe@example.com").limit == 25
