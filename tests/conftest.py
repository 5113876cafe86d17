"""
Shared fixtures: an app bound to a throwaway SQLite file, signed identity
tokens, Stripe-signed webhook bodies and in-memory billing/image providers.
"""

import hashlib
import hmac
import json
import time

import jwt
import pytest
import stripe
from PIL import Image

from imagestudio import create_app
from imagestudio.billing import BillingProvider
from imagestudio.errors import ProviderError
from imagestudio.extensions import db

JWT_SECRET = "test-identity-secret"
WEBHOOK_SECRET = "whsec_test_secret"
PRICE_PRO = "price_pro_test"
PRICE_PRO_PLUS = "price_pro_plus_test"


class FakeBillingProvider(BillingProvider):
    """Stripe stand-in; webhook verification still runs through stripe."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.customers = {}
        self.subscriptions = {}
        self.fail = False
        self.portal_calls = []

    def add_customer(self, customer_id, email):
        self.customers[customer_id] = {"id": customer_id, "object": "customer", "email": email}

    def add_subscription(self, customer_id, price_id, period_end=1893456000, sub_id="sub_1"):
        self.subscriptions.setdefault(customer_id, []).append(
            subscription_payload(customer_id, price_id, period_end=period_end, sub_id=sub_id)
        )

    def _check(self, step):
        if self.fail:
            raise ProviderError(f"billing provider error during {step}", step=step)

    def list_customers_by_email(self, email):
        self._check("list-customers")
        return [c for c in self.customers.values() if c["email"] == email][:1]

    def list_active_subscriptions(self, customer_id):
        self._check("list-subscriptions")
        return [s for s in self.subscriptions.get(customer_id, []) if s["status"] == "active"][:1]

    def stripe_customer_retrieve(self, id, api_key=None, **params):
        """Replaces `stripe.Customer.retrieve` and fails the way Stripe does."""
        if self.fail:
            raise stripe.APIConnectionError("Could not connect to Stripe")
        customer = self.customers.get(id)
        if customer is None:
            raise stripe.InvalidRequestError(
                f"No such customer: '{id}'", "id", code="resource_missing", http_status=404
            )
        return customer

    def create_portal_session(self, customer_id, return_url):
        self._check("create-portal-session")
        self.portal_calls.append((customer_id, return_url))
        return f"https://billing.example.test/session/{customer_id}"


class FakeImageProvider:
    model = "fake-image-model"

    def __init__(self):
        self.fail = False
        self.calls = []

    def _image(self, step):
        if self.fail:
            raise ProviderError(f"image provider error during {step}", step=step)
        return Image.new("RGB", (8, 8), (255, 255, 255))

    def generate(self, prompt):
        self.calls.append(("generate", prompt))
        return self._image("generate")

    def edit(self, image, prompt):
        self.calls.append(("edit", prompt))
        return self._image("edit")


def subscription_payload(customer_id, price_id, status="active", period_end=1893456000, sub_id="sub_1"):
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "current_period_end": period_end,
        "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


def make_token(email="user@example.com", sub="user_123", secret=JWT_SECRET, **claims):
    payload = dict(claims)
    if sub:
        payload["sub"] = sub
    if email:
        payload["email"] = email
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(**kwargs):
    return {"Authorization": f"Bearer {make_token(**kwargs)}"}


def signed_event(event_type, obj, secret=WEBHOOK_SECRET, event_id="evt_1"):
    """Return (body, Stripe-Signature header) for an event."""
    body = json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return body, f"t={timestamp},v1={digest}"


@pytest.fixture
def app(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 30}},
            "IDENTITY_JWT_SECRET": JWT_SECRET,
            "IDENTITY_JWKS_URL": None,
            "IDENTITY_AUDIENCE": None,
            "IDENTITY_ISSUER": None,
            "STRIPE_PRICE_ID_PRO": PRICE_PRO,
            "STRIPE_PRICE_ID_PRO_PLUS": PRICE_PRO_PLUS,
            "OUTPUT_FOLDER": str(tmp_path / "outputs"),
        }
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def billing(app, monkeypatch):
    provider = FakeBillingProvider()
    monkeypatch.setattr(stripe.Customer, "retrieve", provider.stripe_customer_retrieve)
    app.extensions["billing_provider"] = provider
    return provider


@pytest.fixture
def images(app):
    provider = FakeImageProvider()
    app.extensions["image_provider"] = provider
    return provider
