"""Stripe-backed billing provider.

Every Stripe failure is logged with its step label and converted to
``ProviderError``; webhook verification failures become ``WebhookError``.
"""

import logging

import stripe
from flask import current_app

from .errors import ProviderError, StudioError, WebhookError
from .logs import log_step

logger = logging.getLogger(__name__)


class BillingProvider:
    def __init__(self, api_key, webhook_secret=None, timeout=10):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        # Failures surface immediately; no client-side retries.
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            timeout=config.get("STRIPE_API_TIMEOUT", 10),
        )

    def _require_key(self, step):
        if not self.api_key:
            log_step(logger, "STRIPE_SECRET_KEY is not set", logging.ERROR, step=step)
            raise ProviderError("billing is not configured", step=step)

    def _call(self, step, fn, missing_ok=False, **params):
        self._require_key(step)
        try:
            return fn(api_key=self.api_key, **params)
        except stripe.InvalidRequestError as e:
            if missing_ok and e.code == "resource_missing":
                log_step(logger, "Stripe resource not found", logging.WARNING, step=step, error=str(e))
                return None
            log_step(logger, "Stripe call failed", logging.ERROR, step=step, error=str(e))
            raise ProviderError(f"billing provider error during {step}", step=step) from e
        except stripe.StripeError as e:
            log_step(logger, "Stripe call failed", logging.ERROR, step=step, error=str(e))
            raise ProviderError(f"billing provider error during {step}", step=step) from e

    def list_customers_by_email(self, email):
        result = self._call("list-customers", stripe.Customer.list, email=email, limit=1)
        return list(result.data)

    def list_active_subscriptions(self, customer_id):
        result = self._call(
            "list-subscriptions",
            stripe.Subscription.list,
            customer=customer_id,
            status="active",
            limit=1,
        )
        return list(result.data)

    def retrieve_customer(self, customer_id):
        """The customer object, or None when Stripe has no such customer."""
        return self._call("retrieve-customer", stripe.Customer.retrieve, missing_ok=True, id=customer_id)

    def create_portal_session(self, customer_id, return_url):
        session = self._call(
            "create-portal-session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url

    def construct_event(self, body, signature):
        """Verify the webhook signature and parse the event."""
        if not self.webhook_secret:
            log_step(logger, "STRIPE_WEBHOOK_SECRET is not set", logging.ERROR)
            raise StudioError("webhook is not configured")
        if not signature:
            raise WebhookError("invalid-signature")
        try:
            return stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except ValueError as e:
            log_step(logger, "Invalid webhook payload", logging.WARNING, error=str(e))
            raise WebhookError("invalid-signature") from e
        except stripe.SignatureVerificationError as e:
            log_step(logger, "Webhook signature verification failed", logging.WARNING, error=str(e))
            raise WebhookError("invalid-signature") from e


def get_billing_provider():
    provider = current_app.extensions.get("billing_provider")
    if provider is None:
        provider = BillingProvider.from_config(current_app.config)
        current_app.extensions["billing_provider"] = provider
    return provider


def first_price_id(subscription):
    items = subscription.get("items") or {}
    data = items.get("data") or []
    if not data:
        return None
    price = data[0].get("price") or {}
    return price.get("id")


def period_end_timestamp(subscription):
    """Unix period end; newer API versions carry it on the subscription item."""
    end = subscription.get("current_period_end")
    if end:
        return end
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("current_period_end")
    return None
