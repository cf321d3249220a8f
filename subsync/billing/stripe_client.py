"""Async Stripe API wrapper for Subsync."""

import logging

import stripe
from stripe import StripeClient

from subsync.config import settings

logger = logging.getLogger(__name__)


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support and a bounded timeout."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(timeout=settings.stripe_timeout_seconds),
        max_network_retries=1,
    )


def is_not_found(error: stripe.StripeError) -> bool:
    """True when Stripe reports that the requested object does not exist."""
    return isinstance(error, stripe.InvalidRequestError) and (
        error.code == "resource_missing" or error.http_status == 404
    )


async def create_customer(email: str, user_id: str, name: str | None = None) -> stripe.Customer:
    """Create a Stripe customer linked to a local user."""
    client = get_stripe_client()
    logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
    params: dict = {
        "email": email,
        "metadata": {"user_id": user_id},
    }
    if name:
        params["name"] = name
    customer = await client.v1.customers.create_async(params=params)
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer


async def create_checkout_session(
    customer_id: str,
    price_id: str,
    mode: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
) -> stripe.checkout.Session:
    """Create a Stripe Checkout Session (``subscription`` or one-time ``payment`` mode)."""
    client = get_stripe_client()
    logger.info(
        "Creating %s checkout session for customer %s, price %s",
        mode,
        customer_id,
        price_id,
    )
    params: dict = {
        "mode": mode,
        "customer": customer_id,
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        "allow_promotion_codes": True,
    }
    if mode == "payment":
        params["payment_intent_data"] = {"metadata": metadata}
    else:
        params["subscription_data"] = {"metadata": metadata}
    return await client.v1.checkout.sessions.create_async(params=params)


async def create_portal_session(
    customer_id: str, return_url: str
) -> stripe.billing_portal.Session:
    """Create a Stripe Customer Portal session for subscription management."""
    client = get_stripe_client()
    logger.info("Creating portal session for customer %s", customer_id)
    return await client.v1.billing_portal.sessions.create_async(
        params={
            "customer": customer_id,
            "return_url": return_url,
        }
    )


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    return await client.v1.subscriptions.retrieve_async(subscription_id)


async def get_customer(customer_id: str) -> stripe.Customer:
    """Retrieve a Stripe customer by ID."""
    client = get_stripe_client()
    return await client.v1.customers.retrieve_async(customer_id)


async def list_customer_subscriptions(customer_id: str) -> list[stripe.Subscription]:
    """List every subscription (any status) belonging to a Stripe customer."""
    client = get_stripe_client()
    page = await client.v1.subscriptions.list_async(
        params={"customer": customer_id, "status": "all", "limit": 100}
    )
    return list(page.data)


async def get_checkout_price_id(session_id: str) -> str | None:
    """Return the price ID of the first line item of a Checkout Session."""
    client = get_stripe_client()
    line_items = await client.v1.checkout.sessions.line_items.list_async(
        session_id, params={"limit": 1}
    )
    if not line_items.data:
        return None
    price = line_items.data[0].price
    return price.id if price else None


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous)."""
    client = get_stripe_client()
    return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)
