"""Create the Stripe product and its prices in test mode.

Run once inside the backend container:
    python -m subsync.billing.scripts.create_stripe_products

Outputs price IDs to set in .env:
    STRIPE_PRICE_MONTHLY_BRL=price_xxx
    STRIPE_PRICE_ANNUAL_BRL=price_xxx
    STRIPE_PRICE_LIFETIME_BRL=price_xxx
    ... and the same for USD
"""

import asyncio

import stripe
from stripe import StripeClient

from subsync.billing.plans import PLANS, SUPPORTED_CURRENCIES
from subsync.config import settings


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )

    product = await client.v1.products.create_async(
        params={
            "name": "Pro",
            "description": "Unlimited analyses, full history and reminders",
        }
    )
    print(f"Created product: {product.name} ({product.id})")

    env_lines = []
    for plan in PLANS.values():
        for currency in SUPPORTED_CURRENCIES:
            params: dict = {
                "product": product.id,
                "unit_amount": plan.price_cents[currency],
                "currency": currency.lower(),
                "nickname": f"{plan.display_name} ({currency})",
                "lookup_key": f"pro_{plan.name}_{currency.lower()}",
            }
            if plan.interval:
                params["recurring"] = {"interval": plan.interval}
            price = await client.v1.prices.create_async(params=params)
            amount = plan.price_cents[currency] / 100
            period = f"/{plan.interval}" if plan.interval else " once"
            print(f"  Price: {currency} {amount:.2f}{period} ({price.id})")
            env_lines.append(f"STRIPE_PRICE_{plan.name.upper()}_{currency}={price.id}")

    print("\n--- Add these to your .env ---")
    for line in env_lines:
        print(line)


if __name__ == "__main__":
    asyncio.run(main())
