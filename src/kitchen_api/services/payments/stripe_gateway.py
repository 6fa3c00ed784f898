"""Thin Stripe client: webhook verification and checkout line item lookup."""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from typing import Any

import stripe
from fastapi import status
from loguru import logger

from kitchen_api.core.errors import ExternalServiceError
from kitchen_api.core.settings import get_settings
from kitchen_api.services.loyalty.eligibility import CENT, LineItem


def cents_to_dollars(value: Any) -> Decimal:
    return (Decimal(int(value or 0)) / 100).quantize(CENT)


class StripeGateway:
    """Owns the Stripe secrets; the rest of the service only sees plain dicts."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        tolerance_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self.api_key = settings.stripe_secret_key if api_key is None else api_key
        self.webhook_secret = settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        self.tolerance_seconds = tolerance_seconds or settings.stripe_webhook_tolerance_seconds

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and return the event body."""

        if not self.webhook_secret:
            logger.error("Stripe webhook secret is not configured")
            raise ExternalServiceError(
                "Webhook verification is not configured",
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        if not signature:
            raise ExternalServiceError("Missing webhook signature", status_code=status.HTTP_400_BAD_REQUEST)

        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
                tolerance=self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected Stripe webhook signature", error=str(exc))
            raise ExternalServiceError("Invalid webhook signature", status_code=status.HTTP_400_BAD_REQUEST) from exc
        except ValueError as exc:
            raise ExternalServiceError("Invalid webhook payload", status_code=status.HTTP_400_BAD_REQUEST) from exc

        logger.info("Verified Stripe webhook event", event_id=event["id"], event_type=event["type"])
        return json.loads(payload)

    async def list_line_items(self, checkout_session_id: str) -> list[LineItem]:
        """Fetch line items for a checkout session that was delivered unexpanded."""

        try:
            response = await asyncio.to_thread(
                stripe.checkout.Session.list_line_items,
                checkout_session_id,
                limit=100,
                expand=["data.price.product"],
                api_key=self.api_key or None,
            )
        except stripe.StripeError as exc:
            logger.error(
                "Failed to fetch Stripe line items",
                checkout_session_id=checkout_session_id,
                error=str(exc),
            )
            raise ExternalServiceError("Payment gateway line item lookup failed") from exc

        items: list[LineItem] = []
        for item in response.data:
            price = getattr(item, "price", None)
            product = getattr(price, "product", None) if price is not None else None
            name = getattr(product, "name", None) or getattr(item, "description", None) or "Unknown Item"
            items.append(
                LineItem(
                    name=name,
                    quantity=int(getattr(item, "quantity", None) or 1),
                    amount=cents_to_dollars(getattr(item, "amount_total", 0)),
                )
            )
        return items
