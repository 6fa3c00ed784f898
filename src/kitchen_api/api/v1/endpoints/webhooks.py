"""Payment gateway webhooks."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request
from loguru import logger
from pydantic import BaseModel

from kitchen_api.api.dependencies.services import get_ingestion_service, get_stripe_gateway
from kitchen_api.services.orders.ingestion import OrderIngestionService
from kitchen_api.services.payments import StripeGateway


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    orderId: Optional[UUID]
    message: str


@router.post("/stripe", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    service: OrderIngestionService = Depends(get_ingestion_service),
) -> WebhookResponse:
    """Verify the signature on the raw body, then materialise the order once."""

    payload = await request.body()
    event = gateway.construct_event(payload, stripe_signature)
    result = await service.ingest(event)
    logger.info(
        "Stripe webhook handled",
        event_id=event.get("id"),
        event_type=event.get("type"),
        order_id=str(result.order_id) if result.order_id else None,
        outcome=result.message,
    )
    return WebhookResponse(orderId=result.order_id, message=result.message)
