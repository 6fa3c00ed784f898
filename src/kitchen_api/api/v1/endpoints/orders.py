"""Order tracking and kitchen status management endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from kitchen_api.api.dependencies.identity import require_caller
from kitchen_api.api.dependencies.services import get_order_status_service
from kitchen_api.core.clock import as_utc
from kitchen_api.core.errors import ValidationError
from kitchen_api.models.order import Order, OrderTypeEnum
from kitchen_api.services.identity import CallerIdentity
from kitchen_api.services.orders.state_machine import parse_status, status_progress, validate_status_update
from kitchen_api.services.orders.status_service import OrderStatusService


router = APIRouter(prefix="/orders", tags=["orders"])


class OrderItemResponse(BaseModel):
    name: str
    quantity: int
    unitPrice: Decimal
    totalPrice: Decimal
    pointsEligible: bool


class OrderStatusEventResponse(BaseModel):
    fromStatus: Optional[str]
    toStatus: str
    reason: Optional[str]
    actorRole: Optional[str]
    createdAt: datetime


class OrderResponse(BaseModel):
    id: UUID
    orderNumber: str
    userId: Optional[str]
    status: str
    orderType: str
    progress: int
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    eligibleAmount: Decimal
    pointsEarned: int
    hasVolunteerDiscount: bool
    currency: str
    createdAt: datetime
    updatedAt: datetime
    items: List[OrderItemResponse]
    history: List[OrderStatusEventResponse]


class StatusUpdateRequest(BaseModel):
    newStatus: str = Field(..., min_length=1, description="Target status, e.g. 'preparing' or 'out-for-delivery'")
    reason: Optional[str] = Field(None, max_length=500)


class StatusUpdateResponse(BaseModel):
    valid: bool
    order: OrderResponse


class StatusValidationRequest(BaseModel):
    currentStatus: str
    newStatus: str
    orderType: str = Field("pickup")


class StatusValidationResponse(BaseModel):
    valid: bool
    error: Optional[str] = None


class NextStatusesResponse(BaseModel):
    orderId: UUID
    currentStatus: str
    nextStatuses: List[str]


def order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        orderNumber=order.order_number,
        userId=order.user_id,
        status=order.status.display,
        orderType=order.order_type.value,
        progress=status_progress(order.status, order.order_type),
        subtotal=order.subtotal,
        tax=order.tax,
        discount=order.discount,
        total=order.total,
        eligibleAmount=order.eligible_amount,
        pointsEarned=order.points_earned,
        hasVolunteerDiscount=order.has_volunteer_discount,
        currency=order.currency,
        createdAt=as_utc(order.created_at),
        updatedAt=as_utc(order.updated_at),
        items=[
            OrderItemResponse(
                name=item.name,
                quantity=item.quantity,
                unitPrice=item.unit_price,
                totalPrice=item.total_price,
                pointsEligible=item.points_eligible,
            )
            for item in order.items
        ],
        history=[
            OrderStatusEventResponse(
                fromStatus=event.from_status,
                toStatus=event.to_status,
                reason=event.reason,
                actorRole=event.actor_role,
                createdAt=as_utc(event.created_at),
            )
            for event in order.status_events
        ],
    )


def _parse_order_type(raw: str) -> OrderTypeEnum:
    try:
        return OrderTypeEnum(raw.strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown order type '{raw}'") from exc


@router.post("/status/validate", response_model=StatusValidationResponse)
async def validate_status_change(
    payload: StatusValidationRequest,
    caller: CallerIdentity = Depends(require_caller),
) -> StatusValidationResponse:
    """Dry-run the transition rules for the caller's role without touching any order."""

    try:
        current = parse_status(payload.currentStatus)
        new = parse_status(payload.newStatus)
        order_type = _parse_order_type(payload.orderType)
    except ValidationError as exc:
        return StatusValidationResponse(valid=False, error=exc.message)
    outcome = validate_status_update(current, new, order_type, caller.role)
    return StatusValidationResponse(valid=outcome.valid, error=outcome.error)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: UUID,
    caller: CallerIdentity = Depends(require_caller),
    service: OrderStatusService = Depends(get_order_status_service),
) -> OrderResponse:
    order, _ = await service.allowed_next_statuses(order_id, caller)
    return order_response(order)


@router.post("/{order_id}/status", response_model=StatusUpdateResponse)
async def update_order_status(
    order_id: UUID,
    payload: StatusUpdateRequest,
    caller: CallerIdentity = Depends(require_caller),
    service: OrderStatusService = Depends(get_order_status_service),
) -> StatusUpdateResponse:
    result = await service.update_status(order_id, parse_status(payload.newStatus), caller, reason=payload.reason)
    return StatusUpdateResponse(valid=True, order=order_response(result.order))


@router.get("/{order_id}/next-statuses", response_model=NextStatusesResponse)
async def get_next_statuses(
    order_id: UUID,
    caller: CallerIdentity = Depends(require_caller),
    service: OrderStatusService = Depends(get_order_status_service),
) -> NextStatusesResponse:
    order, allowed = await service.allowed_next_statuses(order_id, caller)
    return NextStatusesResponse(
        orderId=order.id,
        currentStatus=order.status.display,
        nextStatuses=[status.display for status in allowed],
    )
