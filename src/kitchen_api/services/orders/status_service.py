"""Persist validated order status changes together with their history row."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kitchen_api.core.errors import NotFoundError, ValidationError
from kitchen_api.db.transactions import run_in_transaction
from kitchen_api.models.order import Order, OrderStatusEnum
from kitchen_api.models.order_status_event import OrderStatusEvent
from kitchen_api.services.identity import CallerIdentity
from kitchen_api.services.orders.state_machine import next_statuses_for_role, validate_status_update


@dataclass(slots=True)
class StatusUpdateResult:
    order: Order
    event: OrderStatusEvent
    previous_status: OrderStatusEnum


async def load_order(session: AsyncSession, order_id: UUID, caller: CallerIdentity | None = None) -> Order:
    order = (await session.execute(select(Order).where(Order.id == order_id))).scalar_one_or_none()
    # customers get the same answer for other people's orders as for missing ones
    if order is None or (caller is not None and not caller.can_act_for(order.user_id)):
        raise NotFoundError(f"Order {order_id} not found")
    return order


class OrderStatusService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def update_status(
        self,
        order_id: UUID,
        new_status: OrderStatusEnum,
        caller: CallerIdentity,
        *,
        reason: str | None = None,
    ) -> StatusUpdateResult:
        """Validate and apply a status change; nothing is written on rejection."""

        async def _apply(session: AsyncSession) -> StatusUpdateResult:
            order = await load_order(session, order_id, caller)
            current = order.status
            outcome = validate_status_update(current, new_status, order.order_type, caller.role)
            if not outcome.valid:
                raise ValidationError(outcome.error or "Invalid status update")

            order.status = new_status
            event = OrderStatusEvent(
                from_status=current.value,
                to_status=new_status.value,
                reason=reason,
                actor_role=caller.role.value,
                actor_id=caller.user_id,
            )
            order.status_events.append(event)
            await session.flush()
            return StatusUpdateResult(order=order, event=event, previous_status=current)

        result = await run_in_transaction(self._session_factory, _apply, name="order_status_update")
        logger.info(
            "Order status updated",
            order_id=str(order_id),
            from_status=result.previous_status.value,
            to_status=new_status.value,
            actor_role=caller.role.value,
        )
        return result

    async def allowed_next_statuses(self, order_id: UUID, caller: CallerIdentity) -> tuple[Order, list[OrderStatusEnum]]:
        async with self._session_factory() as session:
            order = await load_order(session, order_id, caller)
        return order, next_statuses_for_role(order.status, order.order_type, caller.role)
