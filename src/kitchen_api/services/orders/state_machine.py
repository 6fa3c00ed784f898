"""Order status transition rules.

Pure functions only: callers decide whether and how to persist the outcome.
A status update is checked in a fixed order and the first failing rule wins:

1. the transition exists in ``STATUS_TRANSITIONS``;
2. the target is legal for the order type (pickup orders never leave the
   counter, delivery orders only complete once delivered);
3. the caller's role may set the target status;
4. cancellation is refused once the order is delivered or finished.
"""

from __future__ import annotations

from dataclasses import dataclass

from kitchen_api.core.errors import ValidationError
from kitchen_api.models.order import OrderStatusEnum, OrderTypeEnum
from kitchen_api.services.identity import CallerRole

S = OrderStatusEnum

STATUS_TRANSITIONS: dict[OrderStatusEnum, tuple[OrderStatusEnum, ...]] = {
    S.PENDING: (S.CONFIRMED, S.CANCELLED),
    S.CONFIRMED: (S.PREPARING, S.CANCELLED),
    S.PREPARING: (S.READY, S.CANCELLED),
    S.READY: (S.OUT_FOR_DELIVERY, S.COMPLETED, S.CANCELLED),
    S.OUT_FOR_DELIVERY: (S.DELIVERED, S.CANCELLED),
    S.DELIVERED: (S.COMPLETED,),
    S.COMPLETED: (),
    S.CANCELLED: (),
}

ROLE_PERMISSIONS: dict[CallerRole, frozenset[OrderStatusEnum]] = {
    CallerRole.ADMIN: frozenset(OrderStatusEnum),
    CallerRole.KITCHEN: frozenset({S.CONFIRMED, S.PREPARING, S.READY}),
    CallerRole.CUSTOMER: frozenset({S.CANCELLED}),
}

TERMINAL_STATUSES = frozenset(status for status, targets in STATUS_TRANSITIONS.items() if not targets)
_NON_CANCELLABLE = frozenset({S.DELIVERED, S.COMPLETED, S.CANCELLED})
_PICKUP_EXCLUDED = frozenset({S.OUT_FOR_DELIVERY, S.DELIVERED})

_STATUS_FLOWS: dict[OrderTypeEnum, tuple[OrderStatusEnum, ...]] = {
    OrderTypeEnum.DELIVERY: (S.PENDING, S.CONFIRMED, S.PREPARING, S.READY, S.OUT_FOR_DELIVERY, S.DELIVERED, S.COMPLETED),
    OrderTypeEnum.PICKUP: (S.PENDING, S.CONFIRMED, S.PREPARING, S.READY, S.COMPLETED),
}


@dataclass(frozen=True, slots=True)
class StatusValidation:
    valid: bool
    error: str | None = None


def parse_status(raw: str | OrderStatusEnum) -> OrderStatusEnum:
    """Accept both ``out_for_delivery`` and the hyphenated display spelling."""

    if isinstance(raw, OrderStatusEnum):
        return raw
    try:
        return OrderStatusEnum(str(raw).strip().lower().replace("-", "_"))
    except ValueError as exc:
        raise ValidationError(f"Unknown order status '{raw}'") from exc


def is_valid_status_transition(current: OrderStatusEnum, new: OrderStatusEnum) -> bool:
    return new in STATUS_TRANSITIONS.get(current, ())


def is_valid_for_order_type(
    order_type: OrderTypeEnum,
    new: OrderStatusEnum,
    current: OrderStatusEnum | None = None,
) -> bool:
    if order_type is OrderTypeEnum.PICKUP:
        return new not in _PICKUP_EXCLUDED
    if new is S.COMPLETED:
        # delivery orders finish only after the hand-off is confirmed
        return current is S.DELIVERED
    return True


def can_role_update_to(role: CallerRole, new: OrderStatusEnum) -> bool:
    return new in ROLE_PERMISSIONS.get(role, frozenset())


def can_cancel_order(current: OrderStatusEnum) -> bool:
    return current not in _NON_CANCELLABLE


def validate_status_update(
    current: OrderStatusEnum,
    new: OrderStatusEnum,
    order_type: OrderTypeEnum,
    role: CallerRole,
) -> StatusValidation:
    if not is_valid_status_transition(current, new):
        return StatusValidation(False, f"Invalid status transition from '{current.display}' to '{new.display}'")

    if not is_valid_for_order_type(order_type, new, current):
        return StatusValidation(False, f"Status '{new.display}' is not valid for {order_type.value} orders")

    if not can_role_update_to(role, new):
        return StatusValidation(False, f"Role '{role.value}' cannot update status to '{new.display}'")

    if new is S.CANCELLED and not can_cancel_order(current):
        return StatusValidation(False, "Cannot cancel completed or delivered orders")

    return StatusValidation(True)


def next_statuses(current: OrderStatusEnum, order_type: OrderTypeEnum) -> list[OrderStatusEnum]:
    return [
        status
        for status in STATUS_TRANSITIONS.get(current, ())
        if is_valid_for_order_type(order_type, status, current)
    ]


def next_statuses_for_role(
    current: OrderStatusEnum,
    order_type: OrderTypeEnum,
    role: CallerRole,
) -> list[OrderStatusEnum]:
    return [status for status in next_statuses(current, order_type) if can_role_update_to(role, status)]


def status_progress(status: OrderStatusEnum, order_type: OrderTypeEnum) -> int:
    """Percentage of the happy path covered; cancelled orders report 0."""

    flow = _STATUS_FLOWS[order_type]
    if status not in flow:
        return 0
    return round(flow.index(status) / (len(flow) - 1) * 100)
