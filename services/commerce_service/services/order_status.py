"""Order lifecycle.

Delivery: processing -> packing -> shipped -> delivered -> completed
Pickup:   processing -> packing -> ready_for_pickup -> completed

cancelled and returned are terminal and only set by the refund/return flows.
"""

from typing import Optional, Union

from services.commerce_service.models import DeliveryMethod, OrderStatus

STATUS_FLOW: dict[DeliveryMethod, list[OrderStatus]] = {
    DeliveryMethod.DELIVERY: [
        OrderStatus.PROCESSING,
        OrderStatus.PACKING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.COMPLETED,
    ],
    DeliveryMethod.PICKUP: [
        OrderStatus.PROCESSING,
        OrderStatus.PACKING,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.COMPLETED,
    ],
}

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})

LEGACY_STATUS_MAP = {
    "pending": OrderStatus.PROCESSING,
    "packed": OrderStatus.PACKING,
    "refunded": OrderStatus.RETURNED,
}

StatusLike = Union[OrderStatus, str, None]


def _key(value: StatusLike) -> str:
    if isinstance(value, OrderStatus):
        return value.value
    return str(value or "").strip().lower()


def resolve_status(value: StatusLike) -> Optional[OrderStatus]:
    """Canonical status for a current or legacy name, None if unknown."""
    key = _key(value)
    if key in LEGACY_STATUS_MAP:
        return LEGACY_STATUS_MAP[key]
    try:
        return OrderStatus(key)
    except ValueError:
        return None


def resolve_delivery_method(value: Union[DeliveryMethod, str, None]) -> DeliveryMethod:
    if isinstance(value, DeliveryMethod):
        return value
    if str(value or "").strip().lower() == DeliveryMethod.PICKUP.value:
        return DeliveryMethod.PICKUP
    return DeliveryMethod.DELIVERY


def get_flow(method: Union[DeliveryMethod, str, None]) -> list[OrderStatus]:
    return STATUS_FLOW[resolve_delivery_method(method)]


def get_status_index(status: StatusLike, method: Union[DeliveryMethod, str, None]) -> int:
    resolved = resolve_status(status)
    flow = get_flow(method)
    return flow.index(resolved) if resolved in flow else -1


def get_next_status(
    current: StatusLike, method: Union[DeliveryMethod, str, None]
) -> Optional[OrderStatus]:
    """Next step in the flow, None at the end or from a terminal state."""
    if resolve_status(current) in TERMINAL_STATUSES:
        return None
    flow = get_flow(method)
    index = get_status_index(current, method)
    if index < 0:
        return flow[0]
    if index >= len(flow) - 1:
        return None
    return flow[index + 1]


def can_transition(
    current: StatusLike,
    next_status: StatusLike,
    method: Union[DeliveryMethod, str, None],
) -> bool:
    """Stay in place or move exactly one step forward in the method's flow."""
    if resolve_status(current) in TERMINAL_STATUSES:
        return False
    flow = get_flow(method)
    target = resolve_status(next_status)
    if target not in flow:
        return False
    current_index = get_status_index(current, method)
    next_index = flow.index(target)
    if current_index < 0:
        return next_index == 0
    return next_index in (current_index, current_index + 1)


def is_completed_status(status: StatusLike) -> bool:
    return resolve_status(status) == OrderStatus.COMPLETED


def is_terminal_status(status: StatusLike) -> bool:
    return resolve_status(status) in TERMINAL_STATUSES
