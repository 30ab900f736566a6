# bookstore/services/lifecycle.py
"""
Order and order-item state machines.

Legal moves live in the two tables below; ``check_*`` raise ``Conflict`` on
anything else, and ``move_*`` persist a move as a compare-and-set against the
status the caller just read.
"""
from ..errors import Conflict
from ..model import Order, OrderItem, OrderStatus, RequestStatus
from ..utils.db import compare_and_set

ORDER_TRANSITIONS = {
    OrderStatus.PLACED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.RETURN_REQUESTED},
    OrderStatus.RETURN_REQUESTED: {OrderStatus.RETURN_APPROVED, OrderStatus.RETURN_REJECTED},
    OrderStatus.RETURN_APPROVED: {OrderStatus.RETURN_COMPLETED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
    OrderStatus.RETURN_COMPLETED: set(),
    OrderStatus.RETURN_REJECTED: set(),
}

REQUEST_TRANSITIONS = {
    RequestStatus.NONE: {RequestStatus.PENDING},
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED},
    RequestStatus.APPROVED: set(),
    RequestStatus.REJECTED: set(),
}

PRE_SHIPMENT = frozenset({OrderStatus.PLACED, OrderStatus.PROCESSING})
TERMINAL = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)

# admin forward moves
HAPPY_PATH = (
    OrderStatus.PLACED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, set())


def check_order_transition(order: Order, target: OrderStatus):
    current = order.status
    if current == target:
        raise Conflict(f"order is already {target.value}", order_id=order.id, status=current.value)
    if not can_transition(current, target):
        raise Conflict(
            f"cannot move order from {current.value} to {target.value}",
            order_id=order.id,
            status=current.value,
            target=target.value,
        )


def check_request_transition(current: RequestStatus, target: RequestStatus, what="request", **details):
    if target not in REQUEST_TRANSITIONS.get(current, set()):
        if current == RequestStatus.NONE:
            raise Conflict(f"no {what} pending", status=current.value, **details)
        if current == target:
            raise Conflict(f"{what} already {target.value.lower()}", status=current.value, **details)
        raise Conflict(f"{what} already {current.value.lower()}", status=current.value, **details)


def move_order(session, order: Order, target: OrderStatus, **extra):
    check_order_transition(order, target)
    expected = order.status
    if not compare_and_set(session, order, Order.status, expected, target, **extra):
        raise Conflict("order changed concurrently", order_id=order.id)


def _move_item(session, item: OrderItem, column, current, target, what, **extra):
    check_request_transition(current, target, what, item_id=item.id)
    if not compare_and_set(session, item, column, current, target, **extra):
        raise Conflict(f"{what} changed concurrently", item_id=item.id)


def move_item_cancellation(session, item: OrderItem, target: RequestStatus, **extra):
    _move_item(session, item, OrderItem.cancellation_status, item.cancellation_status,
               target, "cancellation", **extra)


def move_item_return(session, item: OrderItem, target: RequestStatus, **extra):
    _move_item(session, item, OrderItem.return_status, item.return_status,
               target, "return", **extra)
