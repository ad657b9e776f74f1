"""
Order lifecycle state machines

Two independent machines live on every order: the fulfilment ``status`` and
the ``payment_status``. Every write that changes either field goes through
the tables below, either directly via ``transition`` or as a
compare-and-set filter built from ``sources_for``.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Type, TypeVar, Union

from errors import InvalidStatusTransitionError


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# statuses a customer may still cancel from
CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})

S = TypeVar("S", OrderStatus, PaymentStatus)


def _table(kind: Type[S]) -> Dict[S, FrozenSet[S]]:
    return ORDER_TRANSITIONS if kind is OrderStatus else PAYMENT_TRANSITIONS


def can_transition(current: Union[S, str], new: Union[S, str], kind: Type[S] = OrderStatus) -> bool:
    return kind(new) in _table(kind)[kind(current)]


def transition(current: Union[S, str], new: Union[S, str], kind: Type[S] = OrderStatus) -> S:
    """Return the new status, or raise if the table doesn't allow the move."""
    if not can_transition(current, new, kind):
        field = "status" if kind is OrderStatus else "payment_status"
        raise InvalidStatusTransitionError(kind(current).value, kind(new).value, field=field)
    return kind(new)


def sources_for(new: Union[S, str], kind: Type[S] = OrderStatus) -> List[str]:
    """Statuses from which ``new`` is reachable in one step, as stored strings."""
    target = kind(new)
    return sorted(s.value for s, targets in _table(kind).items() if target in targets)


def is_terminal(status: Union[OrderStatus, str]) -> bool:
    return not ORDER_TRANSITIONS[OrderStatus(status)]
