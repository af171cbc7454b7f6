"""
FSM Machine - transition tables for payments and orders.

The ledgers derive the allowed source statuses of every conditional write
from PAYMENT_TRANSITIONS, so a status change that is not listed here can
never reach the database.
"""

from typing import Dict, FrozenSet, Tuple

from app.fsm.states import OrderStatus, PaymentStatus


PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    }),
    # A failed attempt can be retried, failed again, or succeed on a later
    # attempt against the same gateway order.
    PaymentStatus.FAILED: frozenset({
        PaymentStatus.PENDING,
        PaymentStatus.FAILED,
        PaymentStatus.COMPLETED,
    }),
    PaymentStatus.COMPLETED: frozenset({
        PaymentStatus.REFUNDED,
    }),
    PaymentStatus.REFUNDED: frozenset(),
}


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PAYMENT_PENDING: frozenset({
        OrderStatus.CONFIRMED,
        OrderStatus.PAYMENT_FAILED,
    }),
    # A failed payment stays attached to its order, so the order can only be
    # paid again, never cancelled.
    OrderStatus.PAYMENT_FAILED: frozenset({
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.CONFIRMED,
    }),
    OrderStatus.CONFIRMED: frozenset({
        OrderStatus.REFUNDED,
    }),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


# Order (status, payment_status) implied by each payment status
ORDER_STATE_FOR_PAYMENT: Dict[PaymentStatus, Tuple[OrderStatus, PaymentStatus]] = {
    PaymentStatus.PENDING: (OrderStatus.PAYMENT_PENDING, PaymentStatus.PENDING),
    PaymentStatus.COMPLETED: (OrderStatus.CONFIRMED, PaymentStatus.COMPLETED),
    PaymentStatus.FAILED: (OrderStatus.PAYMENT_FAILED, PaymentStatus.FAILED),
    PaymentStatus.REFUNDED: (OrderStatus.REFUNDED, PaymentStatus.REFUNDED),
}


# Order statuses only the payment flow may set
PAYMENT_DRIVEN_ORDER_STATUSES: FrozenSet[OrderStatus] = frozenset(
    status for status, _ in ORDER_STATE_FOR_PAYMENT.values()
)


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Check whether a payment may move from ``current`` to ``target``."""
    return target in PAYMENT_TRANSITIONS.get(PaymentStatus(current), frozenset())


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    """Check whether an order may move from ``current`` to ``target``."""
    return target in ORDER_TRANSITIONS.get(OrderStatus(current), frozenset())


def payment_sources(target: PaymentStatus) -> Tuple[str, ...]:
    """
    Statuses a payment may be in for a write to ``target`` to apply.

    Returned as raw values, sorted, ready for an ``IN (...)`` clause.
    """
    return tuple(sorted(
        source.value
        for source, targets in PAYMENT_TRANSITIONS.items()
        if target in targets
    ))


def order_sources(target: OrderStatus) -> Tuple[str, ...]:
    """Order statuses from which a write to ``target`` may apply, sorted."""
    return tuple(sorted(
        source.value
        for source, targets in ORDER_TRANSITIONS.items()
        if target in targets
    ))
